"""Pydantic schemas for run configuration, manifest wire format and ledger responses."""

import json
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from common.constants import (
    DEFAULT_CHUNK_SIZE_BYTES,
    DEFAULT_CONFIRMATION_TIMEOUT_MS,
    DEFAULT_GAS_MULTIPLIER,
    DEFAULT_MAX_RETRIES_PER_CHUNK,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_RUN_TIMEOUT_MS,
)
from common.protocol import chunk_index_from_key
from common.types import Manifest, ManifestEntry

AllocatorKind = Literal["sequential", "round-robin", "burst", "auto"]
ConfirmationKind = Literal["polling", "tx-event"]


class RunConfig(BaseModel):
    """Run configuration consumed by the upload engine."""
    chunk_size_bytes: Union[int, Literal["auto"]] = DEFAULT_CHUNK_SIZE_BYTES
    allocator_kind: AllocatorKind = "round-robin"
    confirmation_kind: ConfirmationKind = "polling"
    confirmation_timeout_ms: int = Field(DEFAULT_CONFIRMATION_TIMEOUT_MS, gt=0)
    poll_interval_ms: int = Field(DEFAULT_POLL_INTERVAL_MS, gt=0)
    target_endpoint: Optional[str] = None
    endpoint_count: Optional[int] = Field(None, ge=1)
    max_concurrent_uploads: Optional[int] = Field(None, ge=1)
    max_retries_per_chunk: int = Field(DEFAULT_MAX_RETRIES_PER_CHUNK, ge=0)
    run_timeout_ms: int = Field(DEFAULT_RUN_TIMEOUT_MS, gt=0)
    gas_multiplier: float = Field(DEFAULT_GAS_MULTIPLIER, ge=1.0)
    rerank_every: Optional[int] = Field(None, ge=1)

    @field_validator("chunk_size_bytes")
    @classmethod
    def _positive_chunk_size(cls, value):
        if value != "auto" and value <= 0:
            raise ValueError("chunk_size_bytes must be positive or 'auto'")
        return value

    @model_validator(mode="after")
    def _sequential_needs_target(self):
        if self.allocator_kind == "sequential" and not self.target_endpoint:
            raise ValueError("sequential allocation requires target_endpoint")
        return self

    @property
    def confirmation_timeout(self) -> float:
        return self.confirmation_timeout_ms / 1000

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def run_timeout(self) -> float:
        return self.run_timeout_ms / 1000


class ManifestChunkRef(BaseModel):
    """One manifest entry on the wire."""
    index: str
    chain: str

    @field_validator("index")
    @classmethod
    def _numeric_suffix(cls, value: str) -> str:
        chunk_index_from_key(value)
        return value


class ManifestDocument(BaseModel):
    """Manifest wire format: {filepath, chunks: [{index, chain}, ...]}."""
    filepath: str
    chunks: List[ManifestChunkRef]

    @classmethod
    def from_manifest(cls, manifest: Manifest) -> 'ManifestDocument':
        entries = sorted(manifest.entries, key=lambda e: e.chunk_index)
        return cls(
            filepath=manifest.file_path,
            chunks=[ManifestChunkRef(index=e.chunk_key, chain=e.endpoint_name) for e in entries]
        )

    def to_manifest(self) -> Manifest:
        entries = [
            ManifestEntry(
                chunk_index=chunk_index_from_key(ref.index),
                endpoint_name=ref.chain,
                chunk_key=ref.index
            )
            for ref in self.chunks
        ]
        entries.sort(key=lambda e: e.chunk_index)
        return Manifest(file_path=self.filepath, entries=entries)

    def to_text(self) -> str:
        """Serialize as compact UTF-8 JSON text, entries sorted by index suffix."""
        chunks = sorted(self.chunks, key=lambda ref: chunk_index_from_key(ref.index))
        return json.dumps(
            {"filepath": self.filepath, "chunks": [ref.model_dump() for ref in chunks]},
            separators=(",", ":"),
            ensure_ascii=False
        )

    @classmethod
    def from_text(cls, text: str) -> 'ManifestDocument':
        return cls.model_validate_json(text)


class StoredChunk(BaseModel):
    index: str
    data: str


class StoredChunkResponse(BaseModel):
    """REST response for a stored chunk query."""
    stored_chunk: StoredChunk


class StoredManifest(BaseModel):
    url: str
    manifest: str


class StoredManifestResponse(BaseModel):
    """REST response for a stored manifest query."""
    stored_manifest: StoredManifest
