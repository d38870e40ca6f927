"""Download and byte-for-byte verification of an uploaded file."""

import asyncio
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from common.endpoint_discovery import EndpointSnapshot
from common.logging_config import get_logger
from common.types import Manifest
from uploader.exceptions import EndpointNotFoundError, ManifestNotFoundError, VerificationMismatch
from uploader.schemas import ManifestDocument

logger = get_logger(__name__)


@dataclass(frozen=True)
class VerificationReport:
    """Outcome of a successful verification."""
    manifest_key: str
    chunk_count: int
    original_size: int
    downloaded_size: int
    compared_bytes: int
    message: str


def first_difference(left: bytes, right: bytes) -> Optional[int]:
    """
    Offset of the first differing byte, or None if equal.

    When one input is a prefix of the other, the offset is the shorter length.
    """
    if left == right:
        return None
    for offset, (a, b) in enumerate(zip(left, right)):
        if a != b:
            return offset
    if len(left) != len(right):
        return min(len(left), len(right))
    return None


class Verifier:
    """Reconstructs a file from its manifest and compares it with the source."""

    def __init__(self, ledger, snapshot: EndpointSnapshot):
        """
        Initialize verifier.

        Args:
            ledger: Ledger client for content reads
            snapshot: Endpoint snapshot resolving manifest endpoint names
        """
        self.ledger = ledger
        self.snapshot = snapshot

    async def fetch_manifest(self, manifest_key: str) -> Manifest:
        """
        Fetch and parse a manifest from the index endpoint.

        Raises:
            ManifestNotFoundError: If absent or unparseable
        """
        text = await self.ledger.get_manifest(self.snapshot.index_endpoint, manifest_key)
        try:
            return ManifestDocument.from_text(text).to_manifest()
        except (ValidationError, ValueError) as e:
            raise ManifestNotFoundError(f"Manifest '{manifest_key}' is malformed: {e}") from e

    async def download(self, manifest_key: str) -> bytes:
        """
        Reconstruct the file: fetch every chunk in parallel and concatenate in manifest order.

        Raises:
            EndpointNotFoundError: If the manifest names an endpoint not in the snapshot
            ChunkNotFoundError: If an endpoint lacks a listed chunk
        """
        manifest = await self.fetch_manifest(manifest_key)
        return await self.download_manifest(manifest, manifest_key)

    async def download_manifest(self, manifest: Manifest, manifest_key: str = "") -> bytes:
        endpoints = []
        for entry in manifest.entries:
            endpoint = self.snapshot.get(entry.endpoint_name)
            if endpoint is None:
                raise EndpointNotFoundError(
                    f"Manifest '{manifest_key}' references unknown endpoint '{entry.endpoint_name}'"
                )
            endpoints.append(endpoint)

        logger.info(f"Downloading {len(manifest.entries)} chunk(s) of '{manifest_key}'")
        payloads = await asyncio.gather(
            *(self.ledger.get_chunk(endpoint, entry.chunk_key) for endpoint, entry in zip(endpoints, manifest.entries))
        )
        return b"".join(payloads)

    async def verify(self, manifest_key: str, original: bytes, compare_bytes: Optional[int] = None) -> VerificationReport:
        """
        Download the file and compare it with the original.

        Args:
            manifest_key: Key of the committed manifest
            original: Source bytes
            compare_bytes: Compare only this many leading bytes (None or 0 for all)

        Returns:
            VerificationReport

        Raises:
            VerificationMismatch: With the first differing offset
        """
        manifest = await self.fetch_manifest(manifest_key)
        downloaded = await self.download_manifest(manifest, manifest_key)

        if compare_bytes:
            if len(original) < compare_bytes or len(downloaded) < compare_bytes:
                raise VerificationMismatch(
                    f"Fewer than {compare_bytes} bytes to compare "
                    f"(original {len(original)}, downloaded {len(downloaded)})",
                    offset=min(len(original), len(downloaded))
                )
            left, right = original[:compare_bytes], downloaded[:compare_bytes]
        else:
            left, right = original, downloaded

        offset = first_difference(left, right)
        if offset is not None:
            message = (
                f"Verification of '{manifest_key}' failed at offset {offset} "
                f"(original {len(original)} bytes, downloaded {len(downloaded)} bytes)"
            )
            logger.warning(message)
            raise VerificationMismatch(message, offset=offset)

        message = f"Verified {len(left)} byte(s) of '{manifest_key}'"
        logger.info(message)
        return VerificationReport(
            manifest_key=manifest_key,
            chunk_count=len(manifest.entries),
            original_size=len(original),
            downloaded_size=len(downloaded),
            compared_bytes=len(left),
            message=message
        )
