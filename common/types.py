"""Shared data type definitions (Chunk, Endpoint, Manifest, confirmation results)."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


@dataclass(frozen=True)
class Chunk:
    """
    Contiguous, ordered slice of a source file.

    Attributes:
        index: 0-based position in the source
        data: Immutable chunk payload
        key: Ledger index key ("<prefix>-<index>")
    """
    index: int
    data: bytes = field(repr=False)
    key: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)


class EndpointRole(str, Enum):
    DATA = "data"
    INDEX = "index"


@dataclass(frozen=True)
class Endpoint:
    """
    One independently-addressable ledger node.

    Attributes:
        name: Unique endpoint name (e.g. 'data-0', 'meta-0')
        role: DATA for chunk storage, INDEX for manifests
        rpc_address: RPC base URL (status, mempool, tx, websocket)
        rest_address: REST base URL (content queries, broadcast)
    """
    name: str
    role: EndpointRole
    rpc_address: str
    rest_address: str

    @property
    def websocket_url(self) -> str:
        base = self.rpc_address.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/websocket"


@dataclass(frozen=True)
class AllocationDecision:
    chunk: Chunk
    endpoint: Endpoint


@dataclass(frozen=True)
class SubmissionResult:
    """Confirmed write of one chunk."""
    chunk_index: int
    endpoint_name: str
    transaction_ref: str
    gas_used: int = 0
    chunk_key: str = ""


@dataclass(frozen=True)
class ManifestEntry:
    chunk_index: int
    endpoint_name: str
    chunk_key: str


@dataclass(frozen=True)
class Manifest:
    """
    Ordered index mapping chunk positions to the endpoint holding each chunk.
    """
    file_path: str
    entries: List[ManifestEntry]

    def endpoint_names(self) -> List[str]:
        """Distinct endpoint names in first-use order."""
        seen = []
        for entry in self.entries:
            if entry.endpoint_name not in seen:
                seen.append(entry.endpoint_name)
        return seen


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class ConfirmationResult:
    status: ConfirmationStatus
    transaction_ref: str
    height: Optional[int] = None
    gas_used: int = 0
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status == ConfirmationStatus.CONFIRMED

    @property
    def timed_out(self) -> bool:
        return self.status == ConfirmationStatus.TIMED_OUT


@dataclass(frozen=True)
class TxStatus:
    """
    Inclusion report for a transaction, from a status query or an event.
    """
    transaction_ref: str
    height: int
    code: int = 0
    gas_used: int = 0
    log: str = ""

    @property
    def succeeded(self) -> bool:
        return self.code == 0


TxEvent = TxStatus


@dataclass(frozen=True)
class AmbiguousWrite:
    """
    A write whose confirmation timed out; it may still land later.

    `chunk_index` is None for the manifest write.
    """
    chunk_index: Optional[int]
    endpoint_name: str
    transaction_ref: str
