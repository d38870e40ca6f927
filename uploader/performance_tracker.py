"""Per-run upload statistics."""

import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class UploadStats:
    """
    Summary of one upload run.

    Attributes:
        duration_ms: Wall time from start() to stop()
        total_tx: Writes submitted (chunks and manifest)
        success_tx: Writes confirmed
        failed_tx: Writes rejected, failed or timed out
        total_gas_used: Gas consumed by confirmed writes
        avg_gas_per_tx: total_gas_used / success_tx
        used_endpoints: Endpoints holding at least one confirmed chunk
        chunks_per_endpoint: Confirmed chunks per endpoint
        retries: Chunks put back on the queue
        bytes_uploaded: Payload bytes of confirmed chunks
        throughput_kbps: bytes_uploaded / duration, in KiB/s
    """
    duration_ms: int
    total_tx: int
    success_tx: int
    failed_tx: int
    total_gas_used: int
    avg_gas_per_tx: int
    used_endpoints: List[str]
    chunks_per_endpoint: Dict[str, int] = field(default_factory=dict)
    retries: int = 0
    bytes_uploaded: int = 0
    throughput_kbps: float = 0.0
    chunk_size_bytes: Optional[int] = None


class PerformanceTracker:
    """Thread-safe counters updated by the upload workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._started: Optional[float] = None
        self._stopped: Optional[float] = None
        self._submitted = 0
        self._confirmed = 0
        self._failed = 0
        self._gas = 0
        self._retries = 0
        self._bytes = 0
        self._chunks_per_endpoint: Counter = Counter()
        self.chunk_size_bytes: Optional[int] = None

    def start(self) -> None:
        with self._lock:
            self._started = time.monotonic()
            self._stopped = None

    def stop(self) -> None:
        with self._lock:
            self._stopped = time.monotonic()

    def record_submission(self) -> None:
        with self._lock:
            self._submitted += 1

    def record_confirmation(self, endpoint_name: Optional[str], gas_used: int, size_bytes: int = 0) -> None:
        """Count a confirmed write; endpoint_name is None for the manifest write."""
        with self._lock:
            self._confirmed += 1
            self._gas += gas_used
            self._bytes += size_bytes
            if endpoint_name is not None:
                self._chunks_per_endpoint[endpoint_name] += 1

    def record_failure(self) -> None:
        with self._lock:
            self._failed += 1

    def record_retry(self) -> None:
        with self._lock:
            self._retries += 1

    def report(self) -> UploadStats:
        with self._lock:
            if self._started is None:
                duration = 0.0
            else:
                duration = (self._stopped or time.monotonic()) - self._started

            return UploadStats(
                duration_ms=int(duration * 1000),
                total_tx=self._submitted,
                success_tx=self._confirmed,
                failed_tx=self._failed,
                total_gas_used=self._gas,
                avg_gas_per_tx=self._gas // self._confirmed if self._confirmed else 0,
                used_endpoints=sorted(self._chunks_per_endpoint),
                chunks_per_endpoint=dict(self._chunks_per_endpoint),
                retries=self._retries,
                bytes_uploaded=self._bytes,
                throughput_kbps=(self._bytes / 1024) / duration if duration > 0 else 0.0,
                chunk_size_bytes=self.chunk_size_bytes
            )
