"""Accumulation and one-time commit of the chunk manifest."""

import threading
from typing import Dict, List, Optional, Tuple

from common.constants import DEFAULT_POLL_INTERVAL_MS
from common.logging_config import get_logger
from common.protocol import StoreManifestMessage
from common.types import Endpoint, Manifest, ManifestEntry, SubmissionResult, TxStatus
from uploader.confirmation import Confirmation, confirm_with_fallback, result_from_status
from uploader.exceptions import (
    ConfirmationTimeout,
    IncompleteUploadError,
    ManifestAlreadyCommittedError,
    SubmissionError,
    SubscriptionLost,
    UploadException,
)
from uploader.schemas import ManifestDocument

logger = get_logger(__name__)


class ManifestBuilder:
    """
    Collects confirmed chunk writes in any completion order.

    Recording is thread-safe. A chunk index is recorded at most once; a
    second confirmation for the same index is logged and ignored.
    """

    def __init__(self, file_path: str, expected_count: int):
        """
        Initialize manifest builder.

        Args:
            file_path: Logical path recorded in the manifest
            expected_count: Number of chunks the source was split into
        """
        self.file_path = file_path
        self.expected_count = expected_count
        self._results: Dict[int, SubmissionResult] = {}
        self._lock = threading.Lock()
        self._committed = False

    def record(self, result: SubmissionResult) -> bool:
        """
        Record one confirmed write.

        Returns:
            True if recorded, False if the index was already present
        """
        if not 0 <= result.chunk_index < self.expected_count:
            raise ValueError(f"Chunk index {result.chunk_index} outside 0..{self.expected_count - 1}")

        with self._lock:
            existing = self._results.get(result.chunk_index)
            if existing is not None:
                logger.warning(
                    f"Duplicate confirmation for chunk {result.chunk_index} "
                    f"({result.endpoint_name}/{result.transaction_ref}); keeping "
                    f"{existing.endpoint_name}/{existing.transaction_ref}"
                )
                return False
            self._results[result.chunk_index] = result
            return True

    def has(self, chunk_index: int) -> bool:
        with self._lock:
            return chunk_index in self._results

    def results(self) -> List[SubmissionResult]:
        with self._lock:
            return [self._results[i] for i in sorted(self._results)]

    def missing_indices(self) -> List[int]:
        with self._lock:
            return [i for i in range(self.expected_count) if i not in self._results]

    def is_complete(self) -> bool:
        return not self.missing_indices()

    def build(self) -> Manifest:
        """
        Build the manifest, entries sorted by chunk index.

        Raises:
            IncompleteUploadError: If any chunk is not yet confirmed
        """
        missing = self.missing_indices()
        if missing:
            raise IncompleteUploadError(missing)

        entries = [
            ManifestEntry(
                chunk_index=result.chunk_index,
                endpoint_name=result.endpoint_name,
                chunk_key=result.chunk_key
            )
            for result in self.results()
        ]
        return Manifest(file_path=self.file_path, entries=entries)

    def serialize(self) -> str:
        """Serialize the manifest to its wire JSON text."""
        return ManifestDocument.from_manifest(self.build()).to_text()

    async def commit(
        self,
        transmitter,
        confirmation: Confirmation,
        index_endpoint: Endpoint,
        manifest_key: str,
        timeout: float,
        poll_interval: Optional[float] = None
    ) -> Tuple[Manifest, str]:
        """
        Write the manifest to the index endpoint and wait for its inclusion.

        Args:
            transmitter: Transmitter used for the write
            confirmation: Confirmation strategy
            index_endpoint: Endpoint holding manifests
            manifest_key: Key the manifest is stored under
            timeout: Confirmation timeout in seconds
            poll_interval: Poll interval if the event channel is lost

        Returns:
            Tuple of (manifest, transaction_ref)

        Raises:
            ManifestAlreadyCommittedError: If commit was already called
            IncompleteUploadError: If chunks are still unconfirmed
            SubmissionError: If the write is rejected or fails execution
            ConfirmationTimeout: If the write is not included in time and a
                status check does not find it either
        """
        with self._lock:
            if self._committed:
                raise ManifestAlreadyCommittedError(f"Manifest '{manifest_key}' already committed")

        manifest = self.build()
        text = ManifestDocument.from_manifest(manifest).to_text()

        with self._lock:
            if self._committed:
                raise ManifestAlreadyCommittedError(f"Manifest '{manifest_key}' already committed")
            self._committed = True

        message = StoreManifestMessage(
            creator=transmitter.ledger.address_for(index_endpoint),
            url=manifest_key,
            manifest=text
        )

        try:
            await confirmation.prepare(index_endpoint)
        except SubscriptionLost as e:
            logger.warning(f"Event subscription on {index_endpoint.name} unavailable: {e}")

        async with transmitter.serialized(index_endpoint):
            transaction_ref = await transmitter.submit_message(index_endpoint, message)
            result = await confirm_with_fallback(
                confirmation,
                transmitter.ledger,
                transaction_ref,
                index_endpoint,
                timeout,
                poll_interval or DEFAULT_POLL_INTERVAL_MS / 1000
            )

        if result.timed_out:
            status = await self._status_after_timeout(transmitter.ledger, index_endpoint, transaction_ref)
            if status is None:
                raise ConfirmationTimeout(transaction_ref, timeout)
            result = result_from_status(status)
        if not result.confirmed:
            raise SubmissionError(f"manifest write failed: {result.error}", index_endpoint.name)

        logger.info(
            f"Manifest '{manifest_key}' committed to {index_endpoint.name} "
            f"({len(manifest.entries)} entries, tx {transaction_ref})"
        )
        return manifest, transaction_ref

    async def _status_after_timeout(self, ledger, index_endpoint: Endpoint, transaction_ref: str) -> Optional[TxStatus]:
        """Check once whether a timed-out manifest write has since been included."""
        try:
            status = await ledger.get_transaction_status(index_endpoint, transaction_ref)
        except UploadException as e:
            logger.warning(f"Could not check manifest write {transaction_ref} on {index_endpoint.name}: {e}")
            return None

        if status is not None:
            logger.info(f"Timed-out manifest write {transaction_ref} included at height {status.height}")
        return status
