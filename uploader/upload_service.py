"""Upload engine: chunk, allocate, transmit, confirm, commit the manifest."""

import asyncio
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import BinaryIO, Deque, Dict, List, Optional, Sequence

from common.constants import DEFAULT_READINESS_TIMEOUT_SECONDS
from common.endpoint_discovery import DiscoveryError, EndpointSnapshot
from common.logging_config import get_logger, set_correlation_id
from common.types import AllocationDecision, AmbiguousWrite, Chunk, Endpoint, Manifest, SubmissionResult
from uploader.allocator import Allocator, LiveState, RoundRobinAllocator, SequentialAllocator, build_allocator
from uploader.chunker import buffer_source, resolve_chunk_size, source_size, split
from uploader.confirmation import Confirmation, build_confirmation, confirm_with_fallback
from uploader.exceptions import (
    ConfirmationTimeout,
    EndpointUnavailableError,
    InvalidConfigurationError,
    NoEndpointAvailable,
    SubmissionError,
    UploadException,
    UploadFailedError,
)
from uploader.manifest_builder import ManifestBuilder
from uploader.performance_tracker import PerformanceTracker, UploadStats
from uploader.schemas import RunConfig
from uploader.transmitter import Transmitter
from uploader.verifier import VerificationReport, Verifier

logger = get_logger(__name__)


@dataclass
class UploadResult:
    """Outcome of a committed upload."""
    manifest: Manifest
    manifest_key: str
    manifest_transaction_ref: str
    results: List[SubmissionResult]
    ambiguous_writes: List[AmbiguousWrite] = field(default_factory=list)
    stats: Optional[UploadStats] = None


class PendingChunkQueue:
    """
    Work queue of chunks still to be written.

    `take()` hands out one chunk at a time. It blocks while the queue is
    empty but chunks are still outstanding (they may be re-queued), and
    returns None once nothing is queued and nothing is outstanding.
    """

    def __init__(self, chunks: Sequence[Chunk]):
        self._queue: Deque[Chunk] = deque(chunks)
        self._outstanding = 0
        self._attempts: Counter = Counter()
        self._condition = asyncio.Condition()

    async def take(self) -> Optional[Chunk]:
        async with self._condition:
            while not self._queue and self._outstanding:
                await self._condition.wait()
            if not self._queue:
                return None
            chunk = self._queue.popleft()
            self._outstanding += 1
            self._attempts[chunk.index] += 1
            return chunk

    async def requeue(self, chunk: Chunk) -> None:
        """Put an outstanding chunk back at the head of the queue."""
        async with self._condition:
            self._queue.appendleft(chunk)
            self._outstanding -= 1
            self._condition.notify_all()

    async def finish(self, chunk: Chunk) -> None:
        async with self._condition:
            self._outstanding -= 1
            self._condition.notify_all()

    def attempts(self, chunk_index: int) -> int:
        return self._attempts[chunk_index]

    def __len__(self) -> int:
        return len(self._queue)


class _UploadRun:
    """Mutable state of one upload run, shared by its workers."""

    def __init__(self, run_id: str, chunks: List[Chunk], builder: ManifestBuilder, tracker: PerformanceTracker):
        self.run_id = run_id
        self.chunks = chunks
        self.builder = builder
        self.tracker = tracker
        self.queue = PendingChunkQueue(chunks)
        self.ambiguous: Dict[int, List[AmbiguousWrite]] = {}
        self.abandoned: List[int] = []

    def unresolved_ambiguous(self) -> List[AmbiguousWrite]:
        return [
            write
            for index in sorted(self.ambiguous)
            for write in self.ambiguous[index]
        ]


class UploadService:
    """
    Uploads a file as chunks spread over the data endpoints.

    Workers take chunks from a shared queue, allocate an endpoint, submit
    under that endpoint's write lock and wait for inclusion before the lock
    is released. Confirmed writes are recorded in the manifest builder;
    failed or timed-out writes are re-queued up to `max_retries_per_chunk`.
    The manifest is committed only once every chunk is confirmed.
    """

    def __init__(
        self,
        ledger,
        snapshot: EndpointSnapshot,
        config: RunConfig,
        allocator: Optional[Allocator] = None,
        confirmation: Optional[Confirmation] = None
    ):
        """
        Initialize upload service.

        Args:
            ledger: Ledger client
            snapshot: Endpoint snapshot taken at run start
            config: Run configuration
            allocator: Allocation strategy (built from config if None)
            confirmation: Confirmation strategy (built from config if None)

        Raises:
            InvalidConfigurationError: If endpoint_count exceeds the discovered endpoints
        """
        try:
            self.snapshot = snapshot.select(config.endpoint_count)
        except DiscoveryError as e:
            raise InvalidConfigurationError(str(e)) from e

        self.ledger = ledger
        self.config = config
        self.transmitter = Transmitter(ledger, config.gas_multiplier)
        self.allocator = allocator or build_allocator(config)
        self.confirmation = confirmation or build_confirmation(config, ledger)
        self.live_state = LiveState(ledger, self.transmitter.is_busy)
        self.verifier = Verifier(ledger, self.snapshot)
        self._fallback_allocator = RoundRobinAllocator()

    @property
    def data_endpoints(self) -> List[Endpoint]:
        return self.snapshot.data_endpoints

    def worker_count(self, chunk_count: int) -> int:
        if isinstance(self.allocator, SequentialAllocator):
            return 1
        workers = self.config.max_concurrent_uploads or len(self.data_endpoints)
        return max(1, min(workers, chunk_count))

    async def upload(self, stream: BinaryIO, file_path: str, manifest_key: Optional[str] = None) -> UploadResult:
        """
        Upload a source stream and commit its manifest.

        Args:
            stream: Readable binary source
            file_path: Logical path recorded in the manifest
            manifest_key: Key the manifest is stored under (defaults to file_path)

        Returns:
            UploadResult

        Raises:
            SourceReadError: If the source cannot be read
            UploadFailedError: If some chunks never confirmed (retry limit or run timeout),
                or the manifest write timed out and was not found included
            EndpointNotFoundError: If the sequential target is not a data endpoint
        """
        run_id = uuid.uuid4().hex[:8]
        set_correlation_id(get_logger("uploader"), run_id)
        manifest_key = manifest_key or file_path

        size = source_size(stream)
        if size is None and self.config.chunk_size_bytes == "auto":
            stream = buffer_source(stream)
            size = source_size(stream)
        chunk_size = resolve_chunk_size(self.config.chunk_size_bytes, size or 0, len(self.data_endpoints))
        chunks = split(stream, chunk_size)

        tracker = PerformanceTracker()
        tracker.chunk_size_bytes = chunk_size
        run = _UploadRun(run_id, chunks, ManifestBuilder(file_path, len(chunks)), tracker)

        logger.info(
            f"Upload {run_id} of '{file_path}': {len(chunks)} chunk(s) of {chunk_size} bytes over "
            f"{len(self.data_endpoints)} data endpoint(s) [allocator={self.config.allocator_kind}, "
            f"confirmation={self.config.confirmation_kind}]"
        )

        tracker.start()
        if chunks:
            await self._run_workers(run)

        missing = run.builder.missing_indices()
        if missing:
            tracker.stop()
            logger.error(
                f"Upload {run_id} failed: {len(missing)} chunk(s) unconfirmed {missing[:10]}, "
                f"{len(run.abandoned)} abandoned after {self.config.max_retries_per_chunk} retries"
            )
            raise UploadFailedError(
                f"Upload of '{file_path}' failed: {len(missing)} chunk(s) unconfirmed",
                failed_indices=missing,
                ambiguous_writes=run.unresolved_ambiguous()
            )

        tracker.record_submission()
        try:
            manifest, transaction_ref = await run.builder.commit(
                self.transmitter,
                self.confirmation,
                self.snapshot.index_endpoint,
                manifest_key,
                self.config.confirmation_timeout,
                self.config.poll_interval
            )
        except ConfirmationTimeout as e:
            tracker.record_failure()
            tracker.stop()
            logger.error(
                f"Upload {run_id}: all {len(chunks)} chunk(s) confirmed but manifest write "
                f"{e.transaction_ref} is unconfirmed"
            )
            manifest_write = AmbiguousWrite(
                chunk_index=None,
                endpoint_name=self.snapshot.index_endpoint.name,
                transaction_ref=e.transaction_ref
            )
            raise UploadFailedError(
                f"Manifest '{manifest_key}' of '{file_path}' not confirmed within {e.timeout:.1f}s",
                failed_indices=[],
                ambiguous_writes=run.unresolved_ambiguous() + [manifest_write],
                results=run.builder.results()
            ) from e
        tracker.record_confirmation(None, 0)
        tracker.stop()

        stats = tracker.report()
        logger.info(
            f"Upload {run_id} complete: {stats.success_tx} tx, {stats.total_gas_used} gas, "
            f"{stats.duration_ms} ms, endpoints {stats.used_endpoints}"
        )
        return UploadResult(
            manifest=manifest,
            manifest_key=manifest_key,
            manifest_transaction_ref=transaction_ref,
            results=run.builder.results(),
            ambiguous_writes=run.unresolved_ambiguous(),
            stats=stats
        )

    async def _run_workers(self, run: _UploadRun) -> None:
        count = self.worker_count(len(run.chunks))
        tasks = [asyncio.create_task(self._worker(run, n)) for n in range(count)]
        try:
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=self.config.run_timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"Upload {run.run_id} exceeded run timeout of {self.config.run_timeout:.1f}s; aborting workers"
            )
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _worker(self, run: _UploadRun, worker_id: int) -> None:
        while True:
            chunk = await run.queue.take()
            if chunk is None:
                logger.debug(f"Worker {worker_id} finished")
                return

            if await self._process(run, chunk):
                await run.queue.finish(chunk)
            elif run.queue.attempts(chunk.index) > self.config.max_retries_per_chunk:
                logger.error(
                    f"Chunk {chunk.index} abandoned after {run.queue.attempts(chunk.index)} attempt(s)"
                )
                run.abandoned.append(chunk.index)
                await run.queue.finish(chunk)
            else:
                run.tracker.record_retry()
                await run.queue.requeue(chunk)

    async def _allocate(self, chunk: Chunk) -> AllocationDecision:
        try:
            endpoint = await self.allocator.allocate(chunk, self.data_endpoints, self.live_state)
        except NoEndpointAvailable as e:
            logger.warning(f"{e}; falling back to round-robin for chunk {chunk.index}")
            endpoint = await self._fallback_allocator.allocate(chunk, self.data_endpoints, self.live_state)
        return AllocationDecision(chunk=chunk, endpoint=endpoint)

    def _record(self, run: _UploadRun, chunk: Chunk, endpoint_name: str, transaction_ref: str, gas_used: int) -> None:
        recorded = run.builder.record(SubmissionResult(
            chunk_index=chunk.index,
            endpoint_name=endpoint_name,
            transaction_ref=transaction_ref,
            gas_used=gas_used,
            chunk_key=chunk.key
        ))
        if recorded:
            run.tracker.record_confirmation(endpoint_name, gas_used, chunk.size_bytes)

    async def _reconcile(self, run: _UploadRun, chunk: Chunk) -> bool:
        """
        Check whether an earlier timed-out write of this chunk has since landed.

        Returns:
            True if it landed and was recorded
        """
        for write in list(run.ambiguous.get(chunk.index, [])):
            endpoint = self.snapshot.get(write.endpoint_name)
            try:
                status = await self.ledger.get_transaction_status(endpoint, write.transaction_ref)
            except UploadException as e:
                logger.warning(f"Could not reconcile {write.transaction_ref} for chunk {chunk.index}: {e}")
                continue

            if status is not None and status.succeeded:
                logger.info(
                    f"Timed-out write {write.transaction_ref} of chunk {chunk.index} landed "
                    f"at height {status.height}; not re-writing"
                )
                run.ambiguous[chunk.index].remove(write)
                if not run.ambiguous[chunk.index]:
                    del run.ambiguous[chunk.index]
                self._record(run, chunk, write.endpoint_name, write.transaction_ref, status.gas_used)
                return True
        return False

    async def _process(self, run: _UploadRun, chunk: Chunk) -> bool:
        """
        Write one chunk and wait for its inclusion.

        Returns:
            True if the chunk is confirmed, False if it should be retried
        """
        if chunk.index in run.ambiguous and await self._reconcile(run, chunk):
            return True

        decision = await self._allocate(chunk)
        endpoint = decision.endpoint
        timeout = self.config.confirmation_timeout

        try:
            await self.confirmation.prepare(endpoint)
        except UploadException as e:
            logger.warning(f"Event subscription on {endpoint.name} unavailable: {e}")

        async with self.transmitter.serialized(endpoint):
            run.tracker.record_submission()
            try:
                transaction_ref = await self.transmitter.submit(decision.chunk, endpoint)
            except SubmissionError as e:
                logger.warning(f"Chunk {chunk.index} submission to {endpoint.name} failed: {e.reason}")
                run.tracker.record_failure()
                return False

            result = await confirm_with_fallback(
                self.confirmation, self.ledger, transaction_ref, endpoint, timeout, self.config.poll_interval
            )

        if result.confirmed:
            self._record(run, chunk, endpoint.name, transaction_ref, result.gas_used)
            logger.debug(f"Chunk {chunk.index} confirmed on {endpoint.name} at height {result.height}")
            return True

        run.tracker.record_failure()
        if result.timed_out:
            run.ambiguous.setdefault(chunk.index, []).append(
                AmbiguousWrite(chunk_index=chunk.index, endpoint_name=endpoint.name, transaction_ref=transaction_ref)
            )
            logger.warning(f"Chunk {chunk.index} write {transaction_ref} on {endpoint.name} timed out")
        else:
            # Re-estimate on the next write to this endpoint
            self.transmitter.invalidate_cost(endpoint.name)
            logger.warning(f"Chunk {chunk.index} write {transaction_ref} on {endpoint.name} failed: {result.error}")
        return False

    async def verify(self, manifest_key: str, original: bytes, compare_bytes: Optional[int] = None) -> VerificationReport:
        """Download the uploaded file and compare it with the original bytes."""
        return await self.verifier.verify(manifest_key, original, compare_bytes)

    async def wait_until_ready(self, timeout: float = DEFAULT_READINESS_TIMEOUT_SECONDS) -> None:
        """
        Wait until every endpoint reports ready.

        Raises:
            EndpointUnavailableError: If some endpoints are not ready within `timeout` seconds
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        endpoints = self.snapshot.all_endpoints()

        while True:
            ready = await asyncio.gather(*(self.ledger.is_ready(e) for e in endpoints))
            pending = [e.name for e, ok in zip(endpoints, ready) if not ok]
            if not pending:
                logger.info(f"All {len(endpoints)} endpoint(s) ready")
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise EndpointUnavailableError(f"Endpoints not ready after {timeout:.0f}s: {pending}")
            logger.info(f"Waiting for endpoints {pending}")
            await asyncio.sleep(min(self.config.poll_interval, remaining))

    async def close(self) -> None:
        await self.confirmation.close()
