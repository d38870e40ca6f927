"""Per-endpoint serialized submission of ledger writes."""

import asyncio
import math
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Tuple

from common.constants import DEFAULT_GAS_MULTIPLIER
from common.identity import LedgerMessage
from common.logging_config import get_logger
from common.protocol import StoreChunkMessage
from common.types import Chunk, Endpoint
from uploader.exceptions import SubmissionError, UploadException

logger = get_logger(__name__)


class Transmitter:
    """
    Submits writes to endpoints, at most one in flight per endpoint.

    Each endpoint has one asyncio.Lock. Callers hold it through
    `serialized(endpoint)` for the whole submit-and-confirm cycle of a write,
    since the endpoint's signing account cannot tolerate overlapping writes.
    The per-endpoint cost estimate is cached per message type.
    """

    def __init__(self, ledger, gas_multiplier: float = DEFAULT_GAS_MULTIPLIER):
        """
        Initialize transmitter.

        Args:
            ledger: Ledger client used for estimation and submission
            gas_multiplier: Safety multiplier applied to cost estimates
        """
        self.ledger = ledger
        self.gas_multiplier = gas_multiplier
        self._locks: Dict[str, asyncio.Lock] = {}
        self._cost_cache: Dict[Tuple[str, str], int] = {}
        self._cost_lock = asyncio.Lock()

    def _lock_for(self, endpoint_name: str) -> asyncio.Lock:
        lock = self._locks.get(endpoint_name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[endpoint_name] = lock
        return lock

    @asynccontextmanager
    async def serialized(self, endpoint: Endpoint) -> AsyncIterator[Endpoint]:
        """Hold the endpoint's write lock for the duration of the block."""
        lock = self._lock_for(endpoint.name)
        async with lock:
            yield endpoint

    def is_busy(self, endpoint_name: str) -> bool:
        lock = self._locks.get(endpoint_name)
        return lock is not None and lock.locked()

    def cached_cost(self, endpoint_name: str, type_url: str) -> Optional[int]:
        return self._cost_cache.get((endpoint_name, type_url))

    def invalidate_cost(self, endpoint_name: Optional[str] = None) -> None:
        """Drop cached cost estimates for one endpoint, or all endpoints."""
        if endpoint_name is None:
            self._cost_cache.clear()
            return
        for key in [k for k in self._cost_cache if k[0] == endpoint_name]:
            del self._cost_cache[key]

    async def _cost_for(self, endpoint: Endpoint, message: LedgerMessage) -> int:
        key = (endpoint.name, message.type_url)
        async with self._cost_lock:
            cost = self._cost_cache.get(key)
            if cost is not None:
                return cost

        estimate = await self.ledger.estimate_cost(endpoint, message)
        cost = math.ceil(estimate * self.gas_multiplier)

        async with self._cost_lock:
            # First estimate wins; a concurrent one for another write is discarded
            cost = self._cost_cache.setdefault(key, cost)

        logger.info(f"Cost estimate for {message.type_url} on {endpoint.name}: {estimate} -> limit {cost}")
        return cost

    async def submit_message(self, endpoint: Endpoint, message: LedgerMessage) -> str:
        """
        Submit one prepared write to an endpoint.

        Args:
            endpoint: Target endpoint
            message: Ledger write message

        Returns:
            Transaction reference of the accepted write

        Raises:
            SubmissionError: On estimation failure, transport failure or rejection
        """
        try:
            cost = await self._cost_for(endpoint, message)
            return await self.ledger.submit(endpoint, message, cost)
        except SubmissionError:
            raise
        except UploadException as e:
            raise SubmissionError(str(e), endpoint.name) from e

    async def submit(self, chunk: Chunk, endpoint: Endpoint) -> str:
        """
        Submit one chunk write.

        The caller is expected to hold `serialized(endpoint)`.

        Returns:
            Transaction reference

        Raises:
            SubmissionError: If the write could not be submitted
        """
        message = StoreChunkMessage(
            creator=self.ledger.address_for(endpoint),
            index=chunk.key,
            data=chunk.data
        )
        transaction_ref = await self.submit_message(endpoint, message)
        logger.debug(f"Submitted chunk {chunk.index} ({chunk.size_bytes} bytes) to {endpoint.name}: {transaction_ref}")
        return transaction_ref
