"""Chunk-to-endpoint allocation strategies."""

import asyncio
import math
import random
from typing import Callable, Dict, Optional, Sequence, Union

from common.logging_config import get_logger
from common.types import Chunk, Endpoint
from uploader.exceptions import (
    EmptyEndpointPoolError,
    EndpointNotFoundError,
    InvalidConfigurationError,
    NoEndpointAvailable,
)
from uploader.schemas import RunConfig

logger = get_logger(__name__)


class LiveState:
    """
    Live load signals consulted by the load-aware strategies.

    Args:
        ledger: Ledger client answering pending transaction counts
        busy_check: Returns True while an endpoint's write lock is held
    """

    def __init__(self, ledger, busy_check: Optional[Callable[[str], bool]] = None):
        self.ledger = ledger
        self._busy_check = busy_check

    async def pending_count(self, endpoint: Endpoint) -> int:
        return await self.ledger.pending_transaction_count(endpoint)

    def is_busy(self, endpoint_name: str) -> bool:
        return bool(self._busy_check and self._busy_check(endpoint_name))

    async def load_snapshot(self, pool: Sequence[Endpoint]) -> Dict[str, float]:
        """
        Query every endpoint's pending count concurrently.

        Returns:
            Dict of endpoint name -> pending count (inf for failed queries)
        """
        counts = await asyncio.gather(
            *(self.pending_count(endpoint) for endpoint in pool),
            return_exceptions=True
        )

        loads = {}
        for endpoint, count in zip(pool, counts):
            if isinstance(count, BaseException):
                logger.warning(f"Load query failed for {endpoint.name}: {count}")
                loads[endpoint.name] = math.inf
            else:
                loads[endpoint.name] = float(count)
        return loads


def _require_pool(pool: Sequence[Endpoint]) -> None:
    if not pool:
        raise EmptyEndpointPoolError("Cannot allocate against an empty endpoint pool")


def _pick_least_loaded(pool: Sequence[Endpoint], loads: Dict[str, float], rng: random.Random) -> Endpoint:
    candidates = [e for e in pool if loads.get(e.name, math.inf) != math.inf]
    if not candidates:
        raise NoEndpointAvailable(f"No endpoint answered its load query ({len(pool)} tried)")

    lowest = min(loads[e.name] for e in candidates)
    tied = [e for e in candidates if loads[e.name] == lowest]
    return rng.choice(tied)


class SequentialAllocator:
    """Sends every chunk to one named endpoint."""

    def __init__(self, target_name: str):
        if not target_name:
            raise InvalidConfigurationError("SequentialAllocator requires a target endpoint name")
        self.target_name = target_name

    async def allocate(self, chunk: Chunk, endpoint_pool: Sequence[Endpoint], live_state: Optional[LiveState] = None) -> Endpoint:
        _require_pool(endpoint_pool)
        for endpoint in endpoint_pool:
            if endpoint.name == self.target_name:
                return endpoint
        raise EndpointNotFoundError(f"Target endpoint '{self.target_name}' is not in the pool")


class RoundRobinAllocator:
    """Chunk i goes to pool[i mod len(pool)]."""

    async def allocate(self, chunk: Chunk, endpoint_pool: Sequence[Endpoint], live_state: Optional[LiveState] = None) -> Endpoint:
        _require_pool(endpoint_pool)
        return endpoint_pool[chunk.index % len(endpoint_pool)]


class BurstDistributeAllocator:
    """
    Load-aware allocation with a re-ranking cursor.

    Observed pending counts are refreshed every `rerank_every` decisions
    (default: pool size). Between refreshes the effective load of an
    endpoint is its observed count plus the chunks assigned to it since the
    last refresh, plus one while its write lock is held. The minimum
    effective load wins; ties are broken uniformly at random.
    """

    def __init__(self, rerank_every: Optional[int] = None, rng: Optional[random.Random] = None):
        if rerank_every is not None and rerank_every <= 0:
            raise InvalidConfigurationError("rerank_every must be positive")
        self.rerank_every = rerank_every
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()
        self._observed: Dict[str, float] = {}
        self._assigned: Dict[str, int] = {}
        self._decisions_since_rerank = 0

    def _needs_rerank(self, pool: Sequence[Endpoint]) -> bool:
        every = self.rerank_every or len(pool)
        if set(self._observed) != {e.name for e in pool}:
            return True
        return self._decisions_since_rerank >= every

    async def _rerank(self, pool: Sequence[Endpoint], live_state: LiveState) -> None:
        loads = await live_state.load_snapshot(pool)
        if all(load == math.inf for load in loads.values()):
            self._observed = {}
            raise NoEndpointAvailable(f"No endpoint answered its load query ({len(pool)} tried)")

        self._observed = loads
        self._assigned = {e.name: 0 for e in pool}
        self._decisions_since_rerank = 0
        logger.debug(f"Re-ranked endpoints by pending count: {loads}")

    def effective_loads(self, pool: Sequence[Endpoint], live_state: LiveState) -> Dict[str, float]:
        return {
            e.name: self._observed.get(e.name, math.inf)
            + self._assigned.get(e.name, 0)
            + (1 if live_state.is_busy(e.name) else 0)
            for e in pool
        }

    async def allocate(self, chunk: Chunk, endpoint_pool: Sequence[Endpoint], live_state: LiveState) -> Endpoint:
        _require_pool(endpoint_pool)

        async with self._lock:
            if self._needs_rerank(endpoint_pool):
                await self._rerank(endpoint_pool, live_state)

            chosen = _pick_least_loaded(endpoint_pool, self.effective_loads(endpoint_pool, live_state), self._rng)
            self._assigned[chosen.name] = self._assigned.get(chosen.name, 0) + 1
            self._decisions_since_rerank += 1

        logger.debug(f"Chunk {chunk.index} allocated to {chosen.name}")
        return chosen


class LoadAwareAllocator:
    """Queries every endpoint's pending count before each decision."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    async def allocate(self, chunk: Chunk, endpoint_pool: Sequence[Endpoint], live_state: LiveState) -> Endpoint:
        _require_pool(endpoint_pool)
        loads = await live_state.load_snapshot(endpoint_pool)
        chosen = _pick_least_loaded(endpoint_pool, loads, self._rng)
        logger.debug(f"Chunk {chunk.index} allocated to {chosen.name} (pending={loads[chosen.name]:.0f})")
        return chosen


Allocator = Union[SequentialAllocator, RoundRobinAllocator, BurstDistributeAllocator, LoadAwareAllocator]


def build_allocator(config: RunConfig) -> Allocator:
    """
    Create the allocation strategy named by the run configuration.

    Raises:
        InvalidConfigurationError: On an unknown kind or a missing target
    """
    kind = config.allocator_kind
    if kind == "sequential":
        return SequentialAllocator(config.target_endpoint)
    if kind == "round-robin":
        return RoundRobinAllocator()
    if kind == "burst":
        return BurstDistributeAllocator(config.rerank_every)
    if kind == "auto":
        return LoadAwareAllocator()
    raise InvalidConfigurationError(f"Unknown allocator kind: {kind}")
