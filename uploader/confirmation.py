"""Inclusion confirmation: status polling and event subscription."""

import asyncio
from collections import OrderedDict
from typing import AsyncIterator, Dict, Optional, Union

from common.constants import EVENT_BUFFER_SIZE
from common.logging_config import get_logger
from common.types import ConfirmationResult, ConfirmationStatus, Endpoint, TxStatus
from uploader.exceptions import InvalidConfigurationError, SubscriptionLost, UploadException
from uploader.schemas import RunConfig

logger = get_logger(__name__)


def _require_timeout(timeout: Optional[float]) -> None:
    if timeout is None or timeout <= 0:
        raise InvalidConfigurationError(f"Confirmation timeout must be positive, got {timeout!r}")


def result_from_status(status: TxStatus) -> ConfirmationResult:
    """Map an included transaction to CONFIRMED, or FAILED if its execution failed."""
    if status.succeeded:
        return ConfirmationResult(
            status=ConfirmationStatus.CONFIRMED,
            transaction_ref=status.transaction_ref,
            height=status.height,
            gas_used=status.gas_used
        )
    return ConfirmationResult(
        status=ConfirmationStatus.FAILED,
        transaction_ref=status.transaction_ref,
        height=status.height,
        gas_used=status.gas_used,
        error=f"execution failed with code {status.code}: {status.log}"
    )


def _timed_out(transaction_ref: str) -> ConfirmationResult:
    return ConfirmationResult(status=ConfirmationStatus.TIMED_OUT, transaction_ref=transaction_ref)


class PollingConfirmation:
    """Queries transaction status at a fixed interval until inclusion or deadline."""

    def __init__(self, ledger, interval: float):
        if interval <= 0:
            raise InvalidConfigurationError(f"Poll interval must be positive, got {interval!r}")
        self.ledger = ledger
        self.interval = interval

    async def prepare(self, endpoint: Endpoint) -> None:
        pass

    async def confirm(self, transaction_ref: str, endpoint: Endpoint, timeout: float) -> ConfirmationResult:
        """
        Poll until the transaction is included or `timeout` seconds pass.

        Transport errors during polling are logged and polling continues.

        Returns:
            ConfirmationResult (CONFIRMED, FAILED or TIMED_OUT)
        """
        _require_timeout(timeout)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempts = 0

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            attempts += 1
            try:
                status = await asyncio.wait_for(
                    self.ledger.get_transaction_status(endpoint, transaction_ref), remaining
                )
            except asyncio.TimeoutError:
                break
            except UploadException as e:
                logger.warning(f"Status query for {transaction_ref} on {endpoint.name} failed: {e}")
                status = None

            if status is not None:
                logger.debug(f"{transaction_ref} included at height {status.height} after {attempts} poll(s)")
                return result_from_status(status)

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.interval, remaining))

        logger.warning(f"{transaction_ref} not included on {endpoint.name} within {timeout:.1f}s")
        return _timed_out(transaction_ref)

    async def close(self) -> None:
        pass


class _Subscription:
    """Event subscription state of one endpoint."""

    def __init__(self, endpoint: Endpoint, buffer_size: int):
        self.endpoint = endpoint
        self.buffer_size = buffer_size
        self.waiters: Dict[str, asyncio.Future] = {}
        self.buffered: "OrderedDict[str, TxStatus]" = OrderedDict()
        self.timed_out: "OrderedDict[str, None]" = OrderedDict()
        self.closed = False
        self.task: Optional[asyncio.Task] = None

    def deliver(self, event: TxStatus) -> None:
        ref = event.transaction_ref
        waiter = self.waiters.get(ref)
        if waiter is not None and not waiter.done():
            waiter.set_result(event)
        elif ref in self.timed_out:
            del self.timed_out[ref]
            logger.info(
                f"Late inclusion of timed-out {ref} on {self.endpoint.name} at height {event.height}, ignored"
            )
        else:
            self.buffered[ref] = event
            while len(self.buffered) > self.buffer_size:
                self.buffered.popitem(last=False)

    def mark_timed_out(self, ref: str) -> None:
        self.timed_out[ref] = None
        while len(self.timed_out) > self.buffer_size:
            self.timed_out.popitem(last=False)

    def fail(self, error: SubscriptionLost) -> None:
        self.closed = True
        for waiter in self.waiters.values():
            if not waiter.done():
                waiter.set_exception(error)


class TxEventConfirmation:
    """
    Confirms writes from a persistent inclusion event subscription per endpoint.

    `prepare(endpoint)` must run before the write is submitted so that its
    inclusion event cannot be missed. Events arriving before `confirm` is
    called are buffered. When a channel drops, waiting confirmations raise
    SubscriptionLost and the next `prepare` re-subscribes.
    """

    def __init__(self, ledger, buffer_size: int = EVENT_BUFFER_SIZE):
        self.ledger = ledger
        self.buffer_size = buffer_size
        self._subscriptions: Dict[str, _Subscription] = {}
        self._lock = asyncio.Lock()

    async def prepare(self, endpoint: Endpoint) -> None:
        """
        Ensure a live subscription exists for the endpoint.

        Raises:
            SubscriptionLost: If the subscription cannot be established
        """
        async with self._lock:
            subscription = self._subscriptions.get(endpoint.name)
            if subscription is not None and not subscription.closed:
                return

            stream = await self.ledger.subscribe_tx_events(endpoint)
            subscription = _Subscription(endpoint, self.buffer_size)
            subscription.task = asyncio.create_task(self._read_events(subscription, stream))
            self._subscriptions[endpoint.name] = subscription

    async def _read_events(self, subscription: _Subscription, stream: AsyncIterator[TxStatus]) -> None:
        name = subscription.endpoint.name
        try:
            async for event in stream:
                subscription.deliver(event)
            raise SubscriptionLost(f"Event stream of {name} ended")
        except SubscriptionLost as e:
            logger.warning(f"Inclusion events lost for {name}: {e}")
            subscription.fail(e)
        except asyncio.CancelledError:
            subscription.fail(SubscriptionLost(f"Subscription to {name} closed"))
            raise
        except Exception as e:
            logger.error(f"Event reader for {name} failed: {e}")
            subscription.fail(SubscriptionLost(f"Event reader for {name} failed: {e}"))
        finally:
            if self._subscriptions.get(name) is subscription:
                del self._subscriptions[name]

    async def confirm(self, transaction_ref: str, endpoint: Endpoint, timeout: float) -> ConfirmationResult:
        """
        Wait for the transaction's inclusion event.

        Returns:
            ConfirmationResult (CONFIRMED, FAILED or TIMED_OUT)

        Raises:
            SubscriptionLost: If the endpoint's channel is not live or drops while waiting
        """
        _require_timeout(timeout)
        subscription = self._subscriptions.get(endpoint.name)
        if subscription is None or subscription.closed:
            raise SubscriptionLost(f"No live subscription for {endpoint.name}")

        event = subscription.buffered.pop(transaction_ref, None)
        if event is not None:
            return result_from_status(event)

        waiter = asyncio.get_running_loop().create_future()
        subscription.waiters[transaction_ref] = waiter
        try:
            event = await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            subscription.mark_timed_out(transaction_ref)
            logger.warning(f"{transaction_ref} not included on {endpoint.name} within {timeout:.1f}s")
            return _timed_out(transaction_ref)
        finally:
            subscription.waiters.pop(transaction_ref, None)

        return result_from_status(event)

    async def close(self) -> None:
        """Cancel all subscription readers."""
        tasks = [s.task for s in self._subscriptions.values() if s.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._subscriptions.clear()


Confirmation = Union[PollingConfirmation, TxEventConfirmation]


async def confirm_with_fallback(
    confirmation: Confirmation,
    ledger,
    transaction_ref: str,
    endpoint: Endpoint,
    timeout: float,
    poll_interval: float
) -> ConfirmationResult:
    """
    Confirm a write, falling back to polling if the event channel is lost.

    The fallback polls for whatever remains of `timeout`.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        return await confirmation.confirm(transaction_ref, endpoint, timeout)
    except SubscriptionLost as e:
        remaining = timeout - (loop.time() - started)
        logger.warning(f"{e}; polling {transaction_ref} for the remaining {max(remaining, 0):.1f}s")
        if remaining <= 0:
            return _timed_out(transaction_ref)
        return await PollingConfirmation(ledger, poll_interval).confirm(transaction_ref, endpoint, remaining)


def build_confirmation(config: RunConfig, ledger) -> Confirmation:
    """
    Create the confirmation strategy named by the run configuration.

    Raises:
        InvalidConfigurationError: On an unknown kind
    """
    if config.confirmation_kind == "polling":
        return PollingConfirmation(ledger, config.poll_interval)
    if config.confirmation_kind == "tx-event":
        return TxEventConfirmation(ledger)
    raise InvalidConfigurationError(f"Unknown confirmation kind: {config.confirmation_kind}")
