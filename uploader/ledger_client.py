"""Async client for the ledger endpoints' REST, RPC and websocket interfaces."""

import asyncio
import base64
import hashlib
import json
import random
from typing import AsyncIterator, Optional, Protocol
from urllib.parse import quote

import aiohttp
import httpx
from pydantic import ValidationError

from common.constants import (
    BROADCAST_PATH,
    LEDGER_HTTP_TIMEOUT_SECONDS,
    LEDGER_READ_MAX_RETRIES,
    LEDGER_RETRY_BASE_DELAY_SECONDS,
    RPC_STATUS_PATH,
    RPC_TX_PATH,
    RPC_UNCONFIRMED_TXS_PATH,
    SIMULATE_PATH,
    STORED_CHUNK_PATH,
    STORED_MANIFEST_PATH,
    TX_EVENT_QUERY,
)
from common.identity import LedgerMessage, SigningIdentityProvider
from common.logging_config import get_logger
from common.types import Endpoint, TxEvent, TxStatus
from uploader.exceptions import (
    ChunkNotFoundError,
    EndpointUnavailableError,
    ManifestNotFoundError,
    SubmissionError,
    SubscriptionLost,
)
from uploader.schemas import StoredChunkResponse, StoredManifestResponse

logger = get_logger(__name__)


class LedgerClient(Protocol):
    """
    Write and read interface of the ledger endpoints used by the engine.

    Every method is safe to call concurrently for different endpoints. Writes
    to one endpoint are serialized by the caller.
    """

    def address_for(self, endpoint: Endpoint) -> str:
        ...

    async def estimate_cost(self, endpoint: Endpoint, message: LedgerMessage) -> int:
        ...

    async def submit(self, endpoint: Endpoint, message: LedgerMessage, cost: int) -> str:
        ...

    async def pending_transaction_count(self, endpoint: Endpoint) -> int:
        ...

    async def get_transaction_status(self, endpoint: Endpoint, transaction_ref: str) -> Optional[TxStatus]:
        ...

    async def subscribe_tx_events(self, endpoint: Endpoint) -> AsyncIterator[TxEvent]:
        ...

    async def get_chunk(self, endpoint: Endpoint, key: str) -> bytes:
        ...

    async def get_manifest(self, endpoint: Endpoint, key: str) -> str:
        ...

    async def is_ready(self, endpoint: Endpoint) -> bool:
        ...

    async def close(self) -> None:
        ...


def transaction_ref_for(tx_bytes: bytes) -> str:
    """Transaction reference: uppercase hex SHA-256 of the signed bytes."""
    return hashlib.sha256(tx_bytes).hexdigest().upper()


def _tx_status_from_result(transaction_ref: str, result: dict) -> TxStatus:
    tx_result = result.get('tx_result') or result.get('result') or {}
    return TxStatus(
        transaction_ref=transaction_ref,
        height=int(result.get('height', 0)),
        code=int(tx_result.get('code', 0)),
        gas_used=int(tx_result.get('gas_used', 0) or 0),
        log=tx_result.get('log', '') or '',
    )


def parse_tx_event(payload: dict) -> Optional[TxEvent]:
    """
    Extract an inclusion event from a JSON-RPC subscription message.

    Args:
        payload: Decoded websocket message

    Returns:
        TxEvent, or None for acknowledgements and non-Tx messages
    """
    result = payload.get('result') or {}
    data = result.get('data') or {}
    if data.get('type') != 'tendermint/event/Tx':
        return None

    tx_result = data.get('value', {}).get('TxResult', {})
    hashes = (result.get('events') or {}).get('tx.hash') or []
    if hashes:
        transaction_ref = hashes[0].upper()
    elif tx_result.get('tx'):
        transaction_ref = transaction_ref_for(base64.b64decode(tx_result['tx']))
    else:
        return None

    return _tx_status_from_result(transaction_ref, tx_result)


class HttpLedgerClient:
    """
    Ledger client over httpx (REST and RPC) and aiohttp (event websocket).

    Transport errors are translated into the upload exception hierarchy.
    Content reads are retried with exponential backoff and jitter.
    """

    def __init__(
        self,
        identities: SigningIdentityProvider,
        timeout: float = LEDGER_HTTP_TIMEOUT_SECONDS,
        max_retries: int = LEDGER_READ_MAX_RETRIES,
        retry_base_delay: float = LEDGER_RETRY_BASE_DELAY_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize ledger client.

        Args:
            identities: Provider of per-endpoint signing identities
            timeout: HTTP timeout in seconds
            max_retries: Retry attempts for content reads
            retry_base_delay: Base delay for exponential backoff
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.identities = identities
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._ws_session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

    def address_for(self, endpoint: Endpoint) -> str:
        return self.identities.identity_for(endpoint.name).address

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Make HTTP request with retry on 5xx responses and network failures.

        Args:
            method: HTTP method
            url: Absolute URL
            **kwargs: Additional arguments passed to httpx

        Returns:
            Response with status < 500

        Raises:
            EndpointUnavailableError: If max retries exceeded
        """
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(method, url, **kwargs)
                if response.status_code < 500:
                    return response
                last_error = f"status={response.status_code}"
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"

            if attempt < self.max_retries:
                delay = self.retry_base_delay * (2 ** attempt) + random.uniform(0, self.retry_base_delay)
                logger.warning(
                    f"Ledger request failed (attempt {attempt + 1}/{self.max_retries + 1}): "
                    f"{method} {url} {last_error}, retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        logger.error(f"Ledger request failed (max retries exceeded): {method} {url} {last_error}")
        raise EndpointUnavailableError(f"{method} {url} failed: {last_error}")

    async def _get_json(self, url: str, **kwargs) -> dict:
        """Single-shot GET used for probes; callers decide whether to retry."""
        try:
            response = await self.client.get(url, **kwargs)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            raise EndpointUnavailableError(f"GET {url} failed: {e}") from e

    def _sign(self, endpoint: Endpoint, message: LedgerMessage, cost: int) -> bytes:
        identity = self.identities.identity_for(endpoint.name)
        return identity.sign(message, cost)

    async def estimate_cost(self, endpoint: Endpoint, message: LedgerMessage) -> int:
        """
        Simulate a write and return the gas it would use.

        Raises:
            SubmissionError: If the simulation fails or is rejected
        """
        tx_bytes = self._sign(endpoint, message, 0)
        url = f"{endpoint.rest_address}{SIMULATE_PATH}"
        try:
            response = await self.client.post(
                url, json={'tx_bytes': base64.b64encode(tx_bytes).decode('ascii')}
            )
            response.raise_for_status()
            return int(response.json()['gas_info']['gas_used'])
        except httpx.HTTPError as e:
            raise SubmissionError(f"cost estimation failed: {e}", endpoint.name) from e
        except (KeyError, ValueError, TypeError) as e:
            raise SubmissionError(f"malformed simulate response: {e}", endpoint.name) from e

    async def submit(self, endpoint: Endpoint, message: LedgerMessage, cost: int) -> str:
        """
        Sign and broadcast a write, returning its transaction reference.

        The broadcast returns once the write passed the endpoint's admission
        check. Inclusion is confirmed separately.

        Raises:
            SubmissionError: On transport failure or a non-zero check code
        """
        tx_bytes = self._sign(endpoint, message, cost)
        url = f"{endpoint.rest_address}{BROADCAST_PATH}"
        try:
            response = await self.client.post(url, json={
                'tx_bytes': base64.b64encode(tx_bytes).decode('ascii'),
                'mode': 'BROADCAST_MODE_SYNC',
            })
            response.raise_for_status()
            tx_response = response.json()['tx_response']
        except httpx.HTTPError as e:
            raise SubmissionError(f"broadcast failed: {e}", endpoint.name) from e
        except (KeyError, ValueError) as e:
            raise SubmissionError(f"malformed broadcast response: {e}", endpoint.name) from e

        code = int(tx_response.get('code', 0))
        if code != 0:
            raise SubmissionError(
                f"write rejected with code {code}: {tx_response.get('raw_log', '')}", endpoint.name
            )

        transaction_ref = (tx_response.get('txhash') or transaction_ref_for(tx_bytes)).upper()
        logger.debug(f"Broadcast accepted by {endpoint.name}: {transaction_ref}")
        return transaction_ref

    async def pending_transaction_count(self, endpoint: Endpoint) -> int:
        """
        Query the endpoint's mempool depth.

        Raises:
            EndpointUnavailableError: If the endpoint cannot be queried
        """
        data = await self._get_json(f"{endpoint.rpc_address}{RPC_UNCONFIRMED_TXS_PATH}")
        try:
            return int(data['result']['n_txs'])
        except (KeyError, ValueError, TypeError) as e:
            raise EndpointUnavailableError(f"Malformed mempool response from {endpoint.name}: {e}") from e

    async def get_transaction_status(self, endpoint: Endpoint, transaction_ref: str) -> Optional[TxStatus]:
        """
        Look up an included transaction.

        Returns:
            TxStatus if included, None if not (yet) included

        Raises:
            EndpointUnavailableError: On transport failure
        """
        url = f"{endpoint.rpc_address}{RPC_TX_PATH}"
        try:
            response = await self.client.get(url, params={'hash': f"0x{transaction_ref}"})
            data = response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            raise EndpointUnavailableError(f"GET {url} failed: {e}") from e

        # The RPC reports "not found" as a JSON-RPC error, sometimes with a 500 status
        if data.get('error') or not data.get('result'):
            return None

        return _tx_status_from_result(transaction_ref, data['result'])

    async def subscribe_tx_events(self, endpoint: Endpoint) -> AsyncIterator[TxEvent]:
        """
        Open an inclusion event subscription on the endpoint.

        Returns once the subscription is acknowledged, so events for writes
        submitted afterwards are delivered.

        Returns:
            Async iterator of TxEvent; raises SubscriptionLost when the channel drops

        Raises:
            SubscriptionLost: If the subscription cannot be established
        """
        if self._ws_session is None or self._ws_session.closed:
            self._ws_session = aiohttp.ClientSession()

        self._request_id += 1
        request = {
            'jsonrpc': '2.0',
            'method': 'subscribe',
            'id': self._request_id,
            'params': {'query': TX_EVENT_QUERY},
        }

        try:
            ws = await self._ws_session.ws_connect(endpoint.websocket_url, heartbeat=30)
            await ws.send_json(request)
            ack = await ws.receive_json(timeout=LEDGER_HTTP_TIMEOUT_SECONDS)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, TypeError) as e:
            raise SubscriptionLost(f"Cannot subscribe to {endpoint.name}: {e}") from e

        if ack.get('error'):
            await ws.close()
            raise SubscriptionLost(f"Subscription rejected by {endpoint.name}: {ack['error']}")

        logger.info(f"Subscribed to inclusion events on {endpoint.name}")
        return self._iter_events(endpoint, ws)

    async def _iter_events(self, endpoint: Endpoint, ws: aiohttp.ClientWebSocketResponse) -> AsyncIterator[TxEvent]:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        payload = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning(f"Discarding malformed event from {endpoint.name}")
                        continue
                    event = parse_tx_event(payload)
                    if event is not None:
                        yield event
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise SubscriptionLost(f"Event channel error on {endpoint.name}: {ws.exception()}")
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    break
        except aiohttp.ClientError as e:
            raise SubscriptionLost(f"Event channel error on {endpoint.name}: {e}") from e
        finally:
            await ws.close()

        raise SubscriptionLost(f"Event channel closed by {endpoint.name}")

    async def get_chunk(self, endpoint: Endpoint, key: str) -> bytes:
        """
        Fetch a stored chunk payload.

        Raises:
            ChunkNotFoundError: If the endpoint has no chunk under `key`
            EndpointUnavailableError: If the endpoint cannot be reached
        """
        url = f"{endpoint.rest_address}{STORED_CHUNK_PATH.format(key=quote(key, safe=''))}"
        response = await self._request_with_retry('GET', url)
        if response.status_code == 404:
            raise ChunkNotFoundError(f"Chunk '{key}' not found on {endpoint.name}")
        if response.status_code >= 400:
            raise EndpointUnavailableError(f"GET {url} failed: status={response.status_code}")

        try:
            stored = StoredChunkResponse.model_validate_json(response.content)
            return base64.b64decode(stored.stored_chunk.data)
        except (ValidationError, ValueError) as e:
            raise EndpointUnavailableError(f"Malformed chunk response from {endpoint.name}: {e}") from e

    async def get_manifest(self, endpoint: Endpoint, key: str) -> str:
        """
        Fetch a stored manifest's serialized text.

        Raises:
            ManifestNotFoundError: If the endpoint has no manifest under `key`
            EndpointUnavailableError: If the endpoint cannot be reached
        """
        url = f"{endpoint.rest_address}{STORED_MANIFEST_PATH.format(key=quote(key, safe=''))}"
        response = await self._request_with_retry('GET', url)
        if response.status_code == 404:
            raise ManifestNotFoundError(f"Manifest '{key}' not found on {endpoint.name}")
        if response.status_code >= 400:
            raise EndpointUnavailableError(f"GET {url} failed: status={response.status_code}")

        try:
            return StoredManifestResponse.model_validate_json(response.content).stored_manifest.manifest
        except ValidationError as e:
            raise EndpointUnavailableError(f"Malformed manifest response from {endpoint.name}: {e}") from e

    async def is_ready(self, endpoint: Endpoint) -> bool:
        """Return True once the endpoint reports a produced block and is not catching up."""
        try:
            data = await self._get_json(f"{endpoint.rpc_address}{RPC_STATUS_PATH}")
            sync_info = data['result']['sync_info']
            return int(sync_info['latest_block_height']) > 0 and not sync_info.get('catching_up', False)
        except (EndpointUnavailableError, KeyError, ValueError, TypeError) as e:
            logger.debug(f"Endpoint {endpoint.name} not ready: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
        if self._ws_session is not None and not self._ws_session.closed:
            await self._ws_session.close()
