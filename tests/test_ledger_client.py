"""Unit tests for HttpLedgerClient using httpx.MockTransport."""

import base64
import json
from types import SimpleNamespace

import aiohttp
import httpx
import pytest

from common.protocol import StoreChunkMessage
from tests.fake_ledger import make_endpoint
from uploader.exceptions import (
    ChunkNotFoundError,
    EndpointUnavailableError,
    ManifestNotFoundError,
    SubmissionError,
    SubscriptionLost,
)
from uploader.ledger_client import HttpLedgerClient, parse_tx_event, transaction_ref_for

SIGNED = b"signed-tx-bytes"


class StaticIdentity:
    address = "cosmos1testaddress"

    def __init__(self):
        self.costs = []

    def sign(self, message, cost):
        self.costs.append(cost)
        return SIGNED


class StaticIdentities:
    def __init__(self):
        self.identity = StaticIdentity()

    def identity_for(self, endpoint_name):
        return self.identity


@pytest.fixture
def endpoint():
    return make_endpoint("data-0")


def make_client(handler, identities=None):
    return HttpLedgerClient(
        identities or StaticIdentities(),
        max_retries=2,
        retry_base_delay=0,
        transport=httpx.MockTransport(handler)
    )


def message():
    return StoreChunkMessage(creator="cosmos1testaddress", index="h-0", data=b"payload")


class TestWrites:
    """Test cost estimation and broadcast."""

    @pytest.mark.asyncio
    async def test_estimate_cost(self, endpoint):
        def handler(request):
            assert request.url.path == "/cosmos/tx/v1beta1/simulate"
            body = json.loads(request.content)
            assert base64.b64decode(body["tx_bytes"]) == SIGNED
            return httpx.Response(200, json={"gas_info": {"gas_used": "123456", "gas_wanted": "0"}})

        client = make_client(handler)

        assert await client.estimate_cost(endpoint, message()) == 123456
        await client.close()

    @pytest.mark.asyncio
    async def test_submit_returns_hash(self, endpoint):
        identities = StaticIdentities()

        def handler(request):
            body = json.loads(request.content)
            assert request.url.path == "/cosmos/tx/v1beta1/txs"
            assert body["mode"] == "BROADCAST_MODE_SYNC"
            return httpx.Response(200, json={"tx_response": {"txhash": "abcdef", "code": 0, "raw_log": ""}})

        client = make_client(handler, identities)

        ref = await client.submit(endpoint, message(), 1500)

        assert ref == "ABCDEF"
        assert identities.identity.costs == [1500]
        await client.close()

    @pytest.mark.asyncio
    async def test_submit_without_hash_uses_digest(self, endpoint):
        def handler(request):
            return httpx.Response(200, json={"tx_response": {"code": 0}})

        client = make_client(handler)

        assert await client.submit(endpoint, message(), 1) == transaction_ref_for(SIGNED)
        await client.close()

    @pytest.mark.asyncio
    async def test_submit_rejected(self, endpoint):
        def handler(request):
            return httpx.Response(200, json={
                "tx_response": {"txhash": "AB", "code": 32, "raw_log": "account sequence mismatch"}
            })

        client = make_client(handler)

        with pytest.raises(SubmissionError) as exc_info:
            await client.submit(endpoint, message(), 1)

        assert "account sequence mismatch" in exc_info.value.reason
        assert exc_info.value.endpoint_name == "data-0"
        await client.close()

    @pytest.mark.asyncio
    async def test_submit_transport_error(self, endpoint):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        with pytest.raises(SubmissionError):
            await client.submit(endpoint, message(), 1)
        await client.close()


class TestStatusQueries:
    """Test mempool, transaction and readiness queries."""

    @pytest.mark.asyncio
    async def test_pending_transaction_count(self, endpoint):
        def handler(request):
            assert request.url.path == "/num_unconfirmed_txs"
            return httpx.Response(200, json={"result": {"n_txs": "7", "total": "7"}})

        client = make_client(handler)

        assert await client.pending_transaction_count(endpoint) == 7
        await client.close()

    @pytest.mark.asyncio
    async def test_pending_count_failure(self, endpoint):
        client = make_client(lambda request: httpx.Response(503))

        with pytest.raises(EndpointUnavailableError):
            await client.pending_transaction_count(endpoint)
        await client.close()

    @pytest.mark.asyncio
    async def test_transaction_included(self, endpoint):
        def handler(request):
            assert request.url.params["hash"] == "0xABCD"
            return httpx.Response(200, json={"result": {
                "hash": "ABCD",
                "height": "42",
                "tx_result": {"code": 0, "gas_used": "900", "log": ""},
            }})

        client = make_client(handler)

        status = await client.get_transaction_status(endpoint, "ABCD")

        assert status.height == 42
        assert status.gas_used == 900
        assert status.succeeded
        await client.close()

    @pytest.mark.asyncio
    async def test_transaction_not_found(self, endpoint):
        def handler(request):
            return httpx.Response(500, json={"error": {"code": -32603, "data": "tx (ABCD) not found"}})

        client = make_client(handler)

        assert await client.get_transaction_status(endpoint, "ABCD") is None
        await client.close()

    @pytest.mark.asyncio
    async def test_is_ready(self, endpoint):
        def handler(request):
            return httpx.Response(200, json={"result": {"sync_info": {
                "latest_block_height": "5",
                "catching_up": False,
            }}})

        client = make_client(handler)

        assert await client.is_ready(endpoint)
        await client.close()

    @pytest.mark.asyncio
    async def test_not_ready_while_unreachable(self, endpoint):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler)

        assert not await client.is_ready(endpoint)
        await client.close()


class TestContentReads:
    """Test chunk and manifest reads."""

    @pytest.mark.asyncio
    async def test_get_chunk(self, endpoint):
        def handler(request):
            assert request.url.path == "/datachain/datastore/v1/stored_chunk/h-3"
            return httpx.Response(200, json={"stored_chunk": {
                "index": "h-3",
                "data": base64.b64encode(b"chunk bytes").decode(),
            }})

        client = make_client(handler)

        assert await client.get_chunk(endpoint, "h-3") == b"chunk bytes"
        await client.close()

    @pytest.mark.asyncio
    async def test_get_chunk_retries_server_errors(self, endpoint):
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            if calls["count"] < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"stored_chunk": {"index": "h-0", "data": "eA=="}})

        client = make_client(handler)

        assert await client.get_chunk(endpoint, "h-0") == b"x"
        assert calls["count"] == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_get_chunk_gives_up(self, endpoint):
        client = make_client(lambda request: httpx.Response(502))

        with pytest.raises(EndpointUnavailableError):
            await client.get_chunk(endpoint, "h-0")
        await client.close()

    @pytest.mark.asyncio
    async def test_get_chunk_not_found(self, endpoint):
        client = make_client(lambda request: httpx.Response(404, json={"code": 5, "message": "not found"}))

        with pytest.raises(ChunkNotFoundError):
            await client.get_chunk(endpoint, "h-0")
        await client.close()

    @pytest.mark.asyncio
    async def test_get_manifest(self):
        index = make_endpoint("meta-0")
        text = '{"filepath":"uploads/a.bin","chunks":[]}'

        def handler(request):
            assert request.url.path.endswith("uploads/a.bin")
            return httpx.Response(200, json={"stored_manifest": {"url": "uploads/a.bin", "manifest": text}})

        client = make_client(handler)

        assert await client.get_manifest(index, "uploads/a.bin") == text
        await client.close()

    @pytest.mark.asyncio
    async def test_get_manifest_not_found(self):
        client = make_client(lambda request: httpx.Response(404))

        with pytest.raises(ManifestNotFoundError):
            await client.get_manifest(make_endpoint("meta-0"), "missing")
        await client.close()


class FakeWebSocket:
    def __init__(self, messages):
        self._messages = list(messages)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)

    def exception(self):
        return None

    async def close(self):
        self.closed = True


def tx_event_payload(ref: str, height: int = 10, code: int = 0) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {
            "query": "tm.event='Tx'",
            "data": {
                "type": "tendermint/event/Tx",
                "value": {"TxResult": {
                    "height": str(height),
                    "tx": base64.b64encode(b"tx").decode(),
                    "result": {"code": code, "gas_used": "321", "log": ""},
                }},
            },
            "events": {"tx.hash": [ref]},
        },
    }


class TestEventStream:
    """Test inclusion event parsing."""

    def test_parse_tx_event(self):
        event = parse_tx_event(tx_event_payload("abcd", height=12))

        assert event.transaction_ref == "ABCD"
        assert event.height == 12
        assert event.gas_used == 321

    def test_subscription_ack_is_not_an_event(self):
        assert parse_tx_event({"jsonrpc": "2.0", "id": 1, "result": {}}) is None

    def test_hash_derived_from_tx_bytes(self):
        payload = tx_event_payload("unused")
        del payload["result"]["events"]

        event = parse_tx_event(payload)

        assert event.transaction_ref == transaction_ref_for(b"tx")

    @pytest.mark.asyncio
    async def test_stream_yields_events_then_reports_loss(self, endpoint):
        ws = FakeWebSocket([
            SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(tx_event_payload("AA"))),
            SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data="not json"),
            SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(tx_event_payload("BB"))),
            SimpleNamespace(type=aiohttp.WSMsgType.CLOSE, data=None),
        ])
        client = make_client(lambda request: httpx.Response(200))
        received = []

        with pytest.raises(SubscriptionLost):
            async for event in client._iter_events(endpoint, ws):
                received.append(event.transaction_ref)

        assert received == ["AA", "BB"]
        assert ws.closed
        await client.close()
