import asyncio
import json

import pytest

from poolwatch.common import metrics
from poolwatch.ingest.rpc_client import BatchRpcClient, RpcError


class DummyBreaker:
    async def call(self, fn, *a, **kw):
        return await fn(*a, **kw)


class DummyMetric:
    def __init__(self): self.values = []
    def labels(self, **kwargs): return self
    def inc(self, val=1): return None
    def observe(self, v): self.values.append(v)
    def set(self, v): return None


class FakeResponse:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status = status
    async def text(self):
        return json.dumps(self._payload)
    async def __aenter__(self):
        return self
    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status
        self.post_calls = 0
        self.last_body = None
    def post(self, url, json):
        self.post_calls += 1
        self.last_body = json
        return FakeResponse(self.payload, self.status)
    async def close(self):
        return None


@pytest.fixture(autouse=True)
def _quiet_metrics(monkeypatch):
    hist = DummyMetric()
    monkeypatch.setattr(metrics, "RPC_LATENCY_SECONDS", hist)
    monkeypatch.setattr(metrics, "RPC_CALLS", DummyMetric())
    monkeypatch.setattr(metrics, "INGEST_ERRORS", DummyMetric())
    return hist


def _client(session, **kw):
    rpc = BatchRpcClient("http://fake", **kw)
    rpc._session = session
    rpc._breaker = DummyBreaker()
    return rpc


@pytest.mark.asyncio
async def test_batch_maps_results_and_errors_by_id(_quiet_metrics):
    responses = [
        {"jsonrpc": "2.0", "id": 2, "error": {"code": 3, "message": "execution reverted"}},
        {"jsonrpc": "2.0", "id": 1, "result": "0xabc"},
    ]
    session = FakeSession(responses)
    rpc = _client(session)
    loop = asyncio.get_running_loop()
    fut1, fut2 = loop.create_future(), loop.create_future()
    await rpc._process_batch([
        ("eth_call", [{"to": "0x1", "data": "0x0dfe1681"}, "latest"], fut1),
        ("eth_call", [{"to": "0x2", "data": "0x95d89b41"}, "latest"], fut2),
    ])
    assert session.post_calls == 1
    assert [c["id"] for c in session.last_body] == [1, 2]
    assert fut1.result() == "0xabc"
    with pytest.raises(RpcError) as info:
        fut2.result()
    assert info.value.code == 3
    assert _quiet_metrics.values, "latency histogram not observed"


@pytest.mark.asyncio
async def test_unanswered_call_fails():
    rpc = _client(FakeSession([{"id": 1, "result": "0x1"}]))
    loop = asyncio.get_running_loop()
    fut1, fut2 = loop.create_future(), loop.create_future()
    await rpc._process_batch([("eth_blockNumber", [], fut1), ("eth_chainId", [], fut2)])
    assert fut1.result() == "0x1"
    with pytest.raises(RpcError):
        fut2.result()


@pytest.mark.asyncio
async def test_retry_on_failure():
    class FlakySession(FakeSession):
        def __init__(self, payload):
            super().__init__(payload)
            self.fail_once = True
        def post(self, url, json):
            if self.fail_once:
                self.fail_once = False
                raise OSError("boom")
            return super().post(url, json)

    session = FlakySession([{"id": 1, "result": "0x10"}])
    rpc = _client(session, max_retries=2)
    fut = asyncio.get_running_loop().create_future()
    await rpc._process_batch([("eth_blockNumber", [], fut)])
    assert fut.result() == "0x10"
    assert session.post_calls == 1


@pytest.mark.asyncio
async def test_http_error_exhausts_retries():
    session = FakeSession({"error": "busy"}, status=503)
    rpc = _client(session, max_retries=2)
    fut = asyncio.get_running_loop().create_future()
    await rpc._process_batch([("eth_blockNumber", [], fut)])
    assert session.post_calls == 2
    with pytest.raises(RpcError):
        fut.result()


@pytest.mark.asyncio
async def test_eth_call_through_worker():
    session = FakeSession([{"id": 1, "result": "0x" + "00" * 31 + "12"}])
    rpc = _client(session, max_calls_per_second=100)
    await rpc.start()
    try:
        result = await asyncio.wait_for(rpc.eth_call("0x" + "01" * 20, "0x313ce567"), timeout=1)
    finally:
        await rpc.stop()
    assert int(result, 16) == 18
    assert session.last_body[0]["method"] == "eth_call"
