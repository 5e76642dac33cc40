import asyncio

import pytest
from eth_abi import encode

from poolwatch.common import metrics
from poolwatch.ingest.metadata_resolver import (
    SELECTOR_DECIMALS,
    SELECTOR_SYMBOL,
    SELECTOR_TOKEN0,
    SELECTOR_TOKEN1,
    MetadataError,
    MetadataResolver,
    decode_address,
    decode_symbol,
    decode_uint8,
)
from poolwatch.ingest.rpc_client import RpcError

POOL = "0x" + "aa" * 20
TOKEN0 = "0x" + "01" * 20
TOKEN1 = "0x" + "02" * 20


def _word(value: int) -> str:
    return format(value, "064x")


def _address(addr: str) -> str:
    return "0x" + "0" * 24 + addr[2:]


def _abi_string(text: str) -> str:
    raw = text.encode().hex()
    padded = raw + "0" * (-len(raw) % 64)
    return "0x" + _word(32) + _word(len(text)) + padded


class FakeReader:
    def __init__(self, responses, gate: asyncio.Event | None = None):
        self.responses = responses
        self.gate = gate
        self.calls = []

    async def eth_call(self, to, data, block_tag="latest"):
        self.calls.append((to, data))
        if self.gate is not None:
            await self.gate.wait()
        res = self.responses.get((to, data))
        if isinstance(res, Exception):
            raise res
        if res is None:
            raise RpcError("execution reverted")
        return res


def _responses(overrides=None):
    base = {
        (POOL, SELECTOR_TOKEN0): _address(TOKEN0),
        (POOL, SELECTOR_TOKEN1): _address(TOKEN1),
        (TOKEN0, SELECTOR_DECIMALS): "0x" + _word(18),
        (TOKEN1, SELECTOR_DECIMALS): "0x" + _word(6),
        (TOKEN0, SELECTOR_SYMBOL): _abi_string("WETH"),
        (TOKEN1, SELECTOR_SYMBOL): _abi_string("USDC"),
    }
    base.update(overrides or {})
    return base


@pytest.mark.asyncio
async def test_resolves_tokens_symbols_and_decimals():
    resolver = MetadataResolver(FakeReader(_responses()))
    meta = await resolver.resolve(POOL.upper().replace("0X", "0x"))
    assert meta.token0 == TOKEN0 and meta.token1 == TOKEN1
    assert (meta.symbol0, meta.symbol1) == ("WETH", "USDC")
    assert (meta.decimals0, meta.decimals1) == (18, 6)
    assert resolver.cached(POOL) is meta


@pytest.mark.asyncio
async def test_concurrent_first_access_fetches_once():
    gate = asyncio.Event()
    reader = FakeReader(_responses(), gate=gate)
    resolver = MetadataResolver(reader)

    waiters = [asyncio.create_task(resolver.resolve(POOL)) for _ in range(25)]
    await asyncio.sleep(0.01)
    gate.set()
    results = await asyncio.gather(*waiters)

    assert all(r is results[0] for r in results)
    # token0, token1, then decimals + symbol for each token
    assert len(reader.calls) == 6
    again = await resolver.resolve(POOL)
    assert again is results[0]
    assert len(reader.calls) == 6


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_fetch():
    gate = asyncio.Event()
    resolver = MetadataResolver(FakeReader(_responses(), gate=gate))
    first = asyncio.create_task(resolver.resolve(POOL))
    second = asyncio.create_task(resolver.resolve(POOL))
    await asyncio.sleep(0.01)
    first.cancel()
    gate.set()
    meta = await second
    assert meta.symbol0 == "WETH"


@pytest.mark.asyncio
async def test_symbol_failure_falls_back_to_address_label(monkeypatch):
    class DummyMetric:
        def labels(self, **kwargs): return self
        def inc(self, val=1): return None
    monkeypatch.setattr(metrics, "INGEST_ERRORS", DummyMetric())

    resolver = MetadataResolver(FakeReader(_responses({(TOKEN1, SELECTOR_SYMBOL): RpcError("execution reverted")})))
    meta = await resolver.resolve(POOL)
    assert meta.symbol0 == "WETH"
    assert meta.symbol1 == "0x0202...0202"


@pytest.mark.asyncio
async def test_bytes32_symbol_decoded():
    bytes32 = "0x" + b"MKR".hex() + "0" * 58
    resolver = MetadataResolver(FakeReader(_responses({(TOKEN0, SELECTOR_SYMBOL): bytes32})))
    meta = await resolver.resolve(POOL)
    assert meta.symbol0 == "MKR"


@pytest.mark.asyncio
async def test_missing_decimals_fails_and_is_retried():
    responses = _responses()
    del responses[(TOKEN1, SELECTOR_DECIMALS)]
    reader = FakeReader(responses)
    resolver = MetadataResolver(reader)
    with pytest.raises(MetadataError):
        await resolver.resolve(POOL)
    assert resolver.cached(POOL) is None

    responses[(TOKEN1, SELECTOR_DECIMALS)] = "0x" + _word(6)
    meta = await resolver.resolve(POOL)
    assert meta.decimals1 == 6


@pytest.mark.asyncio
async def test_concurrent_waiters_share_failure():
    gate = asyncio.Event()
    responses = _responses()
    del responses[(POOL, SELECTOR_TOKEN0)]
    reader = FakeReader(responses, gate=gate)
    resolver = MetadataResolver(reader)
    waiters = [asyncio.create_task(resolver.resolve(POOL)) for _ in range(5)]
    await asyncio.sleep(0.01)
    gate.set()
    results = await asyncio.gather(*waiters, return_exceptions=True)
    assert all(isinstance(r, MetadataError) for r in results)
    assert len(reader.calls) == 2


@pytest.mark.asyncio
async def test_prefetch_tolerates_failures():
    resolver = MetadataResolver(FakeReader({}))
    await resolver.prefetch([POOL])
    assert resolver.cached(POOL) is None


def test_decode_symbol_rejects_garbage():
    assert decode_symbol("0x") is None
    assert decode_symbol("0x" + "00" * 32) is None
    assert decode_symbol(_abi_string("UNI-V3")) == "UNI-V3"


def test_decoders_follow_abi_encoding():
    assert decode_address("0x" + encode(["address"], [TOKEN0]).hex()) == TOKEN0
    assert decode_uint8("0x" + encode(["uint8"], [18]).hex()) == 18
    assert decode_symbol("0x" + encode(["string"], ["stETH"]).hex()) == "stETH"
    assert decode_symbol("0x" + encode(["bytes32"], [b"MKR"]).hex()) == "MKR"


@pytest.mark.parametrize(
    "decoder,raw",
    [
        (decode_address, "0x" + "00" * 32),
        (decode_address, "0x" + "ff" * 32),
        (decode_address, "0x1234"),
        (decode_uint8, "0x" + _word(256)),
        (decode_uint8, "0x"),
    ],
)
def test_decoders_reject_bad_words(decoder, raw):
    with pytest.raises(ValueError):
        decoder(raw)
