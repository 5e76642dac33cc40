import asyncio
import json
import sys
from pathlib import Path

import pytest
import websockets

# Ensure repository root is importable for `import poolwatch.*`
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from poolwatch.ingest.event_decoder import SWAP_TOPIC  # noqa: E402

Q96 = 2**96


def word(value: int) -> str:
    return format(value % 2**256, "064x")


def topic_address(addr: str) -> str:
    return "0x" + "0" * 24 + addr[2:].lower()


def make_swap_log(
    pool: str,
    *,
    sqrt_price_x96: int = Q96,
    amount0: int = 10**18,
    amount1: int = -(10**18),
    liquidity: int = 10**20,
    tick: int = 0,
    block: int = 100,
    tx: str = "0x" + "ab" * 32,
    log_index: int = 0,
    sender: str = "0x" + "11" * 20,
    recipient: str = "0x" + "22" * 20,
) -> dict:
    data = "0x" + "".join(word(v) for v in (amount0, amount1, sqrt_price_x96, liquidity, tick))
    return {
        "address": pool,
        "topics": [SWAP_TOPIC, topic_address(sender), topic_address(recipient)],
        "data": data,
        "blockNumber": hex(block),
        "transactionHash": tx,
        "logIndex": hex(log_index),
        "removed": False,
    }


class FakeWS:
    """Client side of a fake node connection."""

    def __init__(self, node: "FakeNode", index: int) -> None:
        self.node = node
        self.index = index
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False

    async def send(self, data: str) -> None:
        if self.closed:
            raise websockets.ConnectionClosedError(None, None)
        msg = json.loads(data)
        self.sent.append(msg)
        await self.node.handle_request(self, msg)

    async def recv(self):
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeNode:
    """Minimal JSON-RPC websocket node: eth_subscribe per address, push logs, drop sockets."""

    def __init__(self, fail_connects: int = 0, reject_subscribe: bool = False) -> None:
        self.fail_connects = fail_connects
        self.reject_subscribe = reject_subscribe
        self.connect_calls = 0
        self.sockets: list[FakeWS] = []
        self.subscriptions: dict[str, tuple[FakeWS, str]] = {}
        self.subscribe_requests: list[tuple[int, str]] = []
        self._next_sub = 0

    async def connect(self, url, **kwargs):
        self.connect_calls += 1
        if self.connect_calls <= self.fail_connects:
            raise OSError("connection refused")
        ws = FakeWS(self, len(self.sockets))
        self.sockets.append(ws)
        return ws

    @property
    def current(self) -> FakeWS:
        return self.sockets[-1]

    async def handle_request(self, ws: FakeWS, msg: dict) -> None:
        if msg["method"] == "eth_subscribe":
            address = msg["params"][1]["address"]
            self.subscribe_requests.append((ws.index, address))
            if self.reject_subscribe:
                await ws.inbox.put(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "error": {"code": -32000, "message": "rejected"}}))
                return
            self._next_sub += 1
            sub_id = hex(self._next_sub)
            self.subscriptions[address] = (ws, sub_id)
            await ws.inbox.put(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": sub_id}))
        else:
            await ws.inbox.put(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": msg["method"]}))

    async def push(self, log: dict) -> None:
        ws, sub_id = self.subscriptions[log["address"]]
        await ws.inbox.put(json.dumps({"jsonrpc": "2.0", "method": "eth_subscription", "params": {"subscription": sub_id, "result": log}}))

    async def drop(self) -> None:
        ws = self.current
        self.subscriptions = {}
        await ws.inbox.put(websockets.ConnectionClosedError(None, None))


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def swap_log():
    return make_swap_log


@pytest.fixture
def fake_node():
    return FakeNode


@pytest.fixture
def wait_for():
    return wait_until
