"""Websocket connection supervision for JSON-RPC log subscriptions."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import websockets

from poolwatch.common import metrics
from poolwatch.ingest.circuit_breaker import CircuitBreaker
from poolwatch.ingest.rpc_client import RpcError

log = logging.getLogger(__name__)

Handler = Callable[[], Union[Awaitable[None], None]]
LogSink = Callable[[Dict[str, Any]], None]


class ConnectionLost(ConnectionError):
    """The socket went away while a request was outstanding."""


class Connection:
    """One live websocket session.

    Created and closed only by ConnectionSupervisor; subscription owners use
    request/subscribe_logs but never touch its lifecycle.
    """

    def __init__(self, ws: Any, generation: int, request_timeout: float = 15.0) -> None:
        self._ws = ws
        self.generation = generation
        self.request_timeout = request_timeout
        self._id = 0
        self._pending: Dict[int, tuple[asyncio.Future, Optional[Callable[[Any], None]]]] = {}
        self._routes: Dict[str, LogSink] = {}
        self._late: Dict[int, Callable[[Any], None]] = {}
        self._cleanup: set[asyncio.Task] = set()
        self.closed = False

    async def request(
        self,
        method: str,
        params: list[Any],
        *,
        on_result: Optional[Callable[[Any], None]] = None,
        on_late: Optional[Callable[[Any], None]] = None,
    ) -> Any:
        """Send a JSON-RPC request over the socket and wait for its response.

        on_result runs inside the reader before any later message is handled.
        on_late receives a result that arrives after the request timed out.
        """
        if self.closed:
            raise ConnectionLost("connection closed")
        self._id += 1
        req_id = self._id
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = (fut, on_result)
        payload = {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}
        log.debug("WS_SEND gen=%d payload=%s", self.generation, payload)
        try:
            await self._ws.send(json.dumps(payload))
            return await asyncio.wait_for(fut, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            if on_late is not None and not self.closed:
                self._late[req_id] = on_late
            raise
        except websockets.ConnectionClosed as exc:
            raise ConnectionLost(str(exc)) from exc
        finally:
            self._pending.pop(req_id, None)

    async def subscribe_logs(self, address: str, topics: List[Any], sink: LogSink) -> str:
        """eth_subscribe to logs for one address; every notification goes to sink.

        An id the node hands out after the request timed out is unsubscribed.
        """

        def _route(sub_id: Any) -> None:
            if isinstance(sub_id, str):
                self._routes[sub_id] = sink

        sub_id = await self.request(
            "eth_subscribe",
            ["logs", {"address": address, "topics": topics}],
            on_result=_route,
            on_late=self._drop_late_subscription,
        )
        if not isinstance(sub_id, str):
            raise RpcError(f"eth_subscribe returned {sub_id!r}")
        return sub_id

    async def unsubscribe(self, sub_id: str) -> None:
        self._routes.pop(sub_id, None)
        await self.request("eth_unsubscribe", [sub_id])

    def _drop_late_subscription(self, sub_id: Any) -> None:
        if not isinstance(sub_id, str):
            return
        log.info("WS_LATE_SUBSCRIPTION gen=%d subscription=%s; unsubscribing", self.generation, sub_id)
        task = asyncio.create_task(self._unsubscribe_quietly(sub_id), name=f"poolwatch-ws-unsub-{sub_id}")
        self._cleanup.add(task)
        task.add_done_callback(self._cleanup.discard)

    async def _unsubscribe_quietly(self, sub_id: str) -> None:
        try:
            await self.unsubscribe(sub_id)
        except (RpcError, ConnectionLost, asyncio.TimeoutError) as exc:
            log.debug("WS_UNSUBSCRIBE_FAIL subscription=%s err=%s", sub_id, exc)

    def dispatch(self, message: Dict[str, Any]) -> None:
        """Route one decoded inbound message: a response or a notification."""
        if message.get("method") == "eth_subscription":
            params = message.get("params") or {}
            sink = self._routes.get(params.get("subscription"))
            if sink is None:
                metrics.INGEST_ERRORS.labels(type="ws_unknown_subscription").inc()
                log.debug("WS_UNROUTED subscription=%s", params.get("subscription"))
                return
            try:
                sink(params.get("result") or {})
            except Exception:  # noqa: BLE001
                log.exception("WS_SINK_FAIL subscription=%s", params.get("subscription"))
            return

        req_id = message.get("id")
        entry = self._pending.get(req_id) if isinstance(req_id, int) else None
        if entry is None:
            late = self._late.pop(req_id, None) if isinstance(req_id, int) else None
            if late is not None and "result" in message:
                late(message.get("result"))
                return
            log.debug("WS_UNMATCHED message=%s", message)
            return
        fut, on_result = entry
        if fut.done():
            return
        if "error" in message:
            err = message.get("error") or {}
            fut.set_exception(RpcError(str(err.get("message") or "rpc error"), code=err.get("code")))
            return
        result = message.get("result")
        if on_result is not None:
            on_result(result)
        fut.set_result(result)

    def fail_pending(self, exc: BaseException) -> None:
        self.closed = True
        self._routes.clear()
        self._late.clear()
        for fut, _ in list(self._pending.values()):
            if not fut.done():
                fut.set_exception(exc)
        self._pending.clear()

    async def recv(self) -> Any:
        return await self._ws.recv()

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            await self._ws.close()


class ConnectionSupervisor:
    """Owns the single websocket: connects, reads, reconnects with backoff.

    Backoff is base_delay * multiplier**attempt capped at max_delay, scaled by
    a random jitter factor, and never gives up. on_disconnect handlers run when
    a session ends; on_reconnect handlers run when a later session is up.
    """

    def __init__(
        self,
        ws_url: str,
        *,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        jitter: tuple[float, float] = (0.5, 1.5),
        ping_interval: float = 20.0,
        request_timeout: float = 15.0,
        breaker: Optional[CircuitBreaker] = None,
        connect_fn: Optional[Callable[..., Awaitable[Any]]] = None,
    ) -> None:
        self.ws_url = ws_url
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        if multiplier > 1.0 and max_delay > base_delay:
            self._cap_attempt = math.ceil(math.log(max_delay / base_delay, multiplier))
        else:
            self._cap_attempt = 0
        self.ping_interval = ping_interval
        self.request_timeout = request_timeout
        self._breaker = breaker or CircuitBreaker(failure_threshold=3, reset_timeout=15, component="ws")
        self._connect_fn = connect_fn
        self._conn: Optional[Connection] = None
        self._ready = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._handler_tasks: set[asyncio.Task] = set()
        self._disconnect_handlers: List[Handler] = []
        self._reconnect_handlers: List[Handler] = []
        self._fatal: Optional[BaseException] = None
        self.generation = 0

    # ------------------------------------------------------------------ #
    def on_disconnect(self, handler: Handler) -> None:
        self._disconnect_handlers.append(handler)

    def on_reconnect(self, handler: Handler) -> None:
        self._reconnect_handlers.append(handler)

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.closed

    @property
    def reconnect_count(self) -> int:
        return max(0, self.generation - 1)

    async def start(self) -> None:
        if self._task:
            return
        self._task = asyncio.create_task(self._supervise(), name="poolwatch-ws-supervisor")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # noqa: BLE001
                log.debug("WS supervisor exited err=%s", exc)
            self._task = None
        for task in list(self._handler_tasks):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._conn:
            self._conn.fail_pending(ConnectionLost("supervisor stopped"))
            await self._conn.close()
            self._conn = None
        self._ready.clear()
        metrics.WS_CONNECTED.set(0)

    async def connect(self) -> Connection:
        """Return the live connection, waiting through any reconnect window."""
        await self.start()
        while True:
            if self._fatal is not None:
                raise self._fatal
            conn = self._conn
            if conn is not None and not conn.closed:
                return conn
            supervisor = self._task
            if supervisor is None or supervisor.done():
                raise ConnectionLost("supervisor is not running")
            ready = asyncio.create_task(self._ready.wait())
            done, _ = await asyncio.wait({ready, supervisor}, return_when=asyncio.FIRST_COMPLETED)
            if ready not in done:
                ready.cancel()

    def backoff_delay(self, attempt: int) -> float:
        # exponent stops growing once the cap is reached; float ** overflows past ~1024
        exponent = min(attempt, self._cap_attempt)
        delay = min(self.base_delay * (self.multiplier ** exponent), self.max_delay)
        return delay * random.uniform(*self.jitter)

    async def wait(self) -> None:
        """Block until the supervision task ends; re-raises its fatal error."""
        if self._task is None:
            return
        await asyncio.shield(self._task)

    # ------------------------------------------------------------------ #
    async def _open(self) -> Any:
        attempt = 0
        while True:
            connect_fn = self._connect_fn or websockets.connect
            try:
                async def _do_connect():
                    return await connect_fn(self.ws_url, ping_interval=self.ping_interval, ping_timeout=self.ping_interval)

                return await self._breaker.call(_do_connect)
            except websockets.InvalidURI as exc:
                log.error("WS invalid URI url=%s err=%s", self.ws_url, exc)
                raise
            except Exception as exc:  # noqa: BLE001
                delay = max(self.backoff_delay(attempt), self._breaker.retry_after())
                log.warning("WS connect failed url=%s err=%s; retrying in %.2fs", self.ws_url, exc, delay)
                attempt += 1
                await asyncio.sleep(delay)

    async def _supervise(self) -> None:
        try:
            while True:
                ws = await self._open()
                self.generation += 1
                conn = Connection(ws, self.generation, self.request_timeout)
                self._conn = conn
                self._ready.set()
                metrics.WS_CONNECTED.set(1)
                metrics.WS_RECONNECTS.inc()
                log.info("WS_CONNECTED url=%s generation=%d", self.ws_url, self.generation)
                if self.generation > 1:
                    self._spawn_handlers(self._reconnect_handlers, "reconnect")
                try:
                    await self._read_loop(conn)
                finally:
                    self._ready.clear()
                    conn.fail_pending(ConnectionLost("websocket closed"))
                    await conn.close()
                    self._conn = None
                    metrics.WS_CONNECTED.set(0)
                await self._run_handlers(self._disconnect_handlers, "disconnect")
                # a node that accepts then drops immediately must not spin the loop
                await asyncio.sleep(self.backoff_delay(0))
        except asyncio.CancelledError:
            raise
        except BaseException as exc:
            self._fatal = exc
            raise

    async def _read_loop(self, conn: Connection) -> None:
        while True:
            try:
                msg = await conn.recv()
            except websockets.ConnectionClosed as exc:
                log.warning("WS_CLOSED generation=%d err=%s", conn.generation, exc)
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                log.warning("WS_RECV_ERROR generation=%d err=%s", conn.generation, exc)
                return
            if isinstance(msg, (bytes, bytearray)):
                try:
                    msg = msg.decode()
                except UnicodeDecodeError:
                    metrics.INGEST_ERRORS.labels(type="ws_decode").inc()
                    continue
            try:
                data = json.loads(msg)
            except json.JSONDecodeError:
                metrics.INGEST_ERRORS.labels(type="ws_decode").inc()
                log.debug("WS_DECODE_FAIL reason=json")
                continue
            if isinstance(data, list):
                for item in data:
                    if isinstance(item, dict):
                        conn.dispatch(item)
            elif isinstance(data, dict):
                conn.dispatch(data)

    def _spawn_handlers(self, handlers: List[Handler], kind: str) -> None:
        task = asyncio.create_task(self._run_handlers(handlers, kind), name=f"poolwatch-ws-{kind}")
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _run_handlers(self, handlers: List[Handler], kind: str) -> None:
        for handler in list(handlers):
            try:
                res = handler()
                if asyncio.iscoroutine(res):
                    await res
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                log.exception("WS %s handler failed", kind)


__all__ = ["ConnectionSupervisor", "Connection", "ConnectionLost"]
