"""One log subscription and one listener task per pool."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from poolwatch.common import metrics
from poolwatch.common.models import PriceQuote, normalize_address
from poolwatch.ingest.connection import ConnectionLost, ConnectionSupervisor
from poolwatch.ingest.event_decoder import SWAP_TOPIC, DecodeError, decode_swap
from poolwatch.ingest.metadata_resolver import MetadataError, MetadataResolver
from poolwatch.ingest.rpc_client import RpcError
from poolwatch.pricing.price_calculator import ComputationError, build_quote

log = logging.getLogger(__name__)

MAX_PENDING = 1024
SEEN_LIMIT = 4096


class PoolListener:
    """Owns one pool's inbound stream and handles it strictly in arrival order."""

    def __init__(
        self,
        pool_address: str,
        resolver: MetadataResolver,
        out_queue: asyncio.Queue[PriceQuote],
        *,
        queue_size: int = MAX_PENDING,
        seen_limit: int = SEEN_LIMIT,
    ) -> None:
        self.pool_address = pool_address
        self.resolver = resolver
        self.out_queue = out_queue
        self.queue: asyncio.Queue[Tuple[float, Dict[str, Any]]] = asyncio.Queue(maxsize=queue_size)
        self.subscription_id: Optional[str] = None
        self.generation: Optional[int] = None
        self.quotes_emitted = 0
        self._seen: OrderedDict[Tuple[str, int], None] = OrderedDict()
        self._seen_limit = seen_limit
        self._task: asyncio.Task | None = None

    @property
    def subscribed(self) -> bool:
        return self.subscription_id is not None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"poolwatch-pool-{self.pool_address[:10]}")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def offer(self, raw_log: Dict[str, Any]) -> None:
        """Called from the socket reader; must never block it."""
        metrics.SWAP_EVENTS.labels(pool_address=self.pool_address).inc()
        try:
            self.queue.put_nowait((time.monotonic(), raw_log))
        except asyncio.QueueFull:
            metrics.INGEST_ERRORS.labels(type="pool_backpressure_drop").inc()
            log.warning("SWAP_DROP (backpressure) pool=%s qsize=%s", self.pool_address[:10], self.queue.qsize())
        finally:
            metrics.POOL_QUEUE_DEPTH.labels(pool_address=self.pool_address).set(self.queue.qsize())

    async def _run(self) -> None:
        while True:
            received_at, raw_log = await self.queue.get()
            metrics.POOL_QUEUE_DEPTH.labels(pool_address=self.pool_address).set(self.queue.qsize())
            try:
                await self.handle(raw_log, received_at)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                metrics.INGEST_ERRORS.labels(type="pool_handler").inc()
                log.exception("SWAP_HANDLER_FAIL pool=%s", self.pool_address[:10])

    async def handle(self, raw_log: Dict[str, Any], received_at: float | None = None) -> PriceQuote | None:
        """Decode, price and forward one raw log. Returns the quote or None if skipped."""
        if raw_log.get("removed"):
            log.info("SWAP_REMOVED pool=%s tx=%s", self.pool_address[:10], raw_log.get("transactionHash"))
            return None
        try:
            event = decode_swap(raw_log)
        except DecodeError as exc:
            metrics.INGEST_ERRORS.labels(type="swap_decode").inc()
            log.warning("SWAP_DECODE_FAIL pool=%s err=%s", self.pool_address[:10], exc)
            return None
        if event.pool_address != self.pool_address:
            metrics.INGEST_ERRORS.labels(type="swap_wrong_pool").inc()
            log.warning("SWAP_WRONG_POOL expected=%s got=%s", self.pool_address[:10], event.pool_address[:10])
            return None

        key = (event.tx_hash, event.log_index)
        if key in self._seen:
            metrics.INGEST_ERRORS.labels(type="swap_duplicate").inc()
            log.debug("SWAP_DUPLICATE pool=%s tx=%s idx=%s", self.pool_address[:10], event.tx_hash, event.log_index)
            return None

        try:
            meta = await self.resolver.resolve(self.pool_address)
        except MetadataError as exc:
            log.warning("SWAP_SKIP_METADATA pool=%s block=%s err=%s", self.pool_address[:10], event.block_number, exc)
            return None
        try:
            quote = build_quote(event, meta)
        except ComputationError as exc:
            metrics.INGEST_ERRORS.labels(type="price_computation").inc()
            log.warning("SWAP_PRICE_FAIL pool=%s block=%s err=%s", self.pool_address[:10], event.block_number, exc)
            return None

        self._remember(key)
        await self.out_queue.put(quote)
        self.quotes_emitted += 1
        metrics.QUOTES_EMITTED.labels(pool_address=self.pool_address).inc()
        if received_at is not None:
            metrics.EVENT_TO_QUOTE_SECONDS.observe(time.monotonic() - received_at)
        return quote

    def _remember(self, key: Tuple[str, int]) -> None:
        self._seen[key] = None
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)


class PoolSubscriptionManager:
    """Registers one swap-log subscription per pool over the shared connection.

    Registration is idempotent per address. Subscriptions are re-armed on every
    reconnect; listeners stay alive (idle) while the connection is down.
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        resolver: MetadataResolver,
        out_queue: asyncio.Queue[PriceQuote],
        *,
        queue_size: int = MAX_PENDING,
    ) -> None:
        self.supervisor = supervisor
        self.resolver = resolver
        self.out_queue = out_queue
        self.queue_size = queue_size
        self.listeners: Dict[str, PoolListener] = {}
        self._lock = asyncio.Lock()
        self._retries: Dict[str, asyncio.Task] = {}
        self._hooked = False

    async def start(self, pools: Iterable[str]) -> None:
        if not self._hooked:
            self.supervisor.on_disconnect(self._on_disconnect)
            self.supervisor.on_reconnect(self.rearm_all)
            self._hooked = True
        for pool in pools:
            await self.register(pool)

    async def stop(self) -> None:
        for task in list(self._retries.values()):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._retries.clear()
        for listener in self.listeners.values():
            await listener.stop()
        metrics.ACTIVE_SUBSCRIPTIONS.set(0)

    async def register(self, pool: str) -> PoolListener:
        addr = normalize_address(pool)
        listener = self.listeners.get(addr)
        if listener is not None:
            return listener
        listener = PoolListener(addr, self.resolver, self.out_queue, queue_size=self.queue_size)
        self.listeners[addr] = listener
        listener.start()
        await self._arm(listener)
        return listener

    async def rearm_all(self) -> None:
        for listener in list(self.listeners.values()):
            await self._arm(listener)
        log.info("WS_REARMED pools=%d active=%d", len(self.listeners), self.active_count())

    def active_count(self) -> int:
        return sum(1 for listener in self.listeners.values() if listener.subscribed)

    def pools(self) -> List[str]:
        return list(self.listeners.keys())

    async def _arm(self, listener: PoolListener) -> bool:
        """One subscribe attempt; True once the listener is live on the current connection.

        A rejected or timed-out subscribe is retried in the background with the
        supervisor's backoff for as long as the same connection stays up.
        """
        async with self._lock:
            conn = await self.supervisor.connect()
            if listener.subscribed and listener.generation == conn.generation:
                return True
            try:
                sub_id = await conn.subscribe_logs(listener.pool_address, [SWAP_TOPIC], listener.offer)
            except ConnectionLost as exc:
                metrics.INGEST_ERRORS.labels(type="ws_subscribe").inc()
                log.warning("WS_SUBSCRIBE_FAIL pool=%s err=%s; retrying after reconnect", listener.pool_address, exc)
                return False
            except (RpcError, asyncio.TimeoutError) as exc:
                metrics.INGEST_ERRORS.labels(type="ws_subscribe").inc()
                log.warning("WS_SUBSCRIBE_FAIL pool=%s err=%r; retrying", listener.pool_address, exc)
                self._schedule_retry(listener, conn.generation)
                return False
            listener.subscription_id = sub_id
            listener.generation = conn.generation
            metrics.ACTIVE_SUBSCRIPTIONS.set(self.active_count())
            log.info("WS_SUBSCRIBED pool=%s subscription=%s generation=%d", listener.pool_address, sub_id, conn.generation)
            return True

    def _schedule_retry(self, listener: PoolListener, generation: int) -> None:
        task = self._retries.get(listener.pool_address)
        if task is not None and not task.done():
            return
        task = asyncio.create_task(
            self._retry_arm(listener, generation), name=f"poolwatch-resubscribe-{listener.pool_address[:10]}"
        )
        self._retries[listener.pool_address] = task

    async def _retry_arm(self, listener: PoolListener, generation: int) -> None:
        attempt = 0
        while not listener.subscribed:
            await asyncio.sleep(self.supervisor.backoff_delay(attempt))
            attempt += 1
            # a newer connection is re-armed by rearm_all
            if self.supervisor.generation != generation:
                return
            await self._arm(listener)

    def _on_disconnect(self) -> None:
        for listener in self.listeners.values():
            listener.subscription_id = None
        metrics.ACTIVE_SUBSCRIPTIONS.set(0)
        log.warning("WS_SUSPENDED pools=%d (waiting for reconnect)", len(self.listeners))


__all__ = ["PoolSubscriptionManager", "PoolListener"]
