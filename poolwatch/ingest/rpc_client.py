"""Batched JSON-RPC over HTTP for read-only contract calls."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, Dict, List, Sequence, Tuple

import aiohttp

from poolwatch.common import metrics
from poolwatch.ingest.circuit_breaker import CircuitBreaker

log = logging.getLogger(__name__)


class RpcError(RuntimeError):
    """A JSON-RPC call failed or returned an error object."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class BatchRpcClient:
    """Queues calls and flushes them as JSON-RPC batches, rate limited."""

    def __init__(
        self,
        url: str,
        *,
        max_calls_per_second: int = 8,
        max_batch_size: int = 20,
        max_retries: int = 3,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.url = url
        self._max_qps = max_calls_per_second
        self._max_batch = max_batch_size
        self._max_retries = max_retries
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._last_call_ts = 0.0
        self._session: aiohttp.ClientSession | None = None
        self._breaker = CircuitBreaker(component="rpc")

    async def start(self) -> None:
        if self._task:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        self._task = asyncio.create_task(self._run(), name="poolwatch-batch-rpc")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._session:
            await self._session.close()
            self._session = None

    async def submit_call(self, method: str, params: list[Any]) -> Any:
        """Submit a generic JSON-RPC call and wait for its result."""
        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        await self._queue.put((method, params, fut))
        return await fut

    async def eth_call(self, to: str, data: str, block_tag: str = "latest") -> str:
        """Read-only contract call; returns the raw 0x result."""
        result = await self.submit_call("eth_call", [{"to": to, "data": data}, block_tag])
        if not isinstance(result, str) or not result.startswith("0x"):
            raise RpcError(f"eth_call to={to} returned {result!r}")
        return result

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            batch = [job]
            try:
                while len(batch) < self._max_batch:
                    batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                pass
            try:
                await self._process_batch(batch)
            except Exception as exc:  # noqa: BLE001
                log.exception("RPC_BATCH_FAIL size=%d", len(batch))
                for _, _, fut in batch:
                    if not fut.done():
                        fut.set_exception(RpcError(f"batch failed: {exc}"))

    async def _post(self, payload: List[Dict[str, Any]]) -> Any:
        assert self._session
        start = time.monotonic()
        async with self._session.post(self.url, json=payload) as resp:
            status = resp.status
            text = await resp.text()
        metrics.RPC_LATENCY_SECONDS.labels(method="batch").observe(time.monotonic() - start)
        if status >= 400:
            if status == 429:
                log.warning("RPC_RATE_LIMIT url=%s", self.url)
            raise RpcError(f"HTTP {status}", code=status)
        return json.loads(text)

    async def _process_batch(self, batch: Sequence[Tuple[str, list, asyncio.Future]]) -> None:
        now = time.monotonic()
        min_interval = 1.0 / float(self._max_qps)
        since_last = now - self._last_call_ts
        if since_last < min_interval:
            await asyncio.sleep(min_interval - since_last)
        self._last_call_ts = time.monotonic()

        payload: List[Dict[str, Any]] = []
        futures: Dict[int, Tuple[str, asyncio.Future]] = {}
        for idx, (method, params, fut) in enumerate(batch, start=1):
            payload.append({"jsonrpc": "2.0", "id": idx, "method": method, "params": params})
            futures[idx] = (method, fut)

        data = None
        last_exc: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                data = await self._breaker.call(self._post, payload)
                break
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                metrics.INGEST_ERRORS.labels(type="rpc_retry").inc()
                log.warning("RPC_RETRY attempt=%d/%d err=%s", attempt, self._max_retries, exc)
                if attempt < self._max_retries:
                    await asyncio.sleep(min(2**attempt, 5) * 0.1)

        if not isinstance(data, list):
            metrics.INGEST_ERRORS.labels(type="rpc_failed").inc()
            reason = last_exc or RpcError(f"unexpected batch response {type(data).__name__}")
            for _, fut in futures.values():
                if not fut.done():
                    fut.set_exception(RpcError(f"rpc batch failed: {reason}"))
            return

        for item in data:
            if not isinstance(item, dict):
                continue
            entry = futures.pop(item.get("id"), None) if isinstance(item.get("id"), int) else None
            if entry is None:
                continue
            method, fut = entry
            metrics.RPC_CALLS.labels(method=method).inc()
            if fut.done():
                continue
            if "error" in item:
                err = item.get("error") or {}
                log.debug("RPC_ERROR method=%s code=%s msg=%s", method, err.get("code"), err.get("message"))
                fut.set_exception(RpcError(str(err.get("message") or "rpc error"), code=err.get("code")))
            else:
                fut.set_result(item.get("result"))
        # Anything the node did not answer
        for method, fut in futures.values():
            if not fut.done():
                fut.set_exception(RpcError(f"no response for {method}"))


__all__ = ["BatchRpcClient", "RpcError"]
