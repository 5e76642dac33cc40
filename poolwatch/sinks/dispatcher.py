"""Drains the shared quote queue into every output sink."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import List, Sequence

from poolwatch.common.models import PriceQuote
from poolwatch.sinks.interface import OutputSink

log = logging.getLogger(__name__)


class QuoteDispatcher:
    def __init__(self, queue: asyncio.Queue[PriceQuote], sinks: Sequence[OutputSink]) -> None:
        self.queue = queue
        self.sinks: List[OutputSink] = list(sinks)
        self.dispatched = 0
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="poolwatch-quote-dispatch")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            quote = await self.queue.get()
            await self.dispatch(quote)

    async def dispatch(self, quote: PriceQuote) -> None:
        for sink in self.sinks:
            try:
                await sink.emit(quote)
            except Exception:  # noqa: BLE001
                log.exception("Sink %s failed for pool=%s", type(sink).__name__, quote.pool_address)
        self.dispatched += 1
