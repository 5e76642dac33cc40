"""In-memory board of the latest quote per pool."""

from __future__ import annotations

from typing import Dict, List, Optional

from poolwatch.common import metrics
from poolwatch.common.models import PriceQuote
from poolwatch.sinks.interface import OutputSink


class QuoteBoard(OutputSink):
    """Keeps the newest quote per pool; older blocks never overwrite newer ones."""

    def __init__(self) -> None:
        self._latest: Dict[str, PriceQuote] = {}

    async def emit(self, quote: PriceQuote) -> None:
        current = self._latest.get(quote.pool_address)
        if current is not None and current.block_number > quote.block_number:
            return
        self._latest[quote.pool_address] = quote
        pair = f"{quote.symbol0}/{quote.symbol1}"
        metrics.POOL_PRICE.labels(quote.pool_address, pair).set(float(quote.price1_per_token0))
        metrics.POOL_LAST_BLOCK.labels(quote.pool_address).set(quote.block_number)

    def latest(self, pool_address: str) -> Optional[PriceQuote]:
        return self._latest.get(pool_address.lower())

    def snapshot(self) -> List[PriceQuote]:
        return list(self._latest.values())

    def __len__(self) -> int:
        return len(self._latest)
