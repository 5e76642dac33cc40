"""Sink that logs both price directions of every quote."""

from __future__ import annotations

import logging

from poolwatch.common.models import PriceQuote
from poolwatch.pricing.price_calculator import format_price
from poolwatch.sinks.interface import OutputSink

log = logging.getLogger(__name__)


class LogSink(OutputSink):
    def __init__(self, places: int = 18, logger: logging.Logger | None = None) -> None:
        self.places = places
        self.log = logger or log

    def render(self, quote: PriceQuote) -> str:
        # 1 token0 = price token1, 1 token1 = price token0
        return (
            f"1 {quote.symbol0} = {format_price(quote.price1_per_token0, self.places)} {quote.symbol1}, "
            f"1 {quote.symbol1} = {format_price(quote.price0_per_token1, self.places)} {quote.symbol0}"
        )

    async def emit(self, quote: PriceQuote) -> None:
        self.log.info("QUOTE pool=%s block=%s %s", quote.pool_address, quote.block_number, self.render(quote))
