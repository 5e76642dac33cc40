"""Output interface for finished price quotes."""

from __future__ import annotations

import abc

from poolwatch.common.models import PriceQuote


class OutputSink(abc.ABC):
    @abc.abstractmethod
    async def emit(self, quote: PriceQuote) -> None:
        """Render or forward one quote."""
        raise NotImplementedError
