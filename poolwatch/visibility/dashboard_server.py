"""Minimal FastAPI dashboard: health, latest quotes, prometheus metrics."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from poolwatch.common.models import PriceQuote
from poolwatch.ingest.connection import ConnectionSupervisor
from poolwatch.ingest.subscription_manager import PoolSubscriptionManager
from poolwatch.pricing.price_calculator import format_price
from poolwatch.sinks.quote_board import QuoteBoard


def quote_payload(quote: PriceQuote) -> Dict[str, Any]:
    return {
        "pool_address": quote.pool_address,
        "pair": f"{quote.symbol0}/{quote.symbol1}",
        "symbol0": quote.symbol0,
        "symbol1": quote.symbol1,
        "price0_per_token1": format_price(quote.price0_per_token1),
        "price1_per_token0": format_price(quote.price1_per_token0),
        "block_number": quote.block_number,
        "tx_hash": quote.tx_hash,
    }


class DashboardServer:
    def __init__(self, board: QuoteBoard, supervisor: ConnectionSupervisor, manager: PoolSubscriptionManager) -> None:
        self.board = board
        self.supervisor = supervisor
        self.manager = manager
        self.app = FastAPI(title="poolwatch")
        self._routes()

    def _routes(self) -> None:
        app = self.app

        @app.get("/health")
        async def health() -> Dict[str, Any]:
            return {
                "connected": self.supervisor.connected,
                "reconnects": self.supervisor.reconnect_count,
                "pools": len(self.manager.listeners),
                "active_subscriptions": self.manager.active_count(),
                "quoted_pools": len(self.board),
            }

        @app.get("/quotes")
        async def quotes() -> Dict[str, Any]:
            return {"quotes": [quote_payload(q) for q in self.board.snapshot()]}

        @app.get("/quotes/{pool_address}")
        async def quote(pool_address: str) -> Dict[str, Any]:
            latest = self.board.latest(pool_address)
            if latest is None:
                raise HTTPException(status_code=404, detail="no quote for pool")
            return quote_payload(latest)

        @app.get("/metrics")
        async def metrics_endpoint() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    async def start(self) -> FastAPI:
        return self.app


__all__ = ["DashboardServer", "quote_payload"]
