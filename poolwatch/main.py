"""Entry point: watch configured pools and emit price quotes."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from typing import Any, Dict, List, Optional

import uvicorn

from poolwatch.common.config import ConfigError, Settings
from poolwatch.common.models import PriceQuote
from poolwatch.ingest.connection import ConnectionSupervisor
from poolwatch.ingest.metadata_resolver import MetadataResolver
from poolwatch.ingest.rpc_client import BatchRpcClient
from poolwatch.ingest.subscription_manager import PoolSubscriptionManager
from poolwatch.sinks import LogSink, QuoteBoard, QuoteDispatcher
from poolwatch.visibility.dashboard_server import DashboardServer

log = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_components(settings: Settings) -> Dict[str, Any]:
    """Validate configuration and wire components; nothing is started here.

    Raises ConfigError when the pool list or endpoints are unusable.
    """
    pools = settings.load_pools()
    if not settings.rpc_ws_url.startswith(("ws://", "wss://")):
        raise ConfigError(f"RPC_WS_URL must be a ws:// or wss:// url, got {settings.rpc_ws_url!r}")
    if not settings.rpc_http_url.startswith(("http://", "https://")):
        raise ConfigError(f"RPC_HTTP_URL must be an http(s) url, got {settings.rpc_http_url!r}")

    rpc = BatchRpcClient(
        settings.rpc_http_url,
        max_calls_per_second=settings.rpc_max_qps,
        max_batch_size=settings.rpc_max_batch_size,
        max_retries=settings.rpc_max_retries,
        timeout_seconds=settings.rpc_timeout_seconds,
    )
    resolver = MetadataResolver(rpc)
    supervisor = ConnectionSupervisor(
        settings.rpc_ws_url,
        base_delay=settings.ws_reconnect_base_delay,
        multiplier=settings.ws_reconnect_multiplier,
        max_delay=settings.ws_reconnect_max_delay,
        ping_interval=settings.ws_ping_interval,
        request_timeout=settings.ws_request_timeout,
    )
    quotes: asyncio.Queue[PriceQuote] = asyncio.Queue()
    manager = PoolSubscriptionManager(supervisor, resolver, quotes, queue_size=settings.pool_queue_size)
    board = QuoteBoard()
    dispatcher = QuoteDispatcher(quotes, [LogSink(), board])
    dashboard = DashboardServer(board, supervisor, manager)
    return {
        "settings": settings,
        "pools": pools,
        "rpc": rpc,
        "resolver": resolver,
        "supervisor": supervisor,
        "manager": manager,
        "board": board,
        "dispatcher": dispatcher,
        "dashboard": dashboard,
    }


async def serve_dashboard(app, host: str, port: int) -> None:
    """Start uvicorn server for the dashboard/metrics app."""
    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    server = uvicorn.Server(config)
    await server.serve()


async def start_components(comps: Dict[str, Any]) -> List[asyncio.Task]:
    """Start in dependency order; returns background tasks owned by the caller."""
    await comps["rpc"].start()
    await comps["dispatcher"].start()
    await comps["supervisor"].start()
    await comps["manager"].start(comps["pools"])
    prefetch = asyncio.create_task(comps["resolver"].prefetch(comps["pools"]), name="poolwatch-meta-prefetch")
    return [prefetch]


async def stop_components(comps: Dict[str, Any], tasks: List[asyncio.Task]) -> None:
    for t in tasks:
        t.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await t
    with contextlib.suppress(Exception):
        await comps["manager"].stop()
    with contextlib.suppress(Exception):
        await comps["supervisor"].stop()
    with contextlib.suppress(Exception):
        await comps["dispatcher"].stop()
    with contextlib.suppress(Exception):
        await comps["rpc"].stop()


async def run(args: Optional[list[str]] = None) -> int:
    settings = Settings()
    _configure_logging(settings.log_level)

    parser = argparse.ArgumentParser(description="Stream swap-derived prices for DEX pools")
    parser.add_argument("--no-dashboard", action="store_true", help="Do not start the uvicorn dashboard server")
    parser.add_argument("--host", default="0.0.0.0", help="Dashboard host (default 0.0.0.0)")
    parser.add_argument("--port", type=int, default=settings.metrics_port, help=f"Dashboard port (default {settings.metrics_port})")
    parsed = parser.parse_args(args)

    try:
        comps = build_components(settings)
    except ConfigError as exc:
        log.error("Invalid configuration: %s", exc)
        return 2
    log.info("Watching %d pools via %s", len(comps["pools"]), settings.rpc_ws_url)

    tasks: list[asyncio.Task] = []
    try:
        tasks.extend(await start_components(comps))
        if not parsed.no_dashboard:
            app = await comps["dashboard"].start()
            tasks.append(asyncio.create_task(serve_dashboard(app, parsed.host, parsed.port), name="uvicorn-dashboard"))
            log.info("Dashboard serving on http://%s:%s", parsed.host, parsed.port)
        log.info("poolwatch started")
        try:
            await comps["supervisor"].wait()
        except Exception as exc:  # noqa: BLE001
            log.error("WS supervisor failed: %s", exc)
            return 1
        log.error("WS supervisor exited")
        return 1
    finally:
        await stop_components(comps, tasks)


def main() -> None:
    with contextlib.suppress(KeyboardInterrupt):
        raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
