"""Prometheus metrics for poolwatch."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Gauges
POOL_PRICE = Gauge("poolwatch_pool_price", "Latest token1 per token0 price", ["pool_address", "pair"])
POOL_LAST_BLOCK = Gauge("poolwatch_pool_last_block", "Block of the latest quoted swap", ["pool_address"])
POOL_QUEUE_DEPTH = Gauge("poolwatch_pool_queue_depth", "Pending raw logs per pool", ["pool_address"])
WS_CONNECTED = Gauge("poolwatch_ws_connected", "1 while the websocket is connected")
ACTIVE_SUBSCRIPTIONS = Gauge("poolwatch_active_subscriptions", "Pools with a live log subscription")
CIRCUIT_STATE = Gauge("poolwatch_circuit_state", "Circuit breaker state (0=closed,1=half_open,2=open)", ["component"])

# Counters
SWAP_EVENTS = Counter("poolwatch_swap_events_total", "Swap logs received", ["pool_address"])
QUOTES_EMITTED = Counter("poolwatch_quotes_emitted_total", "Price quotes emitted", ["pool_address"])
INGEST_ERRORS = Counter("poolwatch_ingest_errors_total", "Non-fatal ingest errors", ["type"])
WS_RECONNECTS = Counter("poolwatch_ws_reconnects_total", "Websocket (re)connections established")
METADATA_FETCHES = Counter("poolwatch_metadata_fetches_total", "Pool metadata resolutions started")
RPC_CALLS = Counter("poolwatch_rpc_calls_total", "JSON-RPC calls", ["method"])

# Histograms
RPC_LATENCY_SECONDS = Histogram("poolwatch_rpc_latency_seconds", "RPC batch latency", ["method"], buckets=(0.01, 0.05, 0.1, 0.2, 0.5, 1, 2))
EVENT_TO_QUOTE_SECONDS = Histogram("poolwatch_event_to_quote_seconds", "Latency from log receipt to quote", buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1))


__all__ = [
    "POOL_PRICE",
    "POOL_LAST_BLOCK",
    "POOL_QUEUE_DEPTH",
    "WS_CONNECTED",
    "ACTIVE_SUBSCRIPTIONS",
    "CIRCUIT_STATE",
    "SWAP_EVENTS",
    "QUOTES_EMITTED",
    "INGEST_ERRORS",
    "WS_RECONNECTS",
    "METADATA_FETCHES",
    "RPC_CALLS",
    "RPC_LATENCY_SECONDS",
    "EVENT_TO_QUOTE_SECONDS",
]
