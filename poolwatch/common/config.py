"""Configuration loading and pool manifest validation."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft7Validator
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from poolwatch.common.models import normalize_address

log = logging.getLogger(__name__)

DEFAULT_WS_URL = "wss://ethereum-rpc.publicnode.com"
DEFAULT_HTTP_URL = "https://ethereum-rpc.publicnode.com"


class ConfigError(ValueError):
    """Pool configuration is unusable; the service must not start."""


def _load_json(path: str | Path) -> Dict[str, Any]:
    with Path(path).expanduser().open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _load_schema(name: str) -> Dict[str, Any]:
    here = Path(__file__).resolve().parent / "schemas"
    return _load_json(here / name)


def validate_json_manifest(payload: Dict[str, Any], schema_name: str) -> None:
    """Validate a manifest dict against a bundled JSON schema."""
    schema = _load_schema(schema_name)
    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
    if errors:
        msgs = "; ".join(f"{'/'.join(map(str, e.path))}: {e.message}" for e in errors)
        raise ConfigError(f"Manifest validation failed: {msgs}")


def load_validated_manifest(path: str | Path, schema_name: str) -> Dict[str, Any]:
    """Load JSON file and validate it; returns the parsed object."""
    try:
        payload = _load_json(path)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot read manifest {path}: {exc}") from exc
    validate_json_manifest(payload, schema_name)
    return payload


def parse_pool_list(raw: str) -> List[str]:
    """Split a comma separated POOLS value; blanks are ignored."""
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseSettings):
    """Environment-driven configuration for the pool watcher."""

    pools: str = Field("", alias="POOLS")
    pool_manifest_path: str | None = Field(None, alias="POOL_MANIFEST_PATH")

    rpc_ws_url: str = Field(DEFAULT_WS_URL, alias="RPC_WS_URL")
    rpc_http_url: str = Field(DEFAULT_HTTP_URL, alias="RPC_HTTP_URL")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    metrics_port: int = Field(9100, alias="METRICS_PORT")

    ws_reconnect_base_delay: float = Field(1.0, gt=0, alias="WS_RECONNECT_BASE_DELAY")
    ws_reconnect_multiplier: float = Field(2.0, ge=1.0, alias="WS_RECONNECT_MULTIPLIER")
    ws_reconnect_max_delay: float = Field(30.0, gt=0, alias="WS_RECONNECT_MAX_DELAY")
    ws_ping_interval: float = Field(20.0, gt=0, alias="WS_PING_INTERVAL")
    ws_request_timeout: float = Field(15.0, gt=0, alias="WS_REQUEST_TIMEOUT")
    pool_queue_size: int = Field(1024, ge=1, alias="POOL_QUEUE_SIZE")

    rpc_max_qps: int = Field(8, ge=1, alias="RPC_MAX_QPS")
    rpc_max_batch_size: int = Field(20, ge=1, alias="RPC_MAX_BATCH_SIZE")
    rpc_timeout_seconds: float = Field(10.0, gt=0, alias="RPC_TIMEOUT_SECONDS")
    rpc_max_retries: int = Field(3, ge=1, alias="RPC_MAX_RETRIES")

    # Load environment from a dot-env file if present; ignore unrelated keys
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True)

    def load_pools(self) -> List[str]:
        """Ordered, de-duplicated pool addresses from POOLS and the manifest.

        Raises ConfigError when any entry is malformed or nothing is configured.
        """
        raw: List[str] = parse_pool_list(self.pools)
        if self.pool_manifest_path:
            data = load_validated_manifest(self.pool_manifest_path, "pool_manifest.schema.json")
            raw.extend(entry["address"] for entry in data.get("pools", []))
            log.info("Loaded pool manifest from %s", self.pool_manifest_path)

        pools: List[str] = []
        for entry in raw:
            try:
                addr = normalize_address(entry)
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc
            if addr not in pools:
                pools.append(addr)
        if not pools:
            raise ConfigError("no pools configured; set POOLS or POOL_MANIFEST_PATH")
        log.info("Loaded %d pools", len(pools))
        return pools


__all__ = [
    "ConfigError",
    "Settings",
    "DEFAULT_WS_URL",
    "DEFAULT_HTTP_URL",
    "parse_pool_list",
    "validate_json_manifest",
    "load_validated_manifest",
]
