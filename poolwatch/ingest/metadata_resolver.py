"""Per-pool token metadata with single-flight memoization."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, Optional, Protocol

from eth_abi import decode

from poolwatch.common import metrics
from poolwatch.common.models import PoolMetadata, normalize_address, short_address

log = logging.getLogger(__name__)

# 4-byte selectors
SELECTOR_TOKEN0 = "0x0dfe1681"
SELECTOR_TOKEN1 = "0xd21220a7"
SELECTOR_DECIMALS = "0x313ce567"
SELECTOR_SYMBOL = "0x95d89b41"


class MetadataError(RuntimeError):
    """An essential metadata field (token0, token1, decimals) could not be read."""


class ContractReader(Protocol):
    async def eth_call(self, to: str, data: str, block_tag: str = "latest") -> str: ...


def _result_bytes(raw: str) -> bytes:
    return bytes.fromhex(raw.removeprefix("0x"))


def decode_address(raw: str) -> str:
    """Decode an address return value; the zero address is rejected."""
    try:
        (addr,) = decode(["address"], _result_bytes(raw))
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"not an address result {raw!r}: {exc}") from exc
    addr = addr.lower()
    if int(addr, 16) == 0:
        raise ValueError("zero address")
    return addr


def decode_uint8(raw: str) -> int:
    try:
        (value,) = decode(["uint8"], _result_bytes(raw))
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"not a uint8 result {raw!r}: {exc}") from exc
    return int(value)


def _clean_symbol(text: str) -> Optional[str]:
    text = text.strip("\x00").strip()
    if not text or not text.isprintable():
        return None
    return text


def decode_symbol(raw: str) -> Optional[str]:
    """Decode an ABI string, or a bytes32 symbol as returned by older tokens (e.g. MKR)."""
    try:
        data = _result_bytes(raw)
    except ValueError:
        return None
    for abi_type in ("string", "bytes32"):
        try:
            (value,) = decode([abi_type], data)
            if isinstance(value, bytes):
                value = value.rstrip(b"\x00").decode("utf-8")
        except Exception as exc:  # noqa: BLE001
            log.debug("symbol not decodable as %s: %s", abi_type, exc)
            continue
        symbol = _clean_symbol(value)
        if symbol is not None:
            return symbol
    return None


def fallback_symbol(token: str) -> str:
    return short_address(token)


class MetadataResolver:
    """Resolves token0/token1 symbols and decimals once per pool.

    Concurrent first accesses for the same pool share one in-flight fetch;
    later calls return the cached PoolMetadata object. Failed resolutions are
    not cached, so the next caller retries.
    """

    def __init__(self, reader: ContractReader) -> None:
        self.reader = reader
        self._cache: Dict[str, PoolMetadata] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    def cached(self, pool: str) -> Optional[PoolMetadata]:
        return self._cache.get(pool.lower())

    async def resolve(self, pool: str) -> PoolMetadata:
        key = normalize_address(pool)
        meta = self._cache.get(key)
        if meta is not None:
            return meta
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch(key), name=f"poolwatch-meta-{key[:10]}")
            self._inflight[key] = task
        # shield: a cancelled waiter must not cancel the shared fetch
        return await asyncio.shield(task)

    async def prefetch(self, pools: Iterable[str]) -> None:
        """Warm the cache; failures are logged and left for the first event to retry."""
        targets = list(pools)
        results = await asyncio.gather(*(self.resolve(p) for p in targets), return_exceptions=True)
        for pool, res in zip(targets, results):
            if isinstance(res, Exception):
                log.warning("META_PREFETCH_FAIL pool=%s err=%s", pool, res)

    async def _fetch(self, pool: str) -> PoolMetadata:
        metrics.METADATA_FETCHES.inc()
        try:
            try:
                raw0, raw1 = await asyncio.gather(
                    self.reader.eth_call(pool, SELECTOR_TOKEN0),
                    self.reader.eth_call(pool, SELECTOR_TOKEN1),
                )
                token0, token1 = decode_address(raw0), decode_address(raw1)
            except Exception as exc:
                metrics.INGEST_ERRORS.labels(type="metadata_tokens").inc()
                raise MetadataError(f"token0/token1 unavailable for pool {pool}: {exc}") from exc

            dec0, dec1, sym0, sym1 = await asyncio.gather(
                self._decimals(token0),
                self._decimals(token1),
                self._symbol(token0),
                self._symbol(token1),
                return_exceptions=True,
            )
            for dec in (dec0, dec1):
                if isinstance(dec, BaseException):
                    metrics.INGEST_ERRORS.labels(type="metadata_decimals").inc()
                    raise MetadataError(f"decimals unavailable for pool {pool}: {dec}") from dec

            meta = PoolMetadata(
                pool_address=pool,
                token0=token0,
                token1=token1,
                symbol0=sym0 if isinstance(sym0, str) else fallback_symbol(token0),
                symbol1=sym1 if isinstance(sym1, str) else fallback_symbol(token1),
                decimals0=dec0,
                decimals1=dec1,
            )
            self._cache[pool] = meta
            log.info(
                "META_RESOLVED pool=%s %s(%d)/%s(%d)",
                pool, meta.symbol0, meta.decimals0, meta.symbol1, meta.decimals1,
            )
            return meta
        finally:
            self._inflight.pop(pool, None)

    async def _decimals(self, token: str) -> int:
        return decode_uint8(await self.reader.eth_call(token, SELECTOR_DECIMALS))

    async def _symbol(self, token: str) -> str:
        try:
            raw = await self.reader.eth_call(token, SELECTOR_SYMBOL)
        except Exception as exc:  # noqa: BLE001
            log.warning("META_SYMBOL_FAIL token=%s err=%s; using address label", token, exc)
            metrics.INGEST_ERRORS.labels(type="metadata_symbol").inc()
            return fallback_symbol(token)
        symbol = decode_symbol(raw)
        if symbol is None:
            log.warning("META_SYMBOL_UNDECODABLE token=%s; using address label", token)
            metrics.INGEST_ERRORS.labels(type="metadata_symbol").inc()
            return fallback_symbol(token)
        return symbol


__all__ = [
    "MetadataResolver",
    "MetadataError",
    "ContractReader",
    "decode_address",
    "decode_uint8",
    "decode_symbol",
    "fallback_symbol",
]
