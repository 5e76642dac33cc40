"""Shared data models for poolwatch.

Metadata and quotes are Pydantic models so bad values fail fast before they
reach the output stage. Swap events are plain slotted dataclasses because one
is built per received log.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")


def is_hex_address(value: str) -> bool:
    """Return True if the string looks like a 20-byte hex address."""
    if not isinstance(value, str):
        return False
    return _ADDRESS_RE.fullmatch(value) is not None


def normalize_address(value: str) -> str:
    """Lower-case a hex address or raise ValueError."""
    candidate = value.strip() if isinstance(value, str) else value
    if isinstance(candidate, str) and candidate[:2] == "0X":
        candidate = "0x" + candidate[2:]
    if not is_hex_address(candidate):
        raise ValueError(f"not a 20-byte hex address: {value!r}")
    return candidate.lower()


def short_address(value: str) -> str:
    """Compact display label, e.g. 0xa0b8...eb48."""
    return f"{value[:6]}...{value[-4:]}"


class PoolMetadata(BaseModel):
    """Token addresses, symbols and decimals of one pool, resolved once."""

    model_config = ConfigDict(frozen=True)

    pool_address: str
    token0: str
    token1: str
    symbol0: str
    symbol1: str
    decimals0: int = Field(..., ge=0, le=255)
    decimals1: int = Field(..., ge=0, le=255)

    @field_validator("pool_address", "token0", "token1")
    @classmethod
    def _valid_address(cls, v: str) -> str:
        return normalize_address(v)

    def __repr__(self) -> str:  # pragma: no cover
        return f"PoolMetadata({self.symbol0}/{self.symbol1}@{self.pool_address})"


@dataclass(frozen=True, slots=True)
class SwapEvent:
    pool_address: str
    sqrt_price_x96: int
    sender: str
    recipient: str
    amount0: int
    amount1: int
    liquidity: int
    tick: int
    block_number: int
    tx_hash: str
    log_index: int


class PriceQuote(BaseModel):
    """Both price directions for a pool at the block of one swap."""

    model_config = ConfigDict(frozen=True)

    pool_address: str
    symbol0: str
    symbol1: str
    price0_per_token1: Decimal = Field(..., gt=0, description="token0 units for one token1")
    price1_per_token0: Decimal = Field(..., gt=0, description="token1 units for one token0")
    block_number: int = Field(..., ge=0)
    tx_hash: str | None = None

    @field_validator("pool_address")
    @classmethod
    def _valid_pool(cls, v: str) -> str:
        return normalize_address(v)

    def __repr__(self) -> str:  # pragma: no cover
        return f"PriceQuote({self.symbol0}/{self.symbol1} block={self.block_number})"


__all__ = [
    "PoolMetadata",
    "SwapEvent",
    "PriceQuote",
    "is_hex_address",
    "normalize_address",
    "short_address",
]
