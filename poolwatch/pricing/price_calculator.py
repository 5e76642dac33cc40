"""Fixed-point sqrtPriceX96 to human price conversion."""

from __future__ import annotations

from decimal import Decimal, localcontext
from fractions import Fraction
from typing import Tuple

from poolwatch.common.models import PoolMetadata, PriceQuote, SwapEvent

Q96 = 2**96
Q192 = Q96 * Q96
PRICE_PRECISION = 60
MAX_DECIMALS = 255


class ComputationError(ArithmeticError):
    """Raised when a price cannot be derived from the inputs."""


def _to_decimal(value: Fraction) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = PRICE_PRECISION
        return Decimal(value.numerator) / Decimal(value.denominator)


def exact_prices(sqrt_price_x96: int, decimals0: int, decimals1: int) -> Tuple[Fraction, Fraction]:
    """Exact (price0_per_token1, price1_per_token0) as fractions.

    raw = sqrtPriceX96**2 / 2**192 is token1 per token0 in base units;
    price1_per_token0 = raw * 10**(decimals0 - decimals1).
    """
    if isinstance(sqrt_price_x96, bool) or not isinstance(sqrt_price_x96, int):
        raise ComputationError(f"sqrtPriceX96 must be an int, got {type(sqrt_price_x96).__name__}")
    if sqrt_price_x96 <= 0:
        raise ComputationError("sqrtPriceX96 must be positive")
    for name, dec in (("decimals0", decimals0), ("decimals1", decimals1)):
        if not 0 <= dec <= MAX_DECIMALS:
            raise ComputationError(f"{name}={dec} outside [0, {MAX_DECIMALS}]")

    raw = Fraction(sqrt_price_x96 * sqrt_price_x96, Q192)
    price1_per_token0 = raw * Fraction(10) ** (decimals0 - decimals1)
    return 1 / price1_per_token0, price1_per_token0


def calculate_prices(sqrt_price_x96: int, decimals0: int, decimals1: int) -> Tuple[Decimal, Decimal]:
    """Return (price0_per_token1, price1_per_token0) as Decimals.

    Pure; the square is taken on Python ints so nothing overflows, and the
    result is rounded once to PRICE_PRECISION significant digits.
    """
    price0, price1 = exact_prices(sqrt_price_x96, decimals0, decimals1)
    return _to_decimal(price0), _to_decimal(price1)


def build_quote(event: SwapEvent, meta: PoolMetadata) -> PriceQuote:
    price0_per_token1, price1_per_token0 = calculate_prices(event.sqrt_price_x96, meta.decimals0, meta.decimals1)
    return PriceQuote(
        pool_address=event.pool_address,
        symbol0=meta.symbol0,
        symbol1=meta.symbol1,
        price0_per_token1=price0_per_token1,
        price1_per_token0=price1_per_token0,
        block_number=event.block_number,
        tx_hash=event.tx_hash,
    )


def format_price(value: Decimal, places: int = 18) -> str:
    """Fixed-point rendering (18 places matches ether units); never scientific."""
    quantum = Decimal(1).scaleb(-places)
    with localcontext() as ctx:
        ctx.prec = max(PRICE_PRECISION, value.adjusted() + places + 2)
        return format(value.quantize(quantum), "f")


__all__ = [
    "ComputationError",
    "calculate_prices",
    "exact_prices",
    "build_quote",
    "format_price",
    "Q96",
]
