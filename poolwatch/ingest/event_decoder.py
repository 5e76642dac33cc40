"""Decode Uniswap v3 style Swap logs."""

from __future__ import annotations

import re
from typing import Any, Mapping

from poolwatch.common.models import SwapEvent, is_hex_address

# event Swap(address indexed sender, address indexed recipient, int256 amount0, int256 amount1,
#            uint160 sqrtPriceX96, uint128 liquidity, int24 tick)
SWAP_TOPIC = "0xc42079f94a6350d7e6235f29174924f928cc2ac818eb64fed8004e115fbcca67"

_HEX_RE = re.compile(r"[0-9a-fA-F]*")

WORD_HEX = 64
SWAP_DATA_WORDS = 5


class DecodeError(ValueError):
    """Raised when a log does not have the Swap event shape."""


def _word(payload: str, index: int) -> int:
    return int(payload[WORD_HEX * index : WORD_HEX * (index + 1)], 16)


def _signed(value: int, bits: int = 256) -> int:
    if value >= 2 ** (bits - 1):
        value -= 2**bits
    return value


def _parse_quantity(raw: Any, field: str) -> int:
    """blockNumber/logIndex may arrive as hex string or int."""
    if isinstance(raw, bool):
        raise DecodeError(f"{field} is not a quantity")
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str):
        try:
            value = int(raw, 16) if raw.startswith("0x") else int(raw)
        except ValueError as exc:
            raise DecodeError(f"{field} is not a quantity: {raw!r}") from exc
    else:
        raise DecodeError(f"{field} missing")
    if value < 0:
        raise DecodeError(f"{field} is negative")
    return value


def _topic_address(topic: Any, name: str) -> str:
    if not isinstance(topic, str) or not topic.startswith("0x") or len(topic) != 2 + WORD_HEX:
        raise DecodeError(f"{name} topic is not a 32-byte word")
    body = topic[2:].lower()
    if body[:24] != "0" * 24:
        raise DecodeError(f"{name} topic has non-zero upper bytes")
    addr = "0x" + body[24:]
    if not is_hex_address(addr):
        raise DecodeError(f"{name} topic is not hex")
    return addr


def decode_swap(log: Mapping[str, Any]) -> SwapEvent:
    """Decode a raw Swap log (eth_subscription result) into a SwapEvent.

    Raises DecodeError for anything that does not match the event shape:
    wrong topic count or signature, wrong data length, values outside their
    ABI width, or missing address/block/tx fields.
    """
    if not isinstance(log, Mapping):
        raise DecodeError("log is not an object")

    topics = log.get("topics")
    if not isinstance(topics, list) or len(topics) != 3:
        raise DecodeError(f"expected 3 topics, got {len(topics) if isinstance(topics, list) else 'none'}")
    if not isinstance(topics[0], str) or topics[0].lower() != SWAP_TOPIC:
        raise DecodeError(f"unexpected topic0 {topics[0]!r}")
    sender = _topic_address(topics[1], "sender")
    recipient = _topic_address(topics[2], "recipient")

    data = log.get("data")
    if not isinstance(data, str) or not data.startswith("0x"):
        raise DecodeError("data is not 0x-prefixed hex")
    payload = data[2:]
    if len(payload) != WORD_HEX * SWAP_DATA_WORDS:
        raise DecodeError(f"expected {WORD_HEX * SWAP_DATA_WORDS} hex chars of data, got {len(payload)}")
    if _HEX_RE.fullmatch(payload) is None:
        raise DecodeError("data is not hex")
    try:
        amount0 = _signed(_word(payload, 0))
        amount1 = _signed(_word(payload, 1))
        sqrt_price_x96 = _word(payload, 2)
        liquidity = _word(payload, 3)
        tick = _signed(_word(payload, 4))
    except ValueError as exc:
        raise DecodeError("data is not hex") from exc
    if sqrt_price_x96 >= 2**160:
        raise DecodeError("sqrtPriceX96 exceeds uint160")
    if liquidity >= 2**128:
        raise DecodeError("liquidity exceeds uint128")
    if not -(2**23) <= tick < 2**23:
        raise DecodeError("tick exceeds int24")

    pool = log.get("address")
    if not is_hex_address(pool):
        raise DecodeError(f"bad log address {pool!r}")
    tx_hash = log.get("transactionHash")
    if not isinstance(tx_hash, str) or not tx_hash.startswith("0x"):
        raise DecodeError("transactionHash missing")

    return SwapEvent(
        pool_address=pool.lower(),
        sqrt_price_x96=sqrt_price_x96,
        sender=sender,
        recipient=recipient,
        amount0=amount0,
        amount1=amount1,
        liquidity=liquidity,
        tick=tick,
        block_number=_parse_quantity(log.get("blockNumber"), "blockNumber"),
        tx_hash=tx_hash.lower(),
        log_index=_parse_quantity(log.get("logIndex"), "logIndex"),
    )


__all__ = ["decode_swap", "DecodeError", "SWAP_TOPIC"]
