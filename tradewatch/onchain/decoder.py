"""Pure decoders for EVM event logs and ABI return values.

Nothing in here raises on bad chain data: truncated words decode as zero and
non-hex payloads fall back to zero / ``None`` so one odd log never aborts the
processing of a whole receipt.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import ValidationError

from tradewatch.core.events import DecodedSwapV2, DecodedTransfer, RawLog

# ERC-20 Transfer(address indexed from, address indexed to, uint256 value)
TOPIC_TRANSFER = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
# UniswapV2 Swap(address indexed sender, uint a0In, uint a1In, uint a0Out, uint a1Out, address indexed to)
TOPIC_SWAP_V2 = "0xd78ad95fa46c994b6551d0da85fc275fe613ce37657fb8d5e3d130840159d822"

SELECTOR_SYMBOL = "0x95d89b41"
SELECTOR_DECIMALS = "0x313ce567"

ZERO_ADDRESS = "0x" + "0" * 40

WORD = 64  # hex chars per 32-byte word

_ADDR_RE = re.compile(r"^0x[0-9a-f]{40}$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")

LogLike = Union[RawLog, Dict[str, Any]]


def strip_0x(h: Optional[str]) -> str:
    h = h or ""
    return h[2:] if h[:2] in ("0x", "0X") else h


def canonical_address(addr: Optional[str]) -> str:
    return "0x" + strip_0x(str(addr or "").strip()).lower()


def is_valid_address(addr: Optional[str]) -> bool:
    return bool(_ADDR_RE.match(canonical_address(addr)))


def pad_topic(addr: str) -> str:
    return "0x" + strip_0x(addr).lower().rjust(WORD, "0")


def address_from_topic(topic: Optional[str]) -> str:
    return "0x" + strip_0x(topic)[-40:].lower().rjust(40, "0")


def hex_to_int(h: Optional[str]) -> int:
    body = strip_0x(h)
    if not body or not _HEX_RE.match(body):
        return 0
    return int(body, 16)


def decode_transfer_value(data: Optional[str]) -> int:
    """The whole data blob read as one big-endian integer."""
    return hex_to_int(strip_0x(data).rjust(WORD, "0"))


def decode_swap_v2_data(data: Optional[str]) -> Tuple[int, int, int, int]:
    """(amount0In, amount1In, amount0Out, amount1Out) from a 4-word blob."""
    body = strip_0x(data).rjust(WORD * 4, "0")
    words = [body[i:i + WORD] for i in range(0, WORD * 4, WORD)]
    a0i, a1i, a0o, a1o = (hex_to_int(w) for w in words)
    return a0i, a1i, a0o, a1o


def as_raw_log(log: LogLike) -> Optional[RawLog]:
    if isinstance(log, RawLog):
        return log
    try:
        return RawLog.model_validate(log)
    except ValidationError:
        return None


def topic0(log: RawLog) -> str:
    return (log.topics[0] if log.topics else "").lower()


def decode_transfer_log(log: LogLike) -> Optional[DecodedTransfer]:
    raw = as_raw_log(log)
    if raw is None or len(raw.topics) < 3 or topic0(raw) != TOPIC_TRANSFER:
        return None
    return DecodedTransfer(
        token=canonical_address(raw.address),
        sender=address_from_topic(raw.topics[1]),
        recipient=address_from_topic(raw.topics[2]),
        value=decode_transfer_value(raw.data),
    )


def decode_swap_log(log: LogLike) -> Optional[DecodedSwapV2]:
    raw = as_raw_log(log)
    if raw is None or len(raw.topics) < 3 or topic0(raw) != TOPIC_SWAP_V2:
        return None
    a0i, a1i, a0o, a1o = decode_swap_v2_data(raw.data)
    return DecodedSwapV2(
        pool=canonical_address(raw.address),
        sender=address_from_topic(raw.topics[1]),
        recipient=address_from_topic(raw.topics[2]),
        amount0_in=a0i,
        amount1_in=a1i,
        amount0_out=a0o,
        amount1_out=a1o,
    )


def _printable(text: str) -> str:
    return "".join(ch for ch in text if " " <= ch <= "~").strip()


def decode_symbol(ret: Optional[str]) -> Optional[str]:
    """Decode an ERC-20 `symbol()` reply (ABI string, or legacy bytes32)."""
    body = strip_0x(ret)
    if not body or not _HEX_RE.match(body):
        return None
    if len(body) >= WORD * 2 and int(body[:WORD], 16) == 32:
        length = int(body[WORD:WORD * 2], 16)
        payload = body[WORD * 2:WORD * 2 + length * 2]
        try:
            sym = _printable(bytes.fromhex(payload).decode("utf-8", errors="ignore"))
        except ValueError:
            sym = ""
        if sym:
            return sym
    head = body[:WORD]
    if len(head) % 2:
        head = head[:-1]
    try:
        sym = bytes.fromhex(head).decode("utf-8", errors="ignore").rstrip("\x00").strip()
    except ValueError:
        return None
    return _printable(sym) or None


def decode_decimals(ret: Optional[str], default: int = 18) -> int:
    body = strip_0x(ret)
    if not body or not _HEX_RE.match(body):
        return default
    value = int(body, 16)
    return value if 0 <= value <= 36 else default


__all__ = [
    "TOPIC_TRANSFER",
    "TOPIC_SWAP_V2",
    "SELECTOR_SYMBOL",
    "SELECTOR_DECIMALS",
    "ZERO_ADDRESS",
    "strip_0x",
    "canonical_address",
    "is_valid_address",
    "pad_topic",
    "address_from_topic",
    "hex_to_int",
    "decode_transfer_value",
    "decode_swap_v2_data",
    "as_raw_log",
    "decode_transfer_log",
    "decode_swap_log",
    "decode_symbol",
    "decode_decimals",
]
