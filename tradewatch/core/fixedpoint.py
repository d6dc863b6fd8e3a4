"""
Fixed-Point Arithmetic for On-Chain Amounts

On-chain amounts are unsigned 256-bit integers and prices are held as integer
micro-USD (6 decimal places). Every computation here is done with Python ints;
floats appear only in the display helpers at the bottom of the module.

Design Principles:
- Pure Functions: no state, no I/O, trivially testable.
- No Float Intermediates: ratios are computed as scaled integer divisions
  (floor) so two runs always produce the same digits.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

PRICE_DECIMALS = 6
PRICE_SCALE = 10 ** PRICE_DECIMALS
MAX_DECIMALS = 36

_PRICE_RE = re.compile(r"^(\d+)(?:\.(\d{1,6}))?$")


def parse_price_to_micros(text: str, default: int = 190_000_000) -> int:
    """Parse "190", "190.25" or "190n" into micro-units; `default` when malformed."""
    s = str(text or "").strip().lower()
    if s.endswith("n"):
        s = s[:-1]
    m = _PRICE_RE.match(s)
    if not m:
        return default
    frac = (m.group(2) or "").ljust(PRICE_DECIMALS, "0")[:PRICE_DECIMALS]
    return int(m.group(1) + frac)


def _clamp_decimals(decimals) -> int:
    try:
        d = int(decimals or 0)
    except (TypeError, ValueError):
        d = 0
    return max(0, min(MAX_DECIMALS, d))


def format_units(value: int, decimals: int, max_frac: int = 6) -> str:
    """
    Render a raw integer amount as a decimal string.

    The fraction is rounded half-up to `max_frac` digits (carrying into the
    integer part when needed) and trailing zeros are trimmed.

    Args:
        value: Signed raw amount.
        decimals: Token decimals, clamped to 0..36.
        max_frac: Maximum fraction digits; negative disables rounding.
    """
    decimals = _clamp_decimals(decimals)
    neg = value < 0
    x = -value if neg else value
    s = str(x).rjust(decimals + 1, "0")
    int_part = s[:-decimals] if decimals else s
    frac = s[-decimals:] if decimals else ""
    if max_frac >= 0 and frac:
        if len(frac) > max_frac:
            cut = frac[:max_frac]
            rounded = int(cut or "0")
            if int(frac[max_frac]) >= 5:
                rounded += 1
            frac = str(rounded).rjust(max_frac, "0") if max_frac else ""
            if len(frac) > max_frac or (max_frac == 0 and rounded):
                int_part = str(int(int_part) + 1)
                frac = frac[1:] if max_frac else ""
        frac = frac.rstrip("0")
    out = f"{int_part}.{frac}" if frac else int_part
    return f"-{out}" if neg else out


def parse_units(text: str, decimals: int) -> int:
    """Inverse of `format_units`: "1.5" at 18 decimals -> 1500000000000000000."""
    decimals = _clamp_decimals(decimals)
    s = str(text).strip()
    neg = s.startswith("-")
    if neg:
        s = s[1:]
    whole, _, frac = s.partition(".")
    if len(frac) > decimals:
        raise ValueError(f"too many fraction digits for {decimals} decimals: {text!r}")
    raw = int(whole or "0") * 10 ** decimals + int(frac.ljust(decimals, "0") or "0")
    return -raw if neg else raw


def micros_to_str(micros: int, decimals: int = PRICE_DECIMALS) -> str:
    """Exact decimal string of a scaled integer, trailing zeros trimmed."""
    neg = micros < 0
    x = -micros if neg else micros
    scale = 10 ** decimals
    whole, frac = divmod(x, scale)
    fs = str(frac).rjust(decimals, "0").rstrip("0")
    out = f"{whole}.{fs}" if fs else str(whole)
    return f"-{out}" if neg else out


def unit_price_micros(
    native_raw: int,
    token_raw: int,
    token_decimals: int,
    native_price_micros: int,
    native_decimals: int = 18,
) -> Optional[int]:
    """
    Quote price (micro-USD) of one whole token, given that `native_raw` units
    of the native token were exchanged for `token_raw` units of the token.

    price = native_price * native/10^nd / (token/10^td)
    """
    if token_raw <= 0 or native_raw <= 0:
        return None
    num = native_price_micros * native_raw * 10 ** _clamp_decimals(token_decimals)
    den = token_raw * 10 ** native_decimals
    return num // den


def usd_micros(raw: int, decimals: int, price_micros: int) -> int:
    """USD value (micro) of `raw` units priced at `price_micros` per whole token."""
    raw = -raw if raw < 0 else raw
    return raw * price_micros // 10 ** _clamp_decimals(decimals)


@dataclass(frozen=True)
class NativePrice:
    """Native-token USD price, read once at startup."""
    micros: int

    @classmethod
    def parse(cls, text: str) -> "NativePrice":
        return cls(parse_price_to_micros(text))

    def __str__(self) -> str:
        return micros_to_str(self.micros)


# --- display helpers (float only from here on) ---

def fmt_amount(value, max_frac: int = 6) -> str:
    """Thousands-separated number with at most `max_frac` fraction digits."""
    try:
        x = float(value)
    except (TypeError, ValueError):
        return str(value)
    s = f"{x:,.{max_frac}f}"
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return s


def fmt_usd(micros: Optional[int]) -> str:
    if micros is None:
        return ""
    return f"${micros / PRICE_SCALE:,.2f}"


__all__ = [
    "PRICE_DECIMALS",
    "PRICE_SCALE",
    "parse_price_to_micros",
    "format_units",
    "parse_units",
    "micros_to_str",
    "unit_price_micros",
    "usd_micros",
    "NativePrice",
    "fmt_amount",
    "fmt_usd",
]
