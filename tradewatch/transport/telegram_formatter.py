import html
from typing import List, Optional

from tradewatch.core.config import ChainSettings
from tradewatch.core.events import TradeLeg, TradeRecord
from tradewatch.core.fixedpoint import fmt_amount, fmt_usd, micros_to_str
from tradewatch.onchain.registry import short_address


def _esc(s: str) -> str:
    # Escapes text for Telegram HTML parse mode.
    return html.escape(str(s or ""), quote=False)


def _price_suffix(record: TradeRecord) -> str:
    if record.unit_price_micros is None:
        return ""
    return f" (@ <b>${fmt_amount(micros_to_str(record.unit_price_micros), 6)}</b>)"


def _net_line(leg: TradeLeg) -> str:
    icon = "🟢" if leg.delta > 0 else "🔴"
    sign = "+" if leg.delta > 0 else "-"
    line = f"{icon} {sign}{leg.amount} {_esc(leg.symbol)}"
    usd = fmt_usd(leg.usd_micros)
    if usd:
        line += f"  ({usd})"
    return line


def _summary(record: TradeRecord) -> str:
    explicit = [leg for leg in record.legs if not leg.implicit]
    implicit: Optional[TradeLeg] = next((leg for leg in record.legs if leg.implicit), None)

    if len(explicit) >= 2:
        inflow, outflow = record.inflow, record.outflow
        return (
            f"💠 swapped <b>{fmt_amount(outflow.amount)}</b> {_esc(outflow.symbol)}"
            f" ↔ <b>{fmt_amount(inflow.amount)}</b> {_esc(inflow.symbol)}"
            + _price_suffix(record)
        )

    leg = explicit[0]
    verb = "received" if leg.delta > 0 else "sent"
    line = f"💠 {verb} <b>{fmt_amount(leg.amount)}</b> {_esc(leg.symbol)}"
    if implicit is not None:
        line += f" for <b>{fmt_amount(implicit.amount)}</b> {_esc(implicit.symbol)}"
    return line + _price_suffix(record)


def format_trade(record: TradeRecord, chain: ChainSettings) -> str:
    """Formats a TradeRecord into a Telegram HTML message."""
    wallet = short_address(record.wallet)
    who = f"👛 <b>{_esc(record.label)}</b> (<code>{wallet}</code>)" if record.label else f"👛 <code>{wallet}</code>"

    parts: List[str] = [
        f"🔵 <b>{record.action.value} {_esc(record.focus_symbol)}</b> on {_esc(chain.name)}",
        who,
        f"block <b>{record.block_number}</b>",
        f"tx <code>{_esc(record.tx_hash)}</code>",
        _summary(record),
        "<b>Net change:</b>",
    ]
    # inflow first, then outflow
    for leg in sorted(record.legs, key=lambda lg: lg.delta < 0):
        parts.append(_net_line(leg))
    if record.contract:
        parts.append(f"Contract: <code>{record.contract}</code>")
    return "\n".join(parts)


def format_console(record: TradeRecord) -> str:
    """One-line plain-text rendering for the log."""
    legs = " ".join(f"{'+' if leg.delta > 0 else '-'}{leg.amount} {leg.symbol}" for leg in record.legs)
    price = ""
    if record.unit_price_micros is not None:
        price = f" @ {micros_to_str(record.unit_price_micros)} USD/{record.price_symbol}"
        if record.price_via:
            price += f" (via {record.price_via})"
    return f"{record.action.value} {record.focus_symbol} wallet={short_address(record.wallet)} {legs}{price}"
