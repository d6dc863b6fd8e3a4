"""Per-transaction net-flow aggregation and trade classification.

Given one transaction receipt and the watched-wallet snapshot:

 1. decode every Transfer log in the receipt (other log kinds are ignored),
 2. sum implicit wrap / unwrap legs of the wrapped native token
    (zero -> tx target, and tx target -> zero),
 3. accumulate a signed delta per (wallet, token),
 4. classify each wallet's non-zero deltas as BUY / SELL / SWAP and infer a
    unit price in quote currency from the native leg,
 5. build one `TradeRecord` per wallet.

All price math uses scaled integers from `tradewatch.core.fixedpoint`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from tradewatch.core.events import DecodedTransfer, TokenMeta, TradeAction, TradeLeg, TradeRecord
from tradewatch.core.fixedpoint import NativePrice, format_units, unit_price_micros, usd_micros
from tradewatch.live.rpc import RequestAbandoned, RpcError
from tradewatch.onchain.decoder import ZERO_ADDRESS, canonical_address, decode_transfer_log, hex_to_int
from tradewatch.onchain.registry import WalletRegistry


@dataclass(frozen=True)
class WrapLegs:
    wrap_to_router: int = 0
    unwrap_from_router: int = 0

    @property
    def any(self) -> bool:
        return self.wrap_to_router > 0 or self.unwrap_from_router > 0


def decode_transfers(logs: Iterable[Any]) -> List[DecodedTransfer]:
    out = []
    for lg in logs or []:
        t = decode_transfer_log(lg)
        if t is not None:
            out.append(t)
    return out


def scan_wrap_legs(transfers: Iterable[DecodedTransfer], router: str, wrapped_native: str) -> WrapLegs:
    router = canonical_address(router)
    wrapped_native = canonical_address(wrapped_native)
    wrap = unwrap = 0
    for t in transfers:
        if t.token != wrapped_native:
            continue
        if t.sender == ZERO_ADDRESS and t.recipient == router:
            wrap += t.value
        if t.sender == router and t.recipient == ZERO_ADDRESS:
            unwrap += t.value
    return WrapLegs(wrap, unwrap)


def compute_wallet_deltas(transfers: Iterable[DecodedTransfer], watched: Iterable[str]) -> Dict[str, Dict[str, int]]:
    watched = set(watched)
    deltas: Dict[str, Dict[str, int]] = {}
    for t in transfers:
        if t.sender in watched:
            m = deltas.setdefault(t.sender, {})
            m[t.token] = m.get(t.token, 0) - t.value
        if t.recipient in watched:
            m = deltas.setdefault(t.recipient, {})
            m[t.token] = m.get(t.token, 0) + t.value
    return deltas


def ranked_deltas(per_token: Dict[str, int]) -> List[Tuple[str, int]]:
    """Non-zero (token, delta) pairs, largest absolute change first."""
    items = [(tok, v) for tok, v in per_token.items() if v != 0]
    items.sort(key=lambda kv: abs(kv[1]), reverse=True)
    return items


class NetFlowAggregator:
    def __init__(
        self,
        resolver,
        wrapped_native: str,
        native_price: NativePrice,
        native_symbol: str = "OKB",
        native_decimals: int = 18,
    ):
        """
        Args:
            resolver: Object with ``resolve(token) -> awaitable TokenMeta``.
            wrapped_native: Address of the wrapped native token.
            native_price: Native token USD price (micro-units).
        """
        self.resolver = resolver
        self.wrapped_native = canonical_address(wrapped_native)
        self.native_price = native_price
        self.native_symbol = native_symbol
        self.native_decimals = native_decimals

    def _is_native(self, token: str) -> bool:
        return token == self.wrapped_native

    def _unit_price(self, native_raw: int, token_raw: int, token_decimals: int) -> Optional[int]:
        return unit_price_micros(native_raw, token_raw, token_decimals, self.native_price.micros, self.native_decimals)

    def _native_usd(self, raw: int) -> int:
        return usd_micros(raw, self.native_decimals, self.native_price.micros)

    def _leg(self, token: str, meta: TokenMeta, delta: int, usd: Optional[int] = None, implicit: bool = False) -> TradeLeg:
        return TradeLeg(
            token=token,
            symbol=meta.symbol,
            decimals=meta.decimals,
            delta=delta,
            amount=format_units(abs(delta), meta.decimals, 6),
            usd_micros=usd,
            implicit=implicit,
        )

    async def process(self, receipt: Dict[str, Any], tx_hash: str, registry: WalletRegistry) -> List[TradeRecord]:
        logs = receipt.get("logs") or []
        transfers = decode_transfers(logs)
        router = canonical_address(receipt.get("to") or "")
        wrap = scan_wrap_legs(transfers, router, self.wrapped_native)
        deltas = compute_wallet_deltas(transfers, registry.addresses)
        block_number = hex_to_int(receipt.get("blockNumber"))

        records: List[TradeRecord] = []
        for wallet, per_token in deltas.items():
            items = ranked_deltas(per_token)
            if not items:
                continue
            try:
                rec = await self._classify(wallet, items, wrap)
            except (RequestAbandoned, RpcError) as e:
                logger.warning("agg.metadata_unavailable wallet={} tx={} err={}", wallet, tx_hash, e)
                continue
            rec.label = registry.label(wallet)
            rec.block_number = block_number
            rec.tx_hash = tx_hash
            records.append(rec)
        return records

    async def _classify(self, wallet: str, items: List[Tuple[str, int]], wrap: WrapLegs) -> TradeRecord:
        pos = next((kv for kv in items if kv[1] > 0), None)
        neg = next((kv for kv in items if kv[1] < 0), None)
        if len(items) >= 2 and pos is not None and neg is not None:
            return await self._two_sided(wallet, pos, neg, wrap)
        return await self._single_sided(wallet, items[0], wrap)

    async def _two_sided(self, wallet: str, pos: Tuple[str, int], neg: Tuple[str, int], wrap: WrapLegs) -> TradeRecord:
        pos_tok, pos_val = pos
        neg_tok, neg_val = neg
        pos_meta, neg_meta = await asyncio.gather(self.resolver.resolve(pos_tok), self.resolver.resolve(neg_tok))
        pos_native, neg_native = self._is_native(pos_tok), self._is_native(neg_tok)

        price: Optional[int] = None
        priced: Optional[str] = None
        via: Optional[str] = None
        if pos_native:
            price, priced = self._unit_price(pos_val, -neg_val, neg_meta.decimals), neg_tok
        elif neg_native:
            price, priced = self._unit_price(-neg_val, pos_val, pos_meta.decimals), pos_tok
        if price is None:
            if wrap.wrap_to_router > 0:
                price, priced, via = self._unit_price(wrap.wrap_to_router, pos_val, pos_meta.decimals), pos_tok, "wrap"
            elif wrap.unwrap_from_router > 0:
                price, priced, via = self._unit_price(wrap.unwrap_from_router, -neg_val, neg_meta.decimals), neg_tok, "unwrap"

        if neg_native:
            action, focus = TradeAction.BUY, pos_meta.symbol
        elif pos_native:
            action, focus = TradeAction.SELL, neg_meta.symbol
        elif via == "wrap":
            action, focus = TradeAction.BUY, pos_meta.symbol
        elif via == "unwrap":
            action, focus = TradeAction.SELL, neg_meta.symbol
        else:
            action, focus = TradeAction.SWAP, f"{pos_meta.symbol}/{neg_meta.symbol}"

        def usd_for(token: str, meta: TokenMeta, raw: int) -> Optional[int]:
            if self._is_native(token):
                return self._native_usd(raw)
            if price is not None and token == priced:
                return usd_micros(raw, meta.decimals, price)
            return None

        contract = None
        if pos_native:
            contract = neg_tok
        elif neg_native:
            contract = pos_tok

        return TradeRecord(
            wallet=wallet,
            label="",
            block_number=0,
            tx_hash="",
            action=action,
            focus_symbol=focus,
            legs=[
                self._leg(pos_tok, pos_meta, pos_val, usd_for(pos_tok, pos_meta, pos_val)),
                self._leg(neg_tok, neg_meta, neg_val, usd_for(neg_tok, neg_meta, neg_val)),
            ],
            unit_price_micros=price,
            price_symbol=(pos_meta.symbol if priced == pos_tok else neg_meta.symbol) if price is not None else None,
            price_via=via,
            contract=contract,
        )

    async def _single_sided(self, wallet: str, item: Tuple[str, int], wrap: WrapLegs) -> TradeRecord:
        tok, val = item
        meta = await self.resolver.resolve(tok)

        native_delta = 0
        price: Optional[int] = None
        via: Optional[str] = None
        if val > 0 and wrap.wrap_to_router > 0:
            native_delta = -wrap.wrap_to_router
            price, via = self._unit_price(wrap.wrap_to_router, val, meta.decimals), "wrap"
        elif val < 0 and wrap.unwrap_from_router > 0:
            native_delta = wrap.unwrap_from_router
            price, via = self._unit_price(wrap.unwrap_from_router, -val, meta.decimals), "unwrap"

        legs = [self._leg(tok, meta, val, usd_micros(val, meta.decimals, price) if price is not None else None)]
        if native_delta:
            native_meta = TokenMeta(self.native_symbol, self.native_decimals)
            legs.append(self._leg(self.wrapped_native, native_meta, native_delta,
                                  self._native_usd(native_delta), implicit=True))

        return TradeRecord(
            wallet=wallet,
            label="",
            block_number=0,
            tx_hash="",
            action=TradeAction.BUY if val > 0 else TradeAction.SELL,
            focus_symbol=meta.symbol,
            legs=legs,
            unit_price_micros=price,
            price_symbol=meta.symbol if price is not None else None,
            price_via=via,
            contract=tok if (not self._is_native(tok) and wrap.any) else None,
        )


__all__ = [
    "WrapLegs",
    "NetFlowAggregator",
    "decode_transfers",
    "scan_wrap_legs",
    "compute_wallet_deltas",
    "ranked_deltas",
]
