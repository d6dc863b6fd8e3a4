"""Token metadata (symbol, decimals) resolution over the shared RPC socket.

Symbol and decimals of a token contract are treated as immutable: once
resolved they are cached for the life of the process. Concurrent requests for
the same token share a single in-flight task instead of issuing duplicate
calls.
"""
from __future__ import annotations

import asyncio
from typing import Dict, Optional

from loguru import logger

from tradewatch.core.events import RequestTag, TokenMeta
from tradewatch.live.rpc import RpcError
from tradewatch.onchain.decoder import (
    SELECTOR_DECIMALS,
    SELECTOR_SYMBOL,
    canonical_address,
    decode_decimals,
    decode_symbol,
    strip_0x,
)


def fallback_symbol(token: str) -> str:
    return strip_0x(canonical_address(token))[:6].upper()


class TokenMetadataResolver:
    def __init__(self, rpc, wrapped_native: str, wrapped_symbol: str = "WOKB", wrapped_decimals: int = 18):
        """
        Args:
            rpc: Object exposing ``async call(to, data, tag) -> str`` (the multiplexer).
            wrapped_native: Address of the wrapped native token; resolved locally.
        """
        self._rpc = rpc
        self.wrapped_native = canonical_address(wrapped_native)
        self._wrapped_meta = TokenMeta(symbol=wrapped_symbol, decimals=wrapped_decimals)
        self._cache: Dict[str, TokenMeta] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

    def cached(self, token: str) -> Optional[TokenMeta]:
        t = canonical_address(token)
        if t == self.wrapped_native:
            return self._wrapped_meta
        return self._cache.get(t)

    def resolve(self, token: str) -> "asyncio.Future[TokenMeta]":
        t = canonical_address(token)
        known = self.cached(t)
        if known is not None:
            fut = asyncio.get_running_loop().create_future()
            fut.set_result(known)
            return fut
        pending = self._inflight.get(t)
        if pending is not None:
            return pending
        task = asyncio.ensure_future(self._fetch(t))
        self._inflight[t] = task
        task.add_done_callback(lambda _f, key=t: self._inflight.pop(key, None))
        return task

    async def _call_or_empty(self, token: str, data: str, tag: RequestTag) -> str:
        # a reverting call reads as an empty reply so the fallbacks apply
        try:
            return await self._rpc.call(token, data, tag)
        except RpcError as e:
            logger.debug("meta.call_reverted token={} kind={} err={}", token, tag.kind.value, e)
            return "0x"

    async def _fetch(self, token: str) -> TokenMeta:
        sym_hex, dec_hex = await asyncio.gather(
            self._call_or_empty(token, SELECTOR_SYMBOL, RequestTag.symbol(token)),
            self._call_or_empty(token, SELECTOR_DECIMALS, RequestTag.decimals(token)),
        )
        symbol = decode_symbol(sym_hex) or fallback_symbol(token)
        decimals = decode_decimals(dec_hex)
        if not strip_0x(dec_hex):
            logger.debug("meta.decimals_missing token={} defaulting to {}", token, decimals)
        meta = TokenMeta(symbol=symbol, decimals=decimals)
        self._cache[token] = meta
        logger.debug("meta.resolved token={} symbol={} decimals={}", token, symbol, decimals)
        return meta

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)


__all__ = ["TokenMetadataResolver", "fallback_symbol"]
