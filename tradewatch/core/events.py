"""
Core Data Models for Chain Events and Trades

This module defines the canonical structures shared by the decoder, the
request multiplexer, the aggregator and the notification transport.

- Wire-level objects received from the node (`RawLog`) are Pydantic models so
  malformed payloads are rejected at the edge.
- Decoded events and trade records are plain dataclasses; they are created and
  consumed inside the process and never leave it except as formatted text.

All on-chain amounts are Python ints (arbitrary precision), never floats.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RawLog(BaseModel):
    """An event log as delivered by `eth_subscription` pushes or receipts."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    address: str = ""
    topics: List[str] = Field(default_factory=list)
    data: str = "0x"
    block_number: Optional[str] = Field(None, alias="blockNumber")
    transaction_hash: Optional[str] = Field(None, alias="transactionHash")
    removed: bool = False


@dataclass(frozen=True)
class DecodedTransfer:
    token: str
    sender: str
    recipient: str
    value: int


@dataclass(frozen=True)
class DecodedSwapV2:
    pool: str
    sender: str
    recipient: str
    amount0_in: int = 0
    amount1_in: int = 0
    amount0_out: int = 0
    amount1_out: int = 0


@dataclass(frozen=True)
class TokenMeta:
    symbol: str
    decimals: int


class RequestKind(str, Enum):
    HEADS = "heads"
    TRANSFER_IN = "tr_in"
    TRANSFER_OUT = "tr_out"
    SWAP_BY_SENDER = "swap_sender"
    SWAP_BY_RECIPIENT = "swap_to"
    RECEIPT = "rpc_receipt"
    CALL_SYMBOL = "call_symbol"
    CALL_DECIMALS = "call_decimals"


SUBSCRIPTION_KINDS = frozenset({
    RequestKind.HEADS,
    RequestKind.TRANSFER_IN,
    RequestKind.TRANSFER_OUT,
    RequestKind.SWAP_BY_SENDER,
    RequestKind.SWAP_BY_RECIPIENT,
})

CALL_KINDS = frozenset({RequestKind.CALL_SYMBOL, RequestKind.CALL_DECIMALS})


@dataclass(frozen=True)
class RequestTag:
    """Semantic intent of an outstanding request; `token` is set for calls."""
    kind: RequestKind
    token: Optional[str] = None

    @property
    def is_subscription(self) -> bool:
        return self.kind in SUBSCRIPTION_KINDS

    @property
    def is_call(self) -> bool:
        return self.kind in CALL_KINDS

    @classmethod
    def symbol(cls, token: str) -> "RequestTag":
        return cls(RequestKind.CALL_SYMBOL, token)

    @classmethod
    def decimals(cls, token: str) -> "RequestTag":
        return cls(RequestKind.CALL_DECIMALS, token)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.token}" if self.token else self.kind.value


class TradeAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    SWAP = "SWAP"


@dataclass
class TradeLeg:
    """One side of a wallet's net change in a transaction.

    `delta` is the signed raw amount; `amount` is the formatted absolute value.
    `implicit` marks native legs inferred from wrap/unwrap transfers that never
    touched the wallet directly.
    """
    token: str
    symbol: str
    decimals: int
    delta: int
    amount: str
    usd_micros: Optional[int] = None
    implicit: bool = False


@dataclass
class TradeRecord:
    wallet: str
    label: str
    block_number: int
    tx_hash: str
    action: TradeAction
    focus_symbol: str
    legs: List[TradeLeg] = field(default_factory=list)
    unit_price_micros: Optional[int] = None
    price_symbol: Optional[str] = None
    price_via: Optional[str] = None          # "wrap" | "unwrap" | None
    contract: Optional[str] = None           # non-native token shown in the footer

    @property
    def inflow(self) -> Optional[TradeLeg]:
        return next((leg for leg in self.legs if leg.delta > 0), None)

    @property
    def outflow(self) -> Optional[TradeLeg]:
        return next((leg for leg in self.legs if leg.delta < 0), None)


__all__ = [
    "RawLog",
    "DecodedTransfer",
    "DecodedSwapV2",
    "TokenMeta",
    "RequestKind",
    "RequestTag",
    "SUBSCRIPTION_KINDS",
    "CALL_KINDS",
    "TradeAction",
    "TradeLeg",
    "TradeRecord",
]
