"""
Trade Listener - wires the socket, the multiplexer, the aggregator and the sink.

Push path (per event):
  subscription push -> decode -> log -> (transfer touching a watched wallet,
  first time on this connection) -> one `eth_getTransactionReceipt`
Receipt path (per transaction):
  receipt -> NetFlowAggregator.process -> TradeRecord(s) -> formatter -> sink

The seen-transaction set is per connection: it is cleared on every open so a
transaction whose receipt was lost with the previous socket can be fetched
again after reconnect.
"""
import asyncio
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from tradewatch.core.config import Settings
from tradewatch.core.events import RequestKind, TradeRecord
from tradewatch.live.feed_ws import ConnectionManager
from tradewatch.live.rpc import RpcMultiplexer
from tradewatch.onchain.aggregator import NetFlowAggregator
from tradewatch.onchain.decoder import decode_swap_log, decode_transfer_log, hex_to_int
from tradewatch.onchain.metadata import TokenMetadataResolver
from tradewatch.onchain.registry import WalletFileWatcher, WalletRegistry, WatchedWallets, short_address
from tradewatch.transport.telegram import TelegramSink
from tradewatch.transport.telegram_formatter import format_console, format_trade

TRANSFER_KINDS = (RequestKind.TRANSFER_IN, RequestKind.TRANSFER_OUT)
SWAP_KINDS = (RequestKind.SWAP_BY_SENDER, RequestKind.SWAP_BY_RECIPIENT)


class TradeListener:
    def __init__(
        self,
        settings: Settings,
        wallets: Optional[WatchedWallets] = None,
        sink: Optional[TelegramSink] = None,
        rpc: Optional[RpcMultiplexer] = None,
        connector=None,
    ):
        self.settings = settings
        chain = settings.chain
        self.wallets = wallets or WatchedWallets()
        self.rpc = rpc or RpcMultiplexer(call_timeout_sec=settings.rpc.call_timeout_sec)
        self.rpc.on_push = self.handle_push
        self.rpc.on_receipt = self.handle_receipt
        self.resolver = TokenMetadataResolver(
            self.rpc, chain.wrapped_native, chain.wrapped_native_symbol, chain.native_decimals
        )
        self.aggregator = NetFlowAggregator(
            self.resolver,
            chain.wrapped_native,
            chain.native_price,
            native_symbol=chain.native_symbol,
            native_decimals=chain.native_decimals,
        )
        self.sink = sink or TelegramSink(settings.transport.telegram, chain)
        self.connection = ConnectionManager(
            settings.rpc, self.rpc, self.wallets, connector=connector, on_open=self.on_open
        )
        self.watcher = WalletFileWatcher(
            settings.wallets.file,
            self.wallets,
            on_change=self._on_wallets_changed,
            poll_interval_sec=settings.wallets.poll_interval_sec,
            debounce_ms=settings.wallets.debounce_ms,
        )
        self._seen_tx: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    # --- connection hooks ----------------------------------------------------

    def on_open(self) -> None:
        self._seen_tx.clear()

    def _on_wallets_changed(self, registry: WalletRegistry) -> None:
        self.connection.request_reconnect(f"wallets changed ({len(registry)})")

    # --- push path -------------------------------------------------------------

    def handle_push(self, kind: RequestKind, result: Dict[str, Any]) -> None:
        if kind is RequestKind.HEADS:
            logger.debug("head block={}", hex_to_int(result.get("number")))
            return
        if kind in TRANSFER_KINDS:
            self._on_transfer(kind, result)
        elif kind in SWAP_KINDS:
            self._on_swap(kind, result)

    def _on_transfer(self, kind: RequestKind, result: Dict[str, Any]) -> None:
        if len(result.get("topics") or []) < 3:
            return
        t = decode_transfer_log(result)
        if t is None:
            return
        tx = result.get("transactionHash")
        logger.info(
            "transfer [{}] token={} {} -> {} value={} block={} tx={}",
            kind.value, t.token, short_address(t.sender), short_address(t.recipient),
            t.value, hex_to_int(result.get("blockNumber")), tx,
        )
        if result.get("removed"):
            return
        registry = self.wallets.current
        if t.sender not in registry and t.recipient not in registry:
            return
        if not tx or tx in self._seen_tx:
            return
        self._seen_tx.add(tx)
        self.rpc.request_receipt(tx)

    def _on_swap(self, kind: RequestKind, result: Dict[str, Any]) -> None:
        s = decode_swap_log(result)
        if s is None:
            return
        logger.info(
            "swap [{}] pool={} {} -> {} in=({}, {}) out=({}, {}) tx={}",
            kind.value, s.pool, short_address(s.sender), short_address(s.recipient),
            s.amount0_in, s.amount1_in, s.amount0_out, s.amount1_out, result.get("transactionHash"),
        )

    # --- receipt path ------------------------------------------------------------

    def handle_receipt(self, receipt: Dict[str, Any], tx_hash: str) -> None:
        task = asyncio.create_task(self.process_receipt(receipt, tx_hash))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def process_receipt(self, receipt: Dict[str, Any], tx_hash: str) -> List[TradeRecord]:
        try:
            records = await self.aggregator.process(receipt, tx_hash, self.wallets.current)
        except Exception:
            logger.exception(f"receipt processing failed tx={tx_hash}")
            return []
        for rec in records:
            logger.success(format_console(rec))
            self.sink.submit(format_trade(rec, self.settings.chain), rec.tx_hash)
        return records

    # --- lifecycle -----------------------------------------------------------------

    async def run(self) -> None:
        self.watcher.prime()
        logger.info(f"Watching {len(self.wallets.current)} wallet(s) on {self.settings.chain.name}, "
                    f"{self.settings.chain.native_symbol}=${self.settings.chain.native_price}")
        self.sink.start()
        watch_task = asyncio.create_task(self.watcher.run(), name="wallet-watcher")
        try:
            await self.connection.run()
        finally:
            self.watcher.stop()
            watch_task.cancel()
            await asyncio.gather(watch_task, return_exceptions=True)
            await self.sink.stop()

    async def stop(self) -> None:
        await self.connection.stop()


__all__ = ["TradeListener"]
