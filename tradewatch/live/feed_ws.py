"""
Chain Node WebSocket Connection Manager

This module owns the single WebSocket to the node and keeps it alive forever.

Features:
- Lifecycle: DISCONNECTED -> CONNECTING -> OPEN -> DRAINING -> BACKOFF ->
  CONNECTING ... There is no fatal state; every failure ends in a reconnect.
- Heartbeat: a ping is sent every `heartbeat_sec`; if the previous ping was
  not answered (and no frame arrived meanwhile) the session is torn down.
- Backoff: reconnect waits `min(backoff, cap) * jitter` with jitter in
  [0.85, 1.15); backoff doubles after every wait and resets to the floor on a
  successful open.
- Subscriptions: on every open the outbox is flushed first, then `newHeads`
  and the four Transfer/Swap log filters for the current watched set are
  issued. Filters cannot be edited in place, so a watched-set change forces a
  fresh connection via `request_reconnect`.
"""
from __future__ import annotations

import asyncio
import random
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed, WebSocketException

from tradewatch.core.config import RpcSettings
from tradewatch.core.events import RequestKind
from tradewatch.live.rpc import RpcMultiplexer
from tradewatch.onchain.decoder import TOPIC_SWAP_V2, TOPIC_TRANSFER
from tradewatch.onchain.registry import WalletRegistry, WatchedWallets

JITTER_LOW = 0.85
JITTER_SPAN = 0.30


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    DRAINING = "draining"
    BACKOFF = "backoff"


def build_subscriptions(registry: WalletRegistry) -> List[Tuple[RequestKind, list]]:
    """`eth_subscribe` params for heads plus the wallet log filters."""
    subs: List[Tuple[RequestKind, list]] = [(RequestKind.HEADS, ["newHeads"])]
    topics = registry.topics
    if not topics:
        return subs
    subs += [
        (RequestKind.TRANSFER_IN, ["logs", {"topics": [TOPIC_TRANSFER, None, topics]}]),
        (RequestKind.TRANSFER_OUT, ["logs", {"topics": [TOPIC_TRANSFER, topics, None]}]),
        (RequestKind.SWAP_BY_SENDER, ["logs", {"topics": [TOPIC_SWAP_V2, topics, None]}]),
        (RequestKind.SWAP_BY_RECIPIENT, ["logs", {"topics": [TOPIC_SWAP_V2, None, topics]}]),
    ]
    return subs


def _default_connector(settings: RpcSettings):
    def connect(url: str):
        return websockets.connect(
            url,
            ping_interval=None,  # heartbeat is driven by ConnectionManager
            close_timeout=settings.close_timeout_sec,
            max_size=None,
        )
    return connect


class ConnectionManager:
    def __init__(
        self,
        settings: RpcSettings,
        rpc: RpcMultiplexer,
        wallets: WatchedWallets,
        connector: Optional[Callable[[str], Any]] = None,
        on_open: Optional[Callable[[], None]] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            settings: The `rpc` section of the application settings.
            rpc: Multiplexer whose outbox this connection drains and whose
                 inbound handler receives every frame.
            wallets: Watched-wallet holder read when building log filters.
            connector: ``connector(url)`` returning an awaitable socket; the
                 socket must provide ``send``, ``ping``, ``close`` and async
                 iteration. Defaults to `websockets.connect`.
            on_open: Hook invoked after each successful open.
        """
        self.settings = settings
        self.rpc = rpc
        self.wallets = wallets
        self._connector = connector or _default_connector(settings)
        self.on_open = on_open
        self._rng = rng or random.Random()

        self.state = ConnectionState.DISCONNECTED
        self.backoff_ms: float = settings.backoff_floor_ms
        self.connections = 0
        self._alive = False
        self._running = False
        self._reconnect_requested = False
        self._reconnect_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._socket = None

    # --- backoff ---------------------------------------------------------------

    def next_backoff_ms(self) -> float:
        """Wait before the next attempt; doubles the internal backoff."""
        jitter = JITTER_LOW + self._rng.random() * JITTER_SPAN
        wait = min(self.backoff_ms, self.settings.backoff_cap_ms) * jitter
        self.backoff_ms *= 2
        return wait

    def reset_backoff(self) -> None:
        self.backoff_ms = self.settings.backoff_floor_ms

    # --- external triggers -------------------------------------------------------

    def request_reconnect(self, reason: str = "wallets changed") -> None:
        """Tear down the current socket and reconnect immediately."""
        logger.info("ws.reconnect_requested reason={}", reason)
        self.reset_backoff()
        self._reconnect_requested = True
        self._reconnect_event.set()

    async def stop(self) -> None:
        logger.info("Stopping connection manager...")
        self._running = False
        self._stop_event.set()
        self._reconnect_event.set()
        if self._socket is not None:
            try:
                await self._socket.close()
            except Exception as e:
                logger.debug("ws.close_error {}", e)

    # --- main loop ----------------------------------------------------------------

    async def run(self) -> None:
        self._running = True
        while self._running:
            self.state = ConnectionState.CONNECTING
            registry = self.wallets.current
            logger.info("ws.connecting url={} wallets=[{}]", self.settings.ws_url, registry.describe())
            try:
                ws = await asyncio.wait_for(self._connector(self.settings.ws_url), self.settings.connect_timeout_sec)
            except asyncio.TimeoutError:
                await self._relaunch("connect timed out")
                continue
            except (ConnectionClosed, WebSocketException, OSError) as e:
                await self._relaunch(f"connect failed: {e}")
                continue

            if not self._running:
                # stop() arrived while the handshake was in flight
                try:
                    await ws.close()
                except Exception as e:
                    logger.debug("ws.close_error {}", e)
                break

            self._socket = ws
            try:
                reason = await self._session(ws)
            except Exception as e:
                logger.error(f"ws.session_unexpected_error: {e}", exc_info=True)
                reason = f"error: {e}"
            finally:
                self._socket = None
                try:
                    await ws.close()
                except Exception as e:
                    logger.debug("ws.close_error {}", e)
            if not self._running:
                break
            await self._relaunch(reason)
        self.state = ConnectionState.DISCONNECTED

    async def _session(self, ws) -> str:
        self.state = ConnectionState.OPEN
        self.connections += 1
        self.reset_backoff()
        self._alive = True
        self._reconnect_requested = False
        self._reconnect_event.clear()
        logger.success("ws.connected, issuing subscriptions")

        if self.on_open is not None:
            self.on_open()

        registry = self.wallets.current
        for kind, params in build_subscriptions(registry):
            self.rpc.subscribe(kind, params)
        if len(registry) == 0:
            logger.info("ws.no_wallets, Transfer/Swap filters not subscribed")

        tasks = [
            asyncio.create_task(self._reader(ws), name="ws-reader"),
            asyncio.create_task(self._writer(ws), name="ws-writer"),
            asyncio.create_task(self._heartbeat(ws), name="ws-heartbeat"),
            asyncio.create_task(self._wait_reconnect(), name="ws-reconnect"),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        finished = next(iter(done))
        if finished.cancelled():
            return "cancelled"
        exc = finished.exception()
        if exc is not None:
            return f"error: {exc}"
        return finished.result()

    async def _reader(self, ws) -> str:
        try:
            async for message in ws:
                self._alive = True
                try:
                    self.rpc.handle_message(message)
                except Exception:
                    logger.exception("ws.dispatch_error")
        except ConnectionClosed as e:
            return f"close: {getattr(e, 'code', 'N/A')}"
        return "close: stream ended"

    async def _writer(self, ws) -> str:
        while True:
            await self.rpc.wait_outbound()
            while self.rpc.outbox_size:
                payload = self.rpc.peek_outbound()
                try:
                    await ws.send(payload)
                except (ConnectionClosed, WebSocketException, OSError) as e:
                    # frame stays at the head of the outbox
                    return f"write failed: {e}"
                self.rpc.ack_outbound()

    async def _heartbeat(self, ws) -> str:
        while True:
            await asyncio.sleep(self.settings.heartbeat_sec)
            if not self._alive:
                logger.warning("ws.heartbeat_lost")
                return "heartbeat lost"
            self._alive = False
            try:
                waiter = await ws.ping()
            except (ConnectionClosed, WebSocketException, OSError) as e:
                return f"ping failed: {e}"
            fut = asyncio.ensure_future(waiter)
            fut.add_done_callback(self._on_pong)

    def _on_pong(self, fut: asyncio.Future) -> None:
        if not fut.cancelled() and fut.exception() is None:
            self._alive = True

    async def _wait_reconnect(self) -> str:
        await self._reconnect_event.wait()
        return "reconnect requested" if self._running else "stopped"

    async def _relaunch(self, reason: str) -> None:
        self.state = ConnectionState.DRAINING
        self.rpc.reset(reason)
        self.state = ConnectionState.BACKOFF
        if self._reconnect_requested:
            self._reconnect_requested = False
            logger.info("ws.reconnecting reason={} now", reason)
            return
        wait_ms = self.next_backoff_ms()
        logger.warning("ws.reconnecting reason={} in {}ms", reason, round(wait_ms))
        try:
            await asyncio.wait_for(self._stop_event.wait(), wait_ms / 1000.0)
        except asyncio.TimeoutError:
            pass


__all__ = ["ConnectionManager", "ConnectionState", "build_subscriptions"]
