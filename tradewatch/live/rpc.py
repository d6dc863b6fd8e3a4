"""JSON-RPC request/subscription multiplexer.

Many outstanding requests share one WebSocket. Every request gets a monotonic
id and a `RequestTag` describing what the reply means; replies are matched by
id only, never by arrival order.

The multiplexer owns all per-connection correlation state:
 - ``_pending``: id -> RequestTag for requests awaiting a reply
 - ``_subscriptions``: server subscription id -> RequestTag
 - ``_receipt_tx``: receipt request id -> transaction hash
 - ``_futures``: id -> Future for ad-hoc ``eth_call`` requests
 - ``_outbox``: serialized frames waiting for the connection's writer

Outbound frames always go through the FIFO outbox; the connection's writer
drains it while the socket is open, so submission order is preserved.
"""
from __future__ import annotations

import asyncio
import json
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from loguru import logger

from tradewatch.core.events import RequestKind, RequestTag

SUBSCRIPTION_METHOD = "eth_subscription"

PushHandler = Callable[[RequestKind, Dict[str, Any]], None]
ReceiptHandler = Callable[[Dict[str, Any], str], None]


class RpcError(Exception):
    """The node answered a request with a JSON-RPC error object."""

    def __init__(self, request_id: int, error: Any):
        self.request_id = request_id
        self.error = error
        msg = error.get("message") if isinstance(error, dict) else error
        super().__init__(f"rpc error for request {request_id}: {msg}")


class RequestAbandoned(Exception):
    """The connection carrying a request went away, or the request timed out."""


class RpcMultiplexer:
    def __init__(
        self,
        on_push: Optional[PushHandler] = None,
        on_receipt: Optional[ReceiptHandler] = None,
        call_timeout_sec: Optional[float] = 30.0,
    ):
        self.on_push = on_push
        self.on_receipt = on_receipt
        self.call_timeout_sec = call_timeout_sec
        self._next_id = 0
        self._pending: Dict[int, RequestTag] = {}
        self._subscriptions: Dict[str, RequestTag] = {}
        self._receipt_tx: Dict[int, str] = {}
        self._futures: Dict[int, asyncio.Future] = {}
        self._outbox: Deque[str] = deque()
        self._outbox_ready = asyncio.Event()

    # --- outbound ------------------------------------------------------------

    def send(self, method: str, params: List[Any]) -> int:
        """Allocate an id, serialize the request and queue it for writing."""
        self._next_id += 1
        request_id = self._next_id
        payload = json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        self._outbox.append(payload)
        self._outbox_ready.set()
        return request_id

    def tag(self, request_id: int, tag: RequestTag) -> None:
        self._pending[request_id] = tag

    def request(self, method: str, params: List[Any], tag: RequestTag) -> int:
        request_id = self.send(method, params)
        self.tag(request_id, tag)
        return request_id

    def subscribe(self, kind: RequestKind, params: List[Any]) -> int:
        return self.request("eth_subscribe", params, RequestTag(kind))

    def request_receipt(self, tx_hash: str) -> int:
        request_id = self.request("eth_getTransactionReceipt", [tx_hash], RequestTag(RequestKind.RECEIPT))
        self._receipt_tx[request_id] = tx_hash
        return request_id

    def call_future(self, to: str, data: str, tag: RequestTag) -> "asyncio.Future[str]":
        """Issue an `eth_call` and return the future its raw hex result resolves."""
        fut = asyncio.get_running_loop().create_future()
        request_id = self.request("eth_call", [{"to": to, "data": data}, "latest"], tag)
        self._futures[request_id] = fut
        return fut

    async def call(self, to: str, data: str, tag: RequestTag) -> str:
        fut = self.call_future(to, data, tag)
        if self.call_timeout_sec is None:
            return await fut
        try:
            return await asyncio.wait_for(fut, self.call_timeout_sec)
        except asyncio.TimeoutError:
            self._forget_future(fut)
            raise RequestAbandoned(f"{tag} timed out after {self.call_timeout_sec}s") from None

    def _forget_future(self, fut: asyncio.Future) -> None:
        for request_id, f in list(self._futures.items()):
            if f is fut:
                self._futures.pop(request_id, None)
                self._pending.pop(request_id, None)

    # --- writer side (driven by the connection) -------------------------------

    @property
    def outbox_size(self) -> int:
        return len(self._outbox)

    def peek_outbound(self) -> Optional[str]:
        return self._outbox[0] if self._outbox else None

    def ack_outbound(self) -> None:
        """Drop the head frame once the socket accepted it."""
        if self._outbox:
            self._outbox.popleft()

    async def wait_outbound(self) -> None:
        if self._outbox:
            return
        self._outbox_ready.clear()
        await self._outbox_ready.wait()

    # --- inbound -------------------------------------------------------------

    def handle_message(self, raw: Any) -> None:
        """Dispatch one inbound frame. Malformed frames are dropped."""
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("rpc.drop_malformed_frame {}", str(raw)[:120])
            return
        if not isinstance(msg, dict):
            logger.debug("rpc.drop_unexpected_shape {}", str(raw)[:120])
            return

        if msg.get("id") is not None:
            self._handle_reply(msg)
            return

        if msg.get("method") == SUBSCRIPTION_METHOD and isinstance(msg.get("params"), dict):
            self._handle_push(msg["params"])

    def _handle_reply(self, msg: Dict[str, Any]) -> None:
        request_id = msg.get("id")
        tag = self._pending.pop(request_id, None)
        if tag is None:
            logger.debug("rpc.reply_for_unknown_id id={}", request_id)
            return

        if "error" in msg and msg.get("error") is not None:
            self._handle_error(request_id, tag, msg["error"])
            return

        result = msg.get("result")

        if tag.is_subscription:
            if isinstance(result, str):
                self._subscriptions[result] = tag
                logger.info("rpc.subscribed kind={} sub_id={}", tag.kind.value, result)
            return

        if tag.kind is RequestKind.RECEIPT:
            tx_hash = self._receipt_tx.pop(request_id, None)
            if not result or tx_hash is None:
                logger.debug("rpc.receipt_unavailable tx={}", tx_hash)
                return
            if self.on_receipt is not None:
                self.on_receipt(result, tx_hash)
            return

        if tag.is_call:
            fut = self._futures.pop(request_id, None)
            if fut is not None and not fut.done():
                fut.set_result(result if isinstance(result, str) else "0x")

    def _handle_error(self, request_id: int, tag: RequestTag, error: Any) -> None:
        self._receipt_tx.pop(request_id, None)
        fut = self._futures.pop(request_id, None)
        if fut is not None and not fut.done():
            fut.set_exception(RpcError(request_id, error))
            return
        logger.warning("rpc.error kind={} id={} error={}", tag, request_id, error)

    def _handle_push(self, params: Dict[str, Any]) -> None:
        tag = self._subscriptions.get(params.get("subscription"))
        if tag is None:
            return
        result = params.get("result")
        if not isinstance(result, dict):
            return
        if self.on_push is not None:
            self.on_push(tag.kind, result)

    # --- lifecycle -------------------------------------------------------------

    def reset(self, reason: str = "connection reset") -> int:
        """
        Forget all per-connection state after the socket went away.

        Server-side subscriptions die with the socket, queued frames are
        discarded and outstanding call futures are rejected with
        `RequestAbandoned`. Ids keep counting so they are never reused.

        Returns:
            Number of call futures that were abandoned.
        """
        abandoned = 0
        for fut in self._futures.values():
            if not fut.done():
                fut.set_exception(RequestAbandoned(reason))
                abandoned += 1
        self._futures.clear()
        self._pending.clear()
        self._subscriptions.clear()
        self._receipt_tx.clear()
        self._outbox.clear()
        if abandoned:
            logger.warning("rpc.abandoned_calls count={} reason={}", abandoned, reason)
        return abandoned

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def subscriptions(self) -> Dict[str, RequestTag]:
        return dict(self._subscriptions)


__all__ = ["RpcMultiplexer", "RpcError", "RequestAbandoned", "SUBSCRIPTION_METHOD"]
