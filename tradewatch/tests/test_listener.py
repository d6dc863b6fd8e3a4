import asyncio
import json

import pytest

from tradewatch.core.events import RequestKind, TokenMeta
from tradewatch.live.runner import TradeListener
from tradewatch.onchain.registry import WalletRegistry, WatchedWallets

WOKB = "0xe538905cf8410324e03a5a23c1c177a474d59b2b"
W = "0x" + "a1" * 20
TOKEN = "0x" + "7e" * 20
POOL = "0x" + "55" * 20
OTHER = "0x" + "0e" * 20
TX = "0x" + "ab" * 32
E18 = 10 ** 18


class FakeSink:
    def __init__(self):
        self.messages = []

    def submit(self, message, correlation_id=None):
        self.messages.append((message, correlation_id))
        return True

    def start(self):
        pass

    async def stop(self):
        pass


class FakeResolver:
    async def resolve(self, token):
        return {WOKB: TokenMeta("WOKB", 18), TOKEN: TokenMeta("TKN", 18)}[token]


def outbound(rpc):
    frames = []
    while rpc.outbox_size:
        frames.append(json.loads(rpc.peek_outbound()))
        rpc.ack_outbound()
    return frames


@pytest.fixture
def listener(settings_fixture):
    wallets = WatchedWallets(WalletRegistry.from_entries([(W, "desk")]))
    tl = TradeListener(settings_fixture, wallets=wallets, sink=FakeSink())
    tl.aggregator.resolver = FakeResolver()
    return tl


def receipt_requests(frames):
    return [f for f in frames if f["method"] == "eth_getTransactionReceipt"]


@pytest.mark.asyncio
async def test_overlapping_subscriptions_fetch_receipt_once(listener, transfer_log):
    # 1. Arrange: the same transfer arrives via both the "in" and "out" filters
    log = transfer_log(TOKEN, POOL, W, E18, tx=TX)

    # 2. Act
    listener.handle_push(RequestKind.TRANSFER_IN, log)
    listener.handle_push(RequestKind.TRANSFER_OUT, dict(log))

    # 3. Assert
    requests = receipt_requests(outbound(listener.rpc))
    assert len(requests) == 1
    assert requests[0]["params"] == [TX]


@pytest.mark.asyncio
async def test_seen_set_is_cleared_on_open(listener, transfer_log):
    log = transfer_log(TOKEN, POOL, W, E18, tx=TX)
    listener.handle_push(RequestKind.TRANSFER_IN, log)
    listener.on_open()
    listener.handle_push(RequestKind.TRANSFER_IN, log)
    assert len(receipt_requests(outbound(listener.rpc))) == 2


@pytest.mark.asyncio
async def test_irrelevant_pushes_do_not_fetch(listener, transfer_log, swap_log):
    listener.handle_push(RequestKind.TRANSFER_IN, transfer_log(TOKEN, POOL, OTHER, E18))
    listener.handle_push(RequestKind.TRANSFER_IN, transfer_log(TOKEN, POOL, W, E18, removed=True))
    listener.handle_push(RequestKind.SWAP_BY_SENDER, swap_log(POOL, W, W, a0_in=1, a1_out=2))
    listener.handle_push(RequestKind.HEADS, {"number": "0x10"})
    assert outbound(listener.rpc) == []


@pytest.mark.asyncio
async def test_receipt_becomes_notification(listener, transfer_log, receipt):
    # 1. Arrange
    listener.handle_push(RequestKind.TRANSFER_IN, transfer_log(TOKEN, POOL, W, 1000 * E18, tx=TX))
    [request] = receipt_requests(outbound(listener.rpc))
    rcpt = receipt([
        transfer_log(TOKEN, POOL, W, 1000 * E18),
        transfer_log(WOKB, W, POOL, 2 * E18),
    ], tx=TX)

    # 2. Act
    listener.rpc.handle_message(json.dumps({"jsonrpc": "2.0", "id": request["id"], "result": rcpt}))
    for _ in range(50):
        if listener.sink.messages:
            break
        await asyncio.sleep(0)

    # 3. Assert
    [(message, correlation_id)] = listener.sink.messages
    assert correlation_id == TX
    assert "<b>BUY TKN</b> on XLayer" in message
    assert "($380.00)" in message
    assert "desk" in message


@pytest.mark.asyncio
async def test_wallet_change_requests_reconnect(listener):
    listener.connection.next_backoff_ms()
    listener._on_wallets_changed(WalletRegistry())
    assert listener.connection.backoff_ms == listener.settings.rpc.backoff_floor_ms
