import asyncio
import json
import random

import pytest

from tradewatch.core.config import RpcSettings
from tradewatch.core.events import RequestKind
from tradewatch.live.feed_ws import ConnectionManager, ConnectionState, build_subscriptions
from tradewatch.live.rpc import RpcMultiplexer
from tradewatch.onchain.decoder import TOPIC_SWAP_V2, TOPIC_TRANSFER, pad_topic
from tradewatch.onchain.registry import WalletRegistry, WatchedWallets

W = "0x" + "a1" * 20


class FakeSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self, answer_pings=True):
        self.sent = []
        self.inbox = asyncio.Queue()
        self.closed = False
        self.answer_pings = answer_pings
        self.pings = 0

    async def send(self, data):
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(data))

    async def ping(self):
        self.pings += 1
        pong = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            pong.set_result(0.0)
        return pong

    async def close(self):
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self.inbox.get()
        if msg is None:
            raise StopAsyncIteration
        return msg


class FakeConnector:
    def __init__(self, failures=0, **socket_kwargs):
        self.failures = failures
        self.socket_kwargs = socket_kwargs
        self.sockets = []
        self.attempts = 0

    async def __call__(self, url):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        sock = FakeSocket(**self.socket_kwargs)
        self.sockets.append(sock)
        return sock


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class FixedRng:
    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


def _manager(settings=None, wallets=None, rng=None, **kwargs):
    return ConnectionManager(
        settings or RpcSettings(),
        kwargs.pop("rpc", None) or RpcMultiplexer(),
        wallets or WatchedWallets(),
        rng=rng,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_backoff_waits_grow_within_jitter_bands():
    cm = _manager(rng=random.Random(7))
    waits = [cm.next_backoff_ms() for _ in range(3)]
    assert 850 <= waits[0] < 1150
    assert 1700 <= waits[1] < 2300
    assert 3400 <= waits[2] < 4600
    assert waits[0] < waits[1] < waits[2]


@pytest.mark.asyncio
async def test_backoff_is_capped():
    cm = _manager(RpcSettings(backoff_floor_ms=1000, backoff_cap_ms=4000), rng=FixedRng(0.999999))
    waits = [cm.next_backoff_ms() for _ in range(8)]
    assert max(waits) < 4000 * 1.15
    assert waits[-1] == waits[-2]


@pytest.mark.asyncio
async def test_jitter_band_edges():
    assert _manager(rng=FixedRng(0.0)).next_backoff_ms() == pytest.approx(850)
    assert _manager(rng=FixedRng(0.999999)).next_backoff_ms() < 1150


@pytest.mark.asyncio
async def test_request_reconnect_resets_backoff():
    cm = _manager(rng=FixedRng(0.5))
    cm.next_backoff_ms()
    cm.next_backoff_ms()
    assert cm.backoff_ms == 4000
    cm.request_reconnect("wallets changed")
    assert cm.backoff_ms == 1000


def test_subscriptions_for_watched_set():
    registry = WalletRegistry.from_entries([(W, "")])
    subs = build_subscriptions(registry)
    kinds = [k for k, _ in subs]
    assert kinds == [
        RequestKind.HEADS,
        RequestKind.TRANSFER_IN,
        RequestKind.TRANSFER_OUT,
        RequestKind.SWAP_BY_SENDER,
        RequestKind.SWAP_BY_RECIPIENT,
    ]
    topics = [p[1]["topics"] for _, p in subs[1:]]
    assert topics[0] == [TOPIC_TRANSFER, None, [pad_topic(W)]]
    assert topics[1] == [TOPIC_TRANSFER, [pad_topic(W)], None]
    assert topics[2] == [TOPIC_SWAP_V2, [pad_topic(W)], None]
    assert topics[3] == [TOPIC_SWAP_V2, None, [pad_topic(W)]]

    assert build_subscriptions(WalletRegistry()) == [(RequestKind.HEADS, ["newHeads"])]


@pytest.mark.asyncio
async def test_open_flushes_outbox_then_subscribes():
    # 1. Arrange
    rpc = RpcMultiplexer()
    rpc.request_receipt("0xqueued")
    wallets = WatchedWallets(WalletRegistry.from_entries([(W, "desk")]))
    connector = FakeConnector()
    opened = []
    cm = _manager(rpc=rpc, wallets=wallets, connector=connector, on_open=lambda: opened.append(True))

    # 2. Act
    task = asyncio.create_task(cm.run())
    await wait_until(lambda: connector.sockets and len(connector.sockets[0].sent) >= 6)
    sock = connector.sockets[0]
    heads_id = sock.sent[1]["id"]
    sock.inbox.put_nowait(json.dumps({"jsonrpc": "2.0", "id": heads_id, "result": "0xheads"}))
    await wait_until(lambda: "0xheads" in rpc.subscriptions)

    # 3. Assert
    assert cm.state is ConnectionState.OPEN
    assert opened == [True]
    assert sock.sent[0]["method"] == "eth_getTransactionReceipt"
    assert [m["method"] for m in sock.sent[1:6]] == ["eth_subscribe"] * 5
    assert sock.sent[1]["params"] == ["newHeads"]

    await cm.stop()
    await asyncio.wait_for(task, 2.0)
    assert cm.state is ConnectionState.DISCONNECTED
    assert sock.closed


@pytest.mark.asyncio
async def test_empty_watched_set_subscribes_heads_only():
    connector = FakeConnector()
    cm = _manager(connector=connector)
    task = asyncio.create_task(cm.run())
    await wait_until(lambda: connector.sockets and connector.sockets[0].sent)
    await asyncio.sleep(0.05)
    assert [m["params"] for m in connector.sockets[0].sent] == [["newHeads"]]
    await cm.stop()
    await asyncio.wait_for(task, 2.0)


@pytest.mark.asyncio
async def test_heartbeat_loss_reconnects_and_resets_state():
    settings = RpcSettings(heartbeat_sec=0.01, backoff_floor_ms=1, backoff_cap_ms=5)
    connector = FakeConnector(answer_pings=False)
    rpc = RpcMultiplexer()
    cm = _manager(settings, rpc=rpc, connector=connector)

    task = asyncio.create_task(cm.run())
    await wait_until(lambda: cm.connections >= 2)

    first = connector.sockets[0]
    assert first.closed
    assert first.pings >= 1
    assert len(connector.sockets) >= 2
    await cm.stop()
    await asyncio.wait_for(task, 2.0)


@pytest.mark.asyncio
async def test_answered_pings_keep_connection():
    settings = RpcSettings(heartbeat_sec=0.01)
    connector = FakeConnector(answer_pings=True)
    cm = _manager(settings, connector=connector)
    task = asyncio.create_task(cm.run())
    await wait_until(lambda: connector.sockets and connector.sockets[0].pings >= 5)
    assert len(connector.sockets) == 1
    await cm.stop()
    await asyncio.wait_for(task, 2.0)


@pytest.mark.asyncio
async def test_request_reconnect_skips_backoff_sleep():
    # a long floor would stall the test if the backoff sleep were applied
    settings = RpcSettings(backoff_floor_ms=60000, backoff_cap_ms=60000)
    connector = FakeConnector()
    cm = _manager(settings, connector=connector)
    task = asyncio.create_task(cm.run())
    await wait_until(lambda: connector.sockets and connector.sockets[0].sent)

    cm.request_reconnect("wallets changed")
    await wait_until(lambda: len(connector.sockets) == 2)

    assert connector.sockets[0].closed
    assert cm.backoff_ms == 60000
    await cm.stop()
    await asyncio.wait_for(task, 2.0)


@pytest.mark.asyncio
async def test_connect_failures_back_off_then_recover():
    settings = RpcSettings(backoff_floor_ms=1, backoff_cap_ms=10)
    connector = FakeConnector(failures=2)
    cm = _manager(settings, connector=connector, rng=FixedRng(0.5))
    task = asyncio.create_task(cm.run())
    await wait_until(lambda: cm.connections == 1)

    assert connector.attempts == 3
    assert cm.backoff_ms == 1
    await cm.stop()
    await asyncio.wait_for(task, 2.0)


class GatedConnector(FakeConnector):
    """Holds the handshake open until the gate is released."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def __call__(self, url):
        self.attempts += 1
        await self.gate.wait()
        sock = FakeSocket()
        self.sockets.append(sock)
        return sock


@pytest.mark.asyncio
async def test_stop_during_connect_does_not_open_session():
    # 1. Arrange
    connector = GatedConnector()
    opened = []
    cm = _manager(connector=connector, on_open=lambda: opened.append(True))
    task = asyncio.create_task(cm.run())
    await wait_until(lambda: connector.attempts == 1)

    # 2. Act
    await cm.stop()
    connector.gate.set()
    await asyncio.wait_for(task, 2.0)

    # 3. Assert
    assert cm.state is ConnectionState.DISCONNECTED
    assert cm.connections == 0
    assert opened == []
    assert connector.sockets[0].closed
