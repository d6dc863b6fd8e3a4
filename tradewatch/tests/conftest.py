"""
Pytest Fixtures for the TradeWatch Test Suite

Shared fixtures: a validated `Settings` object that does not depend on a
physical `settings.yaml`, and small builders for the JSON-RPC shapes the node
sends (event logs, receipts) so individual tests stay readable.

https://docs.pytest.org/en/latest/how-to/fixtures.html
"""
import pytest

from tradewatch.core.config import Settings
from tradewatch.onchain.decoder import TOPIC_SWAP_V2, TOPIC_TRANSFER, pad_topic


@pytest.fixture(scope="session")
def settings_fixture() -> Settings:
    """
    A minimal but valid configuration for unit tests.
    Telegram runs in dry-run mode so nothing ever reaches the network.
    """
    test_config = {
        "rpc": {
            "ws_url": "wss://node.invalid",
            "heartbeat_sec": 20,
            "backoff_floor_ms": 1000,
            "backoff_cap_ms": 30000,
        },
        "chain": {
            "name": "XLayer",
            "wrapped_native": "0xe538905cf8410324e03a5a23c1c177a474d59b2b",
            "native_symbol": "OKB",
            "native_price_usd": "190",
        },
        "wallets": {"file": "wallets.json", "debounce_ms": 0},
        "transport": {
            "telegram": {"enabled": False, "bot_token": None, "chat_id": None, "dry_run": True},
        },
        "logging": {"level": "DEBUG"},
    }
    return Settings.model_validate(test_config)


def _word(value: int) -> str:
    return hex(value)[2:].rjust(64, "0")


@pytest.fixture
def transfer_log():
    """Builder for an ERC-20 Transfer log dict."""
    def build(token, sender, recipient, value, tx="0x" + "ab" * 32, block=16, removed=False):
        return {
            "address": token,
            "topics": [TOPIC_TRANSFER, pad_topic(sender), pad_topic(recipient)],
            "data": "0x" + _word(value),
            "blockNumber": hex(block),
            "transactionHash": tx,
            "removed": removed,
        }
    return build


@pytest.fixture
def swap_log():
    """Builder for a UniswapV2 Swap log dict."""
    def build(pool, sender, recipient, a0_in=0, a1_in=0, a0_out=0, a1_out=0, tx="0x" + "cd" * 32):
        return {
            "address": pool,
            "topics": [TOPIC_SWAP_V2, pad_topic(sender), pad_topic(recipient)],
            "data": "0x" + "".join(_word(v) for v in (a0_in, a1_in, a0_out, a1_out)),
            "blockNumber": hex(16),
            "transactionHash": tx,
        }
    return build


@pytest.fixture
def receipt():
    """Builder for a transaction receipt holding the given logs."""
    def build(logs, to=None, block=16, tx="0x" + "ab" * 32):
        return {
            "transactionHash": tx,
            "blockNumber": hex(block),
            "to": to,
            "logs": list(logs),
        }
    return build
