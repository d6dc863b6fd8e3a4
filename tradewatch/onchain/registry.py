"""Watched-wallet registry with file-backed hot reload.

File formats accepted for the wallets file (all addresses normalized to
lower case, invalid ones skipped, duplicates collapsed with the last label
winning):

  ["0xabc...", "0xdef..."]
  [{"address": "0xabc...", "label": "desk"}, ...]
  {"0xabc...": "desk", "0xdef...": ""}
  0xabc..., 0xdef...        (plain text, whitespace or comma separated)

`WalletRegistry` is an immutable snapshot; `WatchedWallets` swaps snapshots
wholesale so readers never observe a half-updated set.
"""
from __future__ import annotations

import asyncio
import json
import os
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from loguru import logger

from tradewatch.onchain.decoder import canonical_address, is_valid_address, pad_topic


@dataclass(frozen=True)
class WalletEntry:
    address: str
    label: str = ""


def short_address(addr: str) -> str:
    return f"{addr[:6]}...{addr[-4:]}"


def _entry(address, label="") -> Optional[WalletEntry]:
    a = canonical_address(str(address).strip())
    if not is_valid_address(a):
        return None
    return WalletEntry(a, str(label or "").strip())


def _dedup(entries: Iterable[Optional[WalletEntry]]) -> List[WalletEntry]:
    by_addr: Dict[str, str] = {}
    for e in entries:
        if e is not None:
            by_addr[e.address] = e.label
    return [WalletEntry(a, lab) for a, lab in by_addr.items()]


def parse_wallets_text(text: str) -> List[WalletEntry]:
    txt = str(text or "").lstrip("\ufeff").strip()
    try:
        data = json.loads(txt)
    except ValueError:
        data = None
    if isinstance(data, list):
        out = []
        for item in data:
            if isinstance(item, str):
                out.append(_entry(item))
            elif isinstance(item, dict) and item.get("address"):
                out.append(_entry(item["address"], item.get("label")))
        return _dedup(out)
    if isinstance(data, dict):
        return _dedup(_entry(a, lab) for a, lab in data.items())
    return _dedup(_entry(tok) for tok in re.split(r"[\s,]+", txt) if tok)


@dataclass(frozen=True)
class WalletRegistry:
    """Immutable snapshot of the watched set. Equality ignores order."""
    entries: FrozenSet[WalletEntry] = field(default_factory=frozenset)

    @classmethod
    def from_entries(cls, entries: Iterable[Union[WalletEntry, Tuple[str, str]]]) -> "WalletRegistry":
        norm = []
        for e in entries:
            if isinstance(e, WalletEntry):
                norm.append(_entry(e.address, e.label))
            else:
                norm.append(_entry(*e))
        return cls(frozenset(_dedup(norm)))

    @property
    def addresses(self) -> FrozenSet[str]:
        return frozenset(e.address for e in self.entries)

    @property
    def topics(self) -> List[str]:
        return [pad_topic(a) for a in sorted(self.addresses)]

    def label(self, address: str) -> str:
        a = canonical_address(address)
        for e in self.entries:
            if e.address == a:
                return e.label
        return ""

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and canonical_address(address) in self.addresses

    def __len__(self) -> int:
        return len(self.entries)

    def describe(self) -> str:
        parts = []
        for e in sorted(self.entries, key=lambda x: x.address):
            parts.append(f"{e.label}({short_address(e.address)})" if e.label else short_address(e.address))
        return ", ".join(parts) or "(empty)"


class WatchedWallets:
    """Holder of the current registry snapshot (copy-on-write)."""

    def __init__(self, initial: Optional[WalletRegistry] = None):
        self._current = initial or WalletRegistry()

    @property
    def current(self) -> WalletRegistry:
        return self._current

    def refresh(self, entries: Iterable[Union[WalletEntry, Tuple[str, str]]]) -> bool:
        """Replace the snapshot; True only if the content actually changed."""
        nxt = WalletRegistry.from_entries(entries)
        if nxt == self._current:
            return False
        self._current = nxt
        logger.info("wallets.loaded count={} [{}]", len(nxt), nxt.describe())
        return True


def load_wallet_file(path: str) -> List[WalletEntry]:
    with open(path, "r", encoding="utf-8") as f:
        return parse_wallets_text(f.read())


ChangeCallback = Callable[[WalletRegistry], Union[None, Awaitable[None]]]


class WalletFileWatcher:
    """
    Poll the wallets file for modification and apply changes after a debounce.

    A burst of writes (editors often write several times) produces one reload;
    an unreadable file keeps the last good set.
    """

    def __init__(
        self,
        path: str,
        wallets: WatchedWallets,
        on_change: Optional[ChangeCallback] = None,
        poll_interval_sec: float = 1.0,
        debounce_ms: int = 300,
    ):
        self.path = path
        self.wallets = wallets
        self.on_change = on_change
        self.poll_interval_sec = poll_interval_sec
        self.debounce_ms = debounce_ms
        self._last_mtime: Optional[float] = None
        self._running = False

    def _mtime(self) -> Optional[float]:
        try:
            return os.path.getmtime(self.path)
        except OSError:
            return None

    def reload(self) -> bool:
        """Read the file and swap the snapshot; False on no-op or read failure."""
        try:
            entries = load_wallet_file(self.path)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("wallets.read_failed path={} err={}", self.path, e)
            return False
        return self.wallets.refresh(entries)

    async def check_once(self) -> bool:
        """One poll step: on mtime change, debounce, reload, notify on real change."""
        mtime = self._mtime()
        if mtime is None or mtime == self._last_mtime:
            return False
        await asyncio.sleep(self.debounce_ms / 1000.0)
        self._last_mtime = self._mtime()
        if not self.reload():
            return False
        if self.on_change is not None:
            res = self.on_change(self.wallets.current)
            if asyncio.iscoroutine(res):
                await res
        return True

    def prime(self) -> bool:
        """Initial synchronous load; remembers the mtime so it is not re-applied."""
        self._last_mtime = self._mtime()
        return self.reload()

    async def run(self) -> None:
        self._running = True
        logger.info("wallets.watching path={}", self.path)
        while self._running:
            try:
                await self.check_once()
            except Exception:
                logger.exception("wallets.watch_error")
            await asyncio.sleep(self.poll_interval_sec)

    def stop(self) -> None:
        self._running = False


__all__ = [
    "WalletEntry",
    "WalletRegistry",
    "WatchedWallets",
    "WalletFileWatcher",
    "parse_wallets_text",
    "load_wallet_file",
    "short_address",
]
