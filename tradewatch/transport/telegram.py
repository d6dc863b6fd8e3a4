"""
Telegram Transport for Trade Notifications

This module delivers formatted trade messages to a Telegram chat.

Design Principles:
- Fire-and-forget: `TelegramSink.submit` only enqueues. The event loop that
  reads the chain never waits on Telegram; a single pump task drains the
  queue in order.
- Resilience: send failures are logged and retried a bounded number of
  times; a 429 response is honoured via its `retry_after` hint. Nothing here
  raises into the caller.
- Pacing: consecutive sends are spaced by `min_interval_sec` to stay under
  the Bot API's per-chat rate limit.
- Testability: a `dry_run` flag logs messages instead of posting them.
"""

import asyncio
import random
from typing import List, Optional, Tuple

import httpx
from loguru import logger

from tradewatch.core.config import ChainSettings, TelegramSettings

API_URL = "https://api.telegram.org/bot{token}/sendMessage"


# --- helpers -----------------------------------------------------------------

def _chunk_for_telegram(text: str, limit: int = 3500) -> List[str]:
    """
    Split a message into pieces no longer than `limit`, on newlines where possible.
    """
    if len(text) <= limit:
        return [text]
    parts: List[str] = []
    start = 0
    while start < len(text):
        end = min(start + limit, len(text))
        if end == len(text):
            parts.append(text[start:])
            break
        # try to break at last newline
        nl = text.rfind("\n", start, end)
        if nl == -1 or nl <= start:
            nl = end
        parts.append(text[start:nl])
        start = nl + 1 if nl < len(text) and text[nl] == "\n" else nl
    return parts


def build_payload(chat_id: str, text: str, button_url: Optional[str] = None, button_text: str = "View transaction") -> dict:
    payload = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "HTML",
        "disable_web_page_preview": True,
    }
    if button_url:
        payload["reply_markup"] = {"inline_keyboard": [[{"text": button_text, "url": button_url}]]}
    return payload


class TelegramSink:
    """Queued, paced Telegram delivery."""

    def __init__(self, settings: TelegramSettings, chain: Optional[ChainSettings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.chain = chain or ChainSettings()
        self._client = client
        self._owns_client = client is None
        self._queue: "asyncio.Queue[Tuple[str, Optional[str]]]" = asyncio.Queue(maxsize=settings.queue_size)
        self._task: Optional[asyncio.Task] = None
        self.sent = 0
        self.dropped = 0

    @property
    def active(self) -> bool:
        """True when messages would actually go somewhere (sent or dry-run logged)."""
        s = self.settings
        if s.dry_run:
            return True
        return bool(s.enabled and s.bot_token and s.chat_id)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, message: str, correlation_id: Optional[str] = None) -> bool:
        """Enqueue a message without waiting. Returns False if it was not queued."""
        if not self.active:
            logger.debug("Telegram transport is disabled or not configured; message skipped.")
            return False
        try:
            self._queue.put_nowait((message, correlation_id))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Telegram queue full ({self._queue.maxsize}), dropping message for {correlation_id}")
            return False
        return True

    def start(self) -> None:
        if self._task is None or self._task.done():
            if self.settings.enabled and not self.settings.dry_run and not (self.settings.bot_token and self.settings.chat_id):
                logger.warning("Telegram bot_token or chat_id not configured.")
            self._task = asyncio.create_task(self._pump(), name="telegram-pump")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def drain(self) -> None:
        """Wait until every queued message has been handled."""
        await self._queue.join()

    async def _pump(self) -> None:
        while True:
            message, correlation_id = await self._queue.get()
            try:
                await self.deliver(message, correlation_id)
            except Exception:
                logger.exception("Telegram delivery failed unexpectedly")
            finally:
                self._queue.task_done()
            await asyncio.sleep(self.settings.min_interval_sec)

    def _button_url(self, correlation_id: Optional[str]) -> Optional[str]:
        if not correlation_id or not self.chain.explorer_tx_url:
            return None
        return f"{self.chain.explorer_tx_url}{correlation_id}"

    async def deliver(self, message: str, correlation_id: Optional[str] = None) -> bool:
        """Send one message (possibly in several chunks). True if every chunk went out."""
        if self.settings.dry_run:
            logger.info("[Telegram dry-run] Message not sent:\n" + message)
            return True

        chunks = _chunk_for_telegram(message, self.settings.chunk_chars)
        url = API_URL.format(token=self.settings.bot_token)
        ok = True
        for i, chunk in enumerate(chunks):
            button = self._button_url(correlation_id) if i == 0 else None
            payload = build_payload(self.settings.chat_id, chunk, button, self.settings.button_text)
            if await self._post(url, payload, f"chunk {i+1}/{len(chunks)}"):
                self.sent += 1
            else:
                ok = False
            if i < len(chunks) - 1:
                await asyncio.sleep(self.settings.min_interval_sec)
        return ok

    async def _post(self, url: str, payload: dict, what: str) -> bool:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        retry_delay = 1.0
        max_retries = self.settings.max_retries
        for attempt in range(max_retries):
            try:
                response = await self._client.post(url, json=payload)
            except httpx.HTTPError as e:
                logger.warning(f"Telegram send error (attempt {attempt + 1}/{max_retries}): {e}")
                if attempt < max_retries - 1:
                    await asyncio.sleep(retry_delay)
                    retry_delay *= 2
                continue

            if response.status_code == 200:
                result = response.json()
                if result.get("ok"):
                    logger.info(f"Telegram message sent successfully ({what})")
                    return True
                logger.error(f"Telegram API error: {result.get('description', 'Unknown error')}")
                return False
            if response.status_code == 429:
                try:
                    retry_after = response.json().get("parameters", {}).get("retry_after", 30)
                except ValueError:
                    retry_after = 30
                logger.warning(f"Telegram rate limited, waiting {retry_after}s")
                await asyncio.sleep(retry_after + random.uniform(0, 1))
                continue
            logger.error(f"Telegram HTTP error {response.status_code}: {response.text}")
            return False

        logger.error(f"Failed to send Telegram message after all retries ({what})")
        return False


__all__ = ["TelegramSink", "build_payload", "_chunk_for_telegram"]
