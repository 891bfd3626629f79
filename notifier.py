#!/usr/bin/env python3
# filename: notifier.py
# -----------------------------------------------------------------------------
# Project: Mediating DNS Server
# Version: 1.1.0
# -----------------------------------------------------------------------------
"""
Fire-and-forget block notifications to a chat webhook (Discord compatible).

notify() only schedules delivery and returns; the background task retries
transient failures with linear backoff and gives up on 4xx responses.
Nothing in here ever raises into the query path.
"""

import asyncio
from typing import Optional, Set

import httpx

from utils import get_logger

logger = get_logger("Notifier")


class WebhookNotifier:
    def __init__(self, config: Optional[dict] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or {}
        self.url = self.config.get('webhook_url') or ''
        self.username = self.config.get('username', 'DNS Guard Bot')
        self.avatar_url = self.config.get('avatar_url')
        self.max_retries = max(1, int(self.config.get('max_retries', 3)))
        self.backoff = float(self.config.get('backoff', 1.0))
        self.timeout = float(self.config.get('timeout', 10.0))
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._tasks: Set[asyncio.Task] = set()
        self.sent = 0
        self.failed = 0

        if self.enabled:
            logger.info(f"Webhook notifications enabled (max_retries={self.max_retries})")
        else:
            logger.info("Webhook URL is not set, block notifications disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport)
        return self._client

    def _payload(self, text: str) -> dict:
        payload = {'content': text, 'username': self.username}
        if self.avatar_url:
            payload['avatar_url'] = self.avatar_url
        return payload

    def notify(self, text: str) -> Optional[asyncio.Task]:
        """Schedule delivery of text. Returns the task, or None when disabled."""
        if not self.enabled:
            logger.debug(f"Notification skipped (no webhook): {text}")
            return None
        try:
            task = asyncio.get_running_loop().create_task(self.send(text))
        except RuntimeError as e:
            logger.error(f"Cannot schedule notification outside the event loop: {e}")
            return None
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def send(self, text: str) -> bool:
        """Deliver text with bounded retries. Returns True on success."""
        payload = self._payload(text)
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._get_client().post(self.url, json=payload)
                if response.is_success:
                    logger.info(f"Webhook sent successfully on attempt {attempt}")
                    self.sent += 1
                    return True

                logger.error(f"Webhook failed (status {response.status_code}): {response.text[:200]}")
                if 400 <= response.status_code < 500:
                    break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Webhook error on attempt {attempt}: {e}")

            if attempt < self.max_retries:
                await asyncio.sleep(attempt * self.backoff)

        self.failed += 1
        return False

    async def close(self):
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None
