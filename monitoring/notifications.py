#!/usr/bin/env python3
"""
Notifications: Telegram delivery of CAPTCHA screenshots for the manual relay.

Design goals:
- Zero-config by default (relay disabled if the bot is not configured).
- Best-effort (a failed delivery is logged and reported as False).
- Safety: the bot token never appears in logs.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


@dataclass
class NotificationConfig:
    telegram_bot_token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    telegram_chat_id: str = os.getenv("TELEGRAM_CHAT_ID", "")
    app_url: str = os.getenv("APP_URL", "")

    @classmethod
    def from_app_config(cls, app_config) -> "NotificationConfig":
        return cls(
            telegram_bot_token=app_config.TELEGRAM_BOT_TOKEN or "",
            telegram_chat_id=app_config.TELEGRAM_CHAT_ID or "",
            app_url=app_config.APP_URL or "",
        )


class NotificationManager:
    def __init__(self, config: Optional[NotificationConfig] = None, timeout_seconds: float = 20):
        self.config = config or NotificationConfig()
        self.timeout_seconds = timeout_seconds
        if self.enabled():
            logger.info("Telegram notifications enabled")
        else:
            logger.warning("TELEGRAM_BOT_TOKEN or TELEGRAM_CHAT_ID not set, CAPTCHA notifications disabled")

    def enabled(self) -> bool:
        return bool(self.config.telegram_bot_token and self.config.telegram_chat_id)

    def solve_url(self, session_id: str) -> Optional[str]:
        if not self.config.app_url:
            return None
        return f"{self.config.app_url.rstrip('/')}/captcha-solve/{session_id}"

    def caption(self, session_id: str) -> str:
        url = self.solve_url(session_id)
        if url:
            return (
                f"🔐 CAPTCHA needs solving. Open on your phone:\n{url}\n\n"
                "Tap the screenshot where you would click in the CAPTCHA."
            )
        return f"🔐 CAPTCHA needs solving. Session: {session_id}"

    async def _post_form(self, method: str, form: aiohttp.FormData) -> bool:
        url = f"{TELEGRAM_API_URL}/bot{self.config.telegram_bot_token}/{method}"
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, data=form) as resp:
                    if 200 <= resp.status < 300:
                        return True
                    text = await resp.text()
                    logger.warning(f"Telegram {method} failed ({resp.status}): {text[:200]}")
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Telegram {method} error: {type(e).__name__}")
            return False

    async def deliver(self, session_id: str, screenshot: bytes) -> bool:
        """Send the CAPTCHA screenshot with a link to the tap page."""
        if not self.enabled():
            logger.warning("Telegram not configured, skipping CAPTCHA notification")
            return False

        form = aiohttp.FormData()
        form.add_field("chat_id", self.config.telegram_chat_id)
        form.add_field("caption", self.caption(session_id))
        form.add_field("photo", screenshot, filename="captcha.png", content_type="image/png")

        delivered = await self._post_form("sendPhoto", form)
        if delivered:
            logger.info(f"CAPTCHA notification sent to Telegram (session {session_id})")
        return delivered

