"""Progress sinks notified by the strategy state machine."""
from __future__ import annotations

import html
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Protocol

from telegram import Bot
from telegram.error import TelegramError


class ProgressSink(Protocol):
    async def on_transition(self, instance_id: str, stage: str, timestamp: float, description: str) -> None:
        ...

    async def on_error(self, instance_id: str, error: str) -> None:
        ...


class LoggingProgressSink:
    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    async def on_transition(self, instance_id: str, stage: str, timestamp: float, description: str) -> None:
        self.logger.info("[%s] -> %s: %s", instance_id, stage, description)

    async def on_error(self, instance_id: str, error: str) -> None:
        self.logger.error("[%s] failed: %s", instance_id, error)


class TelegramProgressSink:
    """Posts transitions to a Telegram chat. Delivery failures are logged, never raised."""

    def __init__(self, bot: Bot, chat_id: str, logger: Optional[logging.Logger] = None) -> None:
        self.bot = bot
        self.chat_id = chat_id
        self.logger = logger or logging.getLogger(__name__)

    async def _send(self, text: str) -> None:
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text, parse_mode='HTML')
        except TelegramError as exc:
            self.logger.warning("Telegram notification failed: %s", exc)

    async def on_transition(self, instance_id: str, stage: str, timestamp: float, description: str) -> None:
        when = datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        await self._send(
            f"<b>{html.escape(instance_id)}</b> → <b>{html.escape(stage)}</b>\n"
            f"{html.escape(description)}\n<i>{when}</i>"
        )

    async def on_error(self, instance_id: str, error: str) -> None:
        await self._send(f"❌ <b>{html.escape(instance_id)}</b> failed\n<code>{html.escape(error)}</code>")


class CompositeProgressSink:
    def __init__(self, sinks: Iterable[ProgressSink]) -> None:
        self.sinks: List[ProgressSink] = list(sinks)

    async def on_transition(self, instance_id: str, stage: str, timestamp: float, description: str) -> None:
        for sink in self.sinks:
            await sink.on_transition(instance_id, stage, timestamp, description)

    async def on_error(self, instance_id: str, error: str) -> None:
        for sink in self.sinks:
            await sink.on_error(instance_id, error)
