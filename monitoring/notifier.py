"""
Monitoring - Event Publishers.

============================================================
PURPOSE
============================================================
Deliver TradingEvents to operators.

- LoggingEventPublisher: writes events to the log
- TelegramEventPublisher: Telegram Bot API, rate limited per event type
- CompositeEventPublisher: fan out to several publishers

RULE:
    publish() never raises into the caller.

============================================================
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import aiohttp

from core.clock import ClockProtocol, SystemClock

from .models import EventSeverity, EventType, TradingEvent


logger = logging.getLogger(__name__)


class EventPublisher(ABC):
    """Fire-and-forget event sink."""

    @abstractmethod
    async def publish(self, event: TradingEvent) -> None:
        """Deliver an event. Must not raise."""
        pass

    async def close(self) -> None:
        pass


class NullEventPublisher(EventPublisher):
    """Drops every event."""

    async def publish(self, event: TradingEvent) -> None:
        return None


class LoggingEventPublisher(EventPublisher):
    """Writes events to the log at a level matching their severity."""

    _LEVELS = {
        EventSeverity.INFO: logging.INFO,
        EventSeverity.WARNING: logging.WARNING,
        EventSeverity.ERROR: logging.ERROR,
        EventSeverity.CRITICAL: logging.CRITICAL,
    }

    def __init__(self):
        self.events: List[TradingEvent] = []

    async def publish(self, event: TradingEvent) -> None:
        self.events.append(event)
        suffix = f" {event.details}" if event.details else ""
        logger.log(
            self._LEVELS.get(event.severity, logging.INFO),
            f"[{event.event_type.value}] {event.title}: {event.message}{suffix}",
        )


class CompositeEventPublisher(EventPublisher):
    """Publishes to every child publisher."""

    def __init__(self, publishers: List[EventPublisher]):
        self._publishers = list(publishers)

    async def publish(self, event: TradingEvent) -> None:
        for publisher in self._publishers:
            try:
                await publisher.publish(event)
            except Exception as e:
                logger.error(f"Publisher {type(publisher).__name__} failed: {e}")

    async def close(self) -> None:
        for publisher in self._publishers:
            await publisher.close()


# ============================================================
# TELEGRAM
# ============================================================

class TelegramEventPublisher(EventPublisher):
    """
    Sends events via the Telegram Bot API.

    Features:
    - Minimum interval per event type
    - Severity filtering
    - Delivery failures are logged, never raised
    """

    BASE_URL = "https://api.telegram.org/bot"

    _EMOJI = {
        EventSeverity.INFO: "ℹ️",
        EventSeverity.WARNING: "⚠️",
        EventSeverity.ERROR: "❌",
        EventSeverity.CRITICAL: "🚨",
    }

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        min_interval_seconds: float = 60.0,
        min_severity: EventSeverity = EventSeverity.WARNING,
        timeout_seconds: float = 10.0,
        clock: Optional[ClockProtocol] = None,
    ):
        self._bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN", "")
        self._chat_id = chat_id or os.getenv("TELEGRAM_CHAT_ID", "")
        self._min_interval = timedelta(seconds=min_interval_seconds)
        self._min_severity = min_severity
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._clock = clock or SystemClock()
        self._last_sent: Dict[EventType, datetime] = {}
        self._session: Optional[aiohttp.ClientSession] = None

        if self.is_configured:
            logger.info("TelegramEventPublisher enabled")
        else:
            logger.warning("TelegramEventPublisher NOT configured - check TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID")

    @property
    def is_configured(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    async def publish(self, event: TradingEvent) -> None:
        if not self.is_configured:
            return
        if event.severity.rank < self._min_severity.rank:
            return
        if self._is_rate_limited(event.event_type):
            logger.debug(f"Telegram rate limited: {event.event_type.value}")
            return
        await self._send(event)

    def _is_rate_limited(self, event_type: EventType) -> bool:
        last = self._last_sent.get(event_type)
        return last is not None and self._clock.now() - last < self._min_interval

    async def _send(self, event: TradingEvent) -> bool:
        url = f"{self.BASE_URL}{self._bot_token}/sendMessage"
        payload = {
            "chat_id": self._chat_id,
            "text": self.format_message(event),
            "parse_mode": "HTML",
        }
        try:
            session = await self._get_session()
            async with session.post(url, json=payload) as response:
                if response.status == 200:
                    self._last_sent[event.event_type] = self._clock.now()
                    logger.info(f"Event sent to Telegram: {event.event_type.value}")
                    return True
                body = await response.text()
                logger.error(f"Telegram API error {response.status}: {body}")
                return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to send Telegram event: {e}")
            return False

    def format_message(self, event: TradingEvent) -> str:
        lines = [
            f"{self._EMOJI.get(event.severity, '📢')} <b>{event.title}</b>",
            f"<b>Type:</b> {event.event_type.value}",
            f"<b>Time:</b> {event.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC",
            "",
            event.message,
        ]
        if event.symbol:
            lines.append(f"<b>Symbol:</b> {event.symbol}")
        if event.details:
            lines.append("\n<b>Details:</b>")
            for key, value in event.details.items():
                lines.append(f"  • {key}: {value}")
        return "\n".join(lines)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


def build_event_publisher(clock: Optional[ClockProtocol] = None) -> EventPublisher:
    """Logging always; Telegram when credentials are present in the environment."""
    publishers: List[EventPublisher] = [LoggingEventPublisher()]
    telegram = TelegramEventPublisher(clock=clock)
    if telegram.is_configured:
        publishers.append(telegram)
    return CompositeEventPublisher(publishers)
