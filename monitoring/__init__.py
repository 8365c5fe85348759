"""
Monitoring Package.

============================================================
PURPOSE
============================================================
Notification collaborator of the trading core.

The core publishes TradingEvents (order failures, drift,
drawdowns, auto-applied settings). Publishers deliver them to
the log and, when configured, Telegram.

============================================================
"""

from .models import (
    EventType,
    EventSeverity,
    TradingEvent,
)
from .notifier import (
    EventPublisher,
    NullEventPublisher,
    LoggingEventPublisher,
    CompositeEventPublisher,
    TelegramEventPublisher,
    build_event_publisher,
)


__all__ = [
    "EventType",
    "EventSeverity",
    "TradingEvent",
    "EventPublisher",
    "NullEventPublisher",
    "LoggingEventPublisher",
    "CompositeEventPublisher",
    "TelegramEventPublisher",
    "build_event_publisher",
]
