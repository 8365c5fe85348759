"""
Monitoring - Event Model.

============================================================
PURPOSE
============================================================
Fire-and-forget events published by the trading core.

Publishing never influences the caller: a failed delivery is
logged by the publisher and dropped.

============================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from dataclasses import dataclass, field
from enum import Enum


class EventType(Enum):
    """Kinds of events the core publishes."""

    ORDER_FAILED = "ORDER_FAILED"
    """Order placement or execution failed."""

    ORDER_REPLACED = "ORDER_REPLACED"
    """Stale maker order replaced with a market order."""

    LOW_BALANCE = "LOW_BALANCE"
    """NAV below the low-balance threshold."""

    LARGE_DRAWDOWN = "LARGE_DRAWDOWN"
    """NAV fell from its recent peak beyond the threshold."""

    RECONCILIATION_DRIFT = "RECONCILIATION_DRIFT"
    """Ledger quantity corrected from exchange balance."""

    UNTRACKED_POSITION = "UNTRACKED_POSITION"
    """Balance or position outside the trading universe."""

    SETTINGS_AUTO_APPLIED = "SETTINGS_AUTO_APPLIED"
    """Auto-tuner changed a strategy setting."""

    AUTHENTICATION_FAILURE = "AUTHENTICATION_FAILURE"
    """Exchange rejected the credentials."""


class EventSeverity(Enum):
    """Event severity levels."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    EventSeverity.INFO: 0,
    EventSeverity.WARNING: 1,
    EventSeverity.ERROR: 2,
    EventSeverity.CRITICAL: 3,
}


@dataclass
class TradingEvent:
    """An event to be published."""

    event_type: EventType
    severity: EventSeverity
    title: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    symbol: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "symbol": self.symbol,
        }
