"""
Storage - Ledger Record Types.

============================================================
PURPOSE
============================================================
Plain dataclasses returned by the TradingLedger. ORM objects
never leave a session; callers only see these values.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class PositionStatus(Enum):
    """Position status."""

    OPEN = "open"
    CLOSED = "closed"


@dataclass
class Position:
    """
    A holding in one symbol.

    At most one OPEN position per symbol. Entry price is the
    quantity-weighted average of the buys while open.
    """

    id: int
    symbol: str
    quantity: Decimal
    entry_price: Decimal
    status: PositionStatus
    opened_at: datetime
    closed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def market_value(self, price: Decimal) -> Decimal:
        return self.quantity * price

    def unrealized_pnl(self, price: Decimal) -> Decimal:
        return (price - self.entry_price) * self.quantity

    def unrealized_pnl_pct(self, price: Decimal) -> Decimal:
        """Unrealized P&L in percent of entry price (0 when entry price is 0)."""
        if self.entry_price <= 0:
            return Decimal("0")
        return (price - self.entry_price) / self.entry_price * Decimal("100")


@dataclass(frozen=True)
class Trade:
    """Confirmed execution. Append-only."""

    id: int
    symbol: str
    side: str
    """buy or sell."""

    quantity: Decimal
    price: Decimal
    fee: Decimal
    exchange_order_id: str
    created_at: datetime


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Indicator values for one symbol in one evaluation cycle."""

    symbol: str
    generated_at: datetime
    ema_short: float
    ema_long: float
    rsi: float
    score: float


@dataclass(frozen=True)
class NavSnapshot:
    """Net asset value at a point in time."""

    nav: Decimal
    cash: Decimal
    positions_value: Decimal
    recorded_at: datetime


@dataclass(frozen=True)
class SettingValue:
    """Stored strategy setting."""

    key: str
    value: str
    version: int
    updated_at: datetime
    updated_by: str


@dataclass(frozen=True)
class SettingChange:
    """One row of the settings audit trail."""

    key: str
    old_value: Optional[str]
    new_value: str
    version: int
    source: str
    changed_at: datetime


@dataclass(frozen=True)
class StoredOptimizationReport:
    """Optimization report as persisted."""

    id: int
    run_date: datetime
    status: str
    metrics: Dict[str, Any]
    current_settings: Dict[str, Any]
    recommendations: List[Dict[str, Any]]
    applied_changes: List[Dict[str, Any]]
    error: Optional[str]
    created_at: datetime
