"""
Execution Engine - Types.

============================================================
PURPOSE
============================================================
Exchange-agnostic value types shared by the gateway, the
order lifecycle manager and reconciliation.

PRICE / QUANTITY PRINCIPLE:
    All prices, quantities and fees are Decimal. Floats only
    appear inside the indicator math.

============================================================
"""

from datetime import datetime, timezone
from typing import Optional
from dataclasses import dataclass, field
from enum import Enum
from decimal import Decimal


# ============================================================
# ORDER TYPES
# ============================================================

class OrderSide(Enum):
    """Order side."""

    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    """Order type."""

    LIMIT = "limit"
    """Resting limit order (post-only for maker entries)."""

    MARKET = "market"
    """Immediate taker order."""


# ============================================================
# ORDER LIFECYCLE STATES
# ============================================================

class OrderState(Enum):
    """
    Order lifecycle state.

    State Machine:

        PENDING ──────────► FILLED
           │                  ▲
           ├──► PARTIALLY_FILLED
           │         │
           ▼         ▼
         STALE ───► (cancel, replace with market)
           │
           ▼
        CANCELLED

    FILLED and CANCELLED are terminal.
    """

    PENDING = "pending"
    """Posted on the exchange, nothing executed yet."""

    PARTIALLY_FILLED = "partially_filled"
    """Some quantity executed, remainder resting."""

    FILLED = "filled"
    """Fully executed."""

    STALE = "stale"
    """Unfilled past the timeout window; must be cancelled and replaced."""

    CANCELLED = "cancelled"
    """Cancelled on the exchange."""

    def is_terminal(self) -> bool:
        return self in {OrderState.FILLED, OrderState.CANCELLED}

    def is_active(self) -> bool:
        return self in {OrderState.PENDING, OrderState.PARTIALLY_FILLED}


# ============================================================
# MARKET DATA
# ============================================================

@dataclass(frozen=True)
class Candle:
    """One OHLCV bucket. Immutable once stored."""

    time: datetime
    """Bucket open time (UTC)."""

    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


@dataclass(frozen=True)
class Ticker:
    """Top of book and last trade."""

    symbol: str
    last: Decimal
    bid: Decimal
    ask: Decimal

    def price_for(self, side: OrderSide) -> Decimal:
        """Reference price: ask for buys, bid for sells."""
        return self.ask if side == OrderSide.BUY else self.bid


# ============================================================
# ACCOUNT
# ============================================================

@dataclass
class AccountBalance:
    """Balance of one asset (normalized asset code)."""

    asset: str
    """Asset code, e.g. BTC, USD."""

    free: Decimal = Decimal("0")
    """Available for trading."""

    locked: Decimal = Decimal("0")
    """Held by open orders."""

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


# ============================================================
# LOT / PRICE CONSTRAINTS
# ============================================================

@dataclass(frozen=True)
class LotInfo:
    """Per-symbol tradable increments."""

    symbol: str
    """Internal symbol, e.g. BTC-USD."""

    lot_size: Decimal
    """Minimum quantity increment."""

    lot_decimals: int
    """Decimal places for quantity."""

    min_order_size: Decimal
    """Minimum order size in base currency."""

    price_decimals: int
    """Decimal places for price."""

    source: str = "exchange"
    """Where the numbers came from: exchange or fallback."""


# ============================================================
# ORDERS
# ============================================================

@dataclass
class OrderStatusReport:
    """Authoritative order view as reported by the exchange."""

    order_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    status: OrderState
    quantity: Decimal
    filled_quantity: Decimal = Decimal("0")
    average_price: Optional[Decimal] = None
    """Volume-weighted execution price, None until something fills."""

    fee: Decimal = Decimal("0")
    """Fee charged so far, quote currency."""

    limit_price: Optional[Decimal] = None
    opened_at: Optional[datetime] = None

    @property
    def remaining_quantity(self) -> Decimal:
        return max(self.quantity - self.filled_quantity, Decimal("0"))


@dataclass
class OpenOrder:
    """
    Lifecycle-scoped order record.

    Owned by the Order Lifecycle Manager while the order is active.
    Not persisted; rebuilt from the exchange on demand.
    """

    order_id: str
    symbol: str
    side: OrderSide
    quantity: Decimal
    order_type: OrderType = OrderType.LIMIT
    limit_price: Optional[Decimal] = None
    posted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: OrderState = OrderState.PENDING
    filled_quantity: Decimal = Decimal("0")
    average_price: Optional[Decimal] = None
    fee: Decimal = Decimal("0")

    @property
    def remaining_quantity(self) -> Decimal:
        return max(self.quantity - self.filled_quantity, Decimal("0"))

    def apply_report(self, report: OrderStatusReport) -> None:
        """Copy fill figures from an exchange report."""
        self.filled_quantity = report.filled_quantity
        self.average_price = report.average_price
        self.fee = report.fee


@dataclass(frozen=True)
class TradeFill:
    """A confirmed execution to be appended to the ledger."""

    symbol: str
    side: OrderSide
    quantity: Decimal
    price: Decimal
    fee: Decimal
    exchange_order_id: str
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
