"""
Trading Ledger ORM Models.

============================================================
PURPOSE
============================================================
Market data, positions, trades and account history.

============================================================
MODELS
============================================================
- CandleRecord: OHLCV buckets (immutable, unique per symbol/interval/time)
- IndicatorSnapshotRecord: Per-cycle indicator values (append-only)
- PositionRecord: Holdings (one open row per symbol)
- TradeRecord: Confirmed fills (append-only)
- NavSnapshotRecord: NAV history (append-only)
- SymbolCooldownRecord: Re-entry cooldown counters

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, TimestampMixin


class CandleRecord(Base):
    """
    OHLCV bucket.

    Immutable once stored; (symbol, interval, time) is unique.
    """

    __tablename__ = "candles"
    __table_args__ = (
        UniqueConstraint("symbol", "interval", "time", name="uq_candles_symbol_interval_time"),
        Index("ix_candles_symbol_interval_time", "symbol", "interval", "time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    symbol: Mapped[str] = mapped_column(String(20), nullable=False, comment="Internal symbol")

    interval: Mapped[str] = mapped_column(String(10), nullable=False, comment="Interval string, e.g. 6h")

    time: Mapped[datetime] = mapped_column(nullable=False, comment="Bucket open time (UTC)")

    open: Mapped[Decimal] = mapped_column(nullable=False)
    high: Mapped[Decimal] = mapped_column(nullable=False)
    low: Mapped[Decimal] = mapped_column(nullable=False)
    close: Mapped[Decimal] = mapped_column(nullable=False)
    volume: Mapped[Decimal] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<CandleRecord {self.symbol} {self.interval} {self.time}>"


class IndicatorSnapshotRecord(Base):
    """Indicator values for one symbol in one cycle."""

    __tablename__ = "indicator_snapshots"
    __table_args__ = (
        Index("ix_indicator_snapshots_symbol_generated", "symbol", "generated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    generated_at: Mapped[datetime] = mapped_column(nullable=False)
    ema_short: Mapped[float] = mapped_column(Float, nullable=False)
    ema_long: Mapped[float] = mapped_column(Float, nullable=False)
    rsi: Mapped[float] = mapped_column(Float, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)


class PositionRecord(Base, TimestampMixin):
    """
    Holding in one symbol.

    ============================================================
    INVARIANT
    ============================================================
    At most one row with status='open' per symbol. Enforced by
    the ledger inside the mutating transaction.

    ============================================================
    """

    __tablename__ = "positions"
    __table_args__ = (
        Index("ix_positions_symbol_status", "symbol", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    symbol: Mapped[str] = mapped_column(String(20), nullable=False)

    quantity: Mapped[Decimal] = mapped_column(nullable=False, comment="Base asset quantity")

    entry_price: Mapped[Decimal] = mapped_column(nullable=False, comment="Quantity-weighted average entry")

    status: Mapped[str] = mapped_column(String(10), nullable=False, default="open", comment="open, closed")

    opened_at: Mapped[datetime] = mapped_column(nullable=False)

    closed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    position_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
        comment="Origin and adjustment notes"
    )

    def __repr__(self) -> str:
        return f"<PositionRecord {self.symbol} {self.quantity} @ {self.entry_price} [{self.status}]>"


class TradeRecord(Base):
    """Confirmed fill. Append-only."""

    __tablename__ = "trades"
    __table_args__ = (
        Index("ix_trades_symbol_created", "symbol", "created_at"),
        Index("ix_trades_exchange_order_id", "exchange_order_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False, comment="buy, sell")
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    price: Mapped[Decimal] = mapped_column(nullable=False, comment="Exchange-reported average price")
    fee: Mapped[Decimal] = mapped_column(nullable=False, comment="Quote currency")
    exchange_order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())


class NavSnapshotRecord(Base):
    """Net asset value sample."""

    __tablename__ = "nav_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nav: Mapped[Decimal] = mapped_column(nullable=False)
    cash: Mapped[Decimal] = mapped_column(nullable=False)
    positions_value: Mapped[Decimal] = mapped_column(nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False, index=True)


class SymbolCooldownRecord(Base):
    """Remaining cycles before a symbol may be re-entered."""

    __tablename__ = "symbol_cooldowns"

    symbol: Mapped[str] = mapped_column(String(20), primary_key=True)
    remaining_cycles: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
