"""
Storage Models Package.

ORM models for the trading ledger.

============================================================
MODEL ORGANIZATION
============================================================

Trading (trading.py)
- CandleRecord
- IndicatorSnapshotRecord
- PositionRecord
- TradeRecord
- NavSnapshotRecord
- SymbolCooldownRecord

Settings (settings.py)
- StrategySettingRecord
- StrategySettingChangeRecord
- OptimizationReportRecord

============================================================
DESIGN PRINCIPLES
============================================================

- All monetary columns are Decimal (Numeric)
- All timestamps are stored as UTC
- No business logic in models

============================================================
"""

from storage.models.base import Base, TimestampMixin

from storage.models.trading import (
    CandleRecord,
    IndicatorSnapshotRecord,
    PositionRecord,
    TradeRecord,
    NavSnapshotRecord,
    SymbolCooldownRecord,
)

from storage.models.settings import (
    StrategySettingRecord,
    StrategySettingChangeRecord,
    OptimizationReportRecord,
)


__all__ = [
    "Base",
    "TimestampMixin",
    # Trading
    "CandleRecord",
    "IndicatorSnapshotRecord",
    "PositionRecord",
    "TradeRecord",
    "NavSnapshotRecord",
    "SymbolCooldownRecord",
    # Settings
    "StrategySettingRecord",
    "StrategySettingChangeRecord",
    "OptimizationReportRecord",
]
