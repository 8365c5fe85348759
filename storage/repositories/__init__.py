"""
Storage Repositories Package.

============================================================
PURPOSE
============================================================
Data access layer for the trading ledger.

- One repository per aggregate
- Session injected via constructor
- Repositories never commit; the ledger owns transactions
- SQLAlchemy errors wrapped in RepositoryException subclasses

============================================================
USAGE
============================================================

    with database.transaction() as session:
        positions = PositionRepository(session)
        open_position = positions.get_open("BTC/USD")

============================================================
"""

from storage.repositories.exceptions import (
    RepositoryException,
    DuplicateRecordError,
    IntegrityError,
    ConnectionError,
    QueryError,
)

from storage.repositories.base import BaseRepository

from storage.repositories.market_data import (
    CandleRepository,
    IndicatorSnapshotRepository,
)

from storage.repositories.trading import (
    PositionRepository,
    TradeRepository,
    NavSnapshotRepository,
    CooldownRepository,
)

from storage.repositories.settings import (
    StrategySettingRepository,
    OptimizationReportRepository,
)


__all__ = [
    # Exceptions
    "RepositoryException",
    "DuplicateRecordError",
    "IntegrityError",
    "ConnectionError",
    "QueryError",
    # Base
    "BaseRepository",
    # Market data
    "CandleRepository",
    "IndicatorSnapshotRepository",
    # Trading
    "PositionRepository",
    "TradeRepository",
    "NavSnapshotRepository",
    "CooldownRepository",
    # Settings
    "StrategySettingRepository",
    "OptimizationReportRepository",
]
