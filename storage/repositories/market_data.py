"""
Market Data Repositories.

============================================================
PURPOSE
============================================================
Candle cache and indicator snapshot history.

============================================================
REPOSITORIES
============================================================
- CandleRepository: Append-only OHLCV buckets, deduplicated on time
- IndicatorSnapshotRepository: Append-only per-cycle indicator values

============================================================
"""

from datetime import datetime, timezone
from typing import List, Sequence

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from storage.models.trading import CandleRecord, IndicatorSnapshotRecord
from storage.repositories.base import BaseRepository


class CandleRepository(BaseRepository[CandleRecord]):
    """Repository for cached candles."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, CandleRecord, "CandleRepository")

    def existing_times(self, symbol: str, interval: str, times: Sequence[datetime]) -> set:
        """Bucket times already stored for the given candidates."""
        if not times:
            return set()
        stmt = select(CandleRecord).where(
            CandleRecord.symbol == symbol,
            CandleRecord.interval == interval,
            CandleRecord.time >= min(times),
            CandleRecord.time <= max(times),
        )
        return {self.normalize_time(record.time) for record in self._execute_query(stmt)}

    def add_many(self, records: List[CandleRecord]) -> int:
        return self._add_all(records)

    def latest(self, symbol: str, interval: str, limit: int) -> List[CandleRecord]:
        """Newest `limit` candles, time-ascending."""
        stmt = (
            select(CandleRecord)
            .where(CandleRecord.symbol == symbol, CandleRecord.interval == interval)
            .order_by(desc(CandleRecord.time))
            .limit(limit)
        )
        return list(reversed(self._execute_query(stmt)))

    @staticmethod
    def normalize_time(value: datetime) -> datetime:
        """Naive UTC, comparable across SQLite (naive) and PostgreSQL (aware)."""
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)


class IndicatorSnapshotRepository(BaseRepository[IndicatorSnapshotRecord]):
    """Repository for indicator snapshots."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, IndicatorSnapshotRecord, "IndicatorSnapshotRepository")

    def add(self, record: IndicatorSnapshotRecord) -> IndicatorSnapshotRecord:
        return self._add(record)

    def latest_for_symbol(self, symbol: str, limit: int = 10) -> List[IndicatorSnapshotRecord]:
        stmt = (
            select(IndicatorSnapshotRecord)
            .where(IndicatorSnapshotRecord.symbol == symbol)
            .order_by(desc(IndicatorSnapshotRecord.generated_at), desc(IndicatorSnapshotRecord.id))
            .limit(limit)
        )
        return self._execute_query(stmt)
