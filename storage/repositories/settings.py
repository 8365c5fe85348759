"""
Settings and Optimization Repositories.

============================================================
PURPOSE
============================================================
Versioned strategy settings with an audit trail, and the
append-only optimization reports.

============================================================
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import asc, desc, select
from sqlalchemy.orm import Session

from storage.models.settings import (
    OptimizationReportRecord,
    StrategySettingChangeRecord,
    StrategySettingRecord,
)
from storage.repositories.base import BaseRepository


class StrategySettingRepository(BaseRepository[StrategySettingRecord]):
    """Repository for strategy settings."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, StrategySettingRecord, "StrategySettingRepository")

    def get(self, key: str) -> Optional[StrategySettingRecord]:
        stmt = select(StrategySettingRecord).where(StrategySettingRecord.key == key)
        return self._execute_scalar(stmt)

    def list_all(self) -> List[StrategySettingRecord]:
        stmt = select(StrategySettingRecord).order_by(asc(StrategySettingRecord.key))
        return self._execute_query(stmt)

    def upsert(self, key: str, value: str, source: str, now: datetime) -> StrategySettingChangeRecord:
        """
        Write a new version of a setting and its audit row.

        Single read-modify-write inside the caller's transaction.
        """
        record = self.get(key)
        old_value = None
        if record is None:
            record = StrategySettingRecord(
                key=key, value=value, version=1, updated_at=now, updated_by=source,
            )
            self._add(record)
        else:
            old_value = record.value
            record.value = value
            record.version += 1
            record.updated_at = now
            record.updated_by = source
            self._flush("update_setting")

        change = StrategySettingChangeRecord(
            key=key,
            old_value=old_value,
            new_value=value,
            version=record.version,
            source=source,
            changed_at=now,
        )
        self._add(change)
        self._logger.info(f"Setting {key} v{record.version}: {old_value!r} -> {value!r} ({source})")
        return change

    def history(self, key: Optional[str] = None, limit: int = 50) -> List[StrategySettingChangeRecord]:
        stmt = select(StrategySettingChangeRecord)
        if key is not None:
            stmt = stmt.where(StrategySettingChangeRecord.key == key)
        stmt = stmt.order_by(
            desc(StrategySettingChangeRecord.changed_at),
            desc(StrategySettingChangeRecord.id),
        ).limit(limit)
        return self._execute_query(stmt)


class OptimizationReportRepository(BaseRepository[OptimizationReportRecord]):
    """Repository for optimization reports."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, OptimizationReportRecord, "OptimizationReportRepository")

    def add(self, record: OptimizationReportRecord) -> OptimizationReportRecord:
        return self._add(record)

    def latest(self) -> Optional[OptimizationReportRecord]:
        stmt = (
            select(OptimizationReportRecord)
            .order_by(desc(OptimizationReportRecord.id))
            .limit(1)
        )
        return self._execute_scalar(stmt)
