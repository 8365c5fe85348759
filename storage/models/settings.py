"""
Strategy Settings and Optimization ORM Models.

============================================================
PURPOSE
============================================================
Versioned strategy configuration and the auto-tuner audit
trail.

============================================================
MODELS
============================================================
- StrategySettingRecord: Current value per key (versioned)
- StrategySettingChangeRecord: Every change, append-only
- OptimizationReportRecord: Nightly report, append-only

============================================================
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base


class StrategySettingRecord(Base):
    """Current value of one strategy setting."""

    __tablename__ = "strategy_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)

    value: Mapped[str] = mapped_column(Text, nullable=False, comment="String-encoded value")

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    updated_by: Mapped[str] = mapped_column(String(32), nullable=False, comment="user, auto_tuner, cli")


class StrategySettingChangeRecord(Base):
    """Audit row for a settings write."""

    __tablename__ = "strategy_setting_changes"
    __table_args__ = (
        Index("ix_setting_changes_key_changed", "key", "changed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False)
    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_value: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(nullable=False)


class OptimizationReportRecord(Base):
    """
    Nightly optimization report.

    Never mutated after creation.
    """

    __tablename__ = "optimization_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_date: Mapped[datetime] = mapped_column(nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, comment="completed, failed")
    metrics: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    current_settings: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    recommendations: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    applied_changes: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())
