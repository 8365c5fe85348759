"""
Trading Repositories.

============================================================
PURPOSE
============================================================
Positions, trades, NAV history and cooldown counters.

============================================================
REPOSITORIES
============================================================
- PositionRepository: Open/closed holdings
- TradeRepository: Append-only fills
- NavSnapshotRepository: Append-only NAV samples
- CooldownRepository: Per-symbol re-entry counters

============================================================
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import asc, delete, desc, select
from sqlalchemy.orm import Session

from storage.models.trading import (
    NavSnapshotRecord,
    PositionRecord,
    SymbolCooldownRecord,
    TradeRecord,
)
from storage.repositories.base import BaseRepository


class PositionRepository(BaseRepository[PositionRecord]):
    """
    Repository for positions.

    Callers must hold the ledger's transaction while checking
    and creating open rows.
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session, PositionRecord, "PositionRepository")

    def add(self, record: PositionRecord) -> PositionRecord:
        return self._add(record)

    def get_open(self, symbol: str) -> Optional[PositionRecord]:
        stmt = select(PositionRecord).where(
            PositionRecord.symbol == symbol,
            PositionRecord.status == "open",
        )
        return self._execute_scalar(stmt)

    def list_open(self) -> List[PositionRecord]:
        stmt = (
            select(PositionRecord)
            .where(PositionRecord.status == "open")
            .order_by(asc(PositionRecord.symbol))
        )
        return self._execute_query(stmt)

    def list_all(
        self,
        status: Optional[str] = None,
        closed_since: Optional[datetime] = None,
    ) -> List[PositionRecord]:
        stmt = select(PositionRecord)
        if status is not None:
            stmt = stmt.where(PositionRecord.status == status)
        if closed_since is not None:
            stmt = stmt.where(PositionRecord.closed_at >= closed_since)
        stmt = stmt.order_by(asc(PositionRecord.opened_at), asc(PositionRecord.id))
        return self._execute_query(stmt)

    def save(self, record: PositionRecord) -> PositionRecord:
        self._flush("save_position")
        return record


class TradeRepository(BaseRepository[TradeRecord]):
    """Repository for fills."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, TradeRecord, "TradeRepository")

    def add(self, record: TradeRecord) -> TradeRecord:
        return self._add(record)

    def get_by_exchange_order_id(self, exchange_order_id: str) -> Optional[TradeRecord]:
        stmt = (
            select(TradeRecord)
            .where(TradeRecord.exchange_order_id == exchange_order_id)
            .limit(1)
        )
        return self._execute_scalar(stmt)

    def list_trades(
        self,
        symbol: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[TradeRecord]:
        """Trades in execution order."""
        stmt = select(TradeRecord)
        if symbol is not None:
            stmt = stmt.where(TradeRecord.symbol == symbol)
        if since is not None:
            stmt = stmt.where(TradeRecord.created_at >= since)
        if until is not None:
            stmt = stmt.where(TradeRecord.created_at < until)
        stmt = stmt.order_by(asc(TradeRecord.created_at), asc(TradeRecord.id))
        return self._execute_query(stmt)


class NavSnapshotRepository(BaseRepository[NavSnapshotRecord]):
    """Repository for NAV history."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, NavSnapshotRecord, "NavSnapshotRepository")

    def add(self, record: NavSnapshotRecord) -> NavSnapshotRecord:
        return self._add(record)

    def latest(self, limit: int) -> List[NavSnapshotRecord]:
        """Newest `limit` samples, oldest first."""
        stmt = (
            select(NavSnapshotRecord)
            .order_by(desc(NavSnapshotRecord.recorded_at), desc(NavSnapshotRecord.id))
            .limit(limit)
        )
        return list(reversed(self._execute_query(stmt)))


class CooldownRepository(BaseRepository[SymbolCooldownRecord]):
    """Repository for re-entry cooldowns."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, SymbolCooldownRecord, "CooldownRepository")

    def get_all(self) -> Dict[str, int]:
        stmt = select(SymbolCooldownRecord)
        return {r.symbol: r.remaining_cycles for r in self._execute_query(stmt)}

    def replace_all(self, cooldowns: Dict[str, int]) -> None:
        """Replace every counter; zero or negative counters are dropped."""
        self._execute(delete(SymbolCooldownRecord), "clear_cooldowns")
        active = [
            SymbolCooldownRecord(symbol=symbol, remaining_cycles=cycles)
            for symbol, cycles in sorted(cooldowns.items())
            if cycles > 0
        ]
        if active:
            self._add_all(active)
