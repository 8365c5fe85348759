"""
Storage - Trading Ledger.

============================================================
PURPOSE
============================================================
Single persistence façade for the trading core.

Every public method runs in its own transaction and returns
plain dataclasses from storage.types. ORM records never
leave this module.

============================================================
INVARIANTS
============================================================
- At most one open Position per symbol
- Trades are append-only; one fill per exchange order id
- Candles are deduplicated on (symbol, interval, time)
- Optimization reports are never mutated

============================================================
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.exceptions import InvariantViolationError
from execution_engine.types import Candle, OrderSide, TradeFill
from storage.database import Database
from storage.models.settings import OptimizationReportRecord
from storage.models.trading import (
    CandleRecord,
    IndicatorSnapshotRecord,
    NavSnapshotRecord,
    PositionRecord,
    TradeRecord,
)
from storage.repositories.market_data import CandleRepository, IndicatorSnapshotRepository
from storage.repositories.settings import (
    OptimizationReportRepository,
    StrategySettingRepository,
)
from storage.repositories.trading import (
    CooldownRepository,
    NavSnapshotRepository,
    PositionRepository,
    TradeRepository,
)
from storage.types import (
    IndicatorSnapshot,
    NavSnapshot,
    Position,
    PositionStatus,
    SettingChange,
    SettingValue,
    StoredOptimizationReport,
    Trade,
)


logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _utc(value: datetime) -> datetime:
    """UTC for storage; SQLite keeps the wall-clock part only."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dec(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


# ============================================================
# RECORD CONVERSION
# ============================================================

def _to_candle(record: CandleRecord) -> Candle:
    return Candle(
        time=ensure_utc(record.time),
        open=_dec(record.open),
        high=_dec(record.high),
        low=_dec(record.low),
        close=_dec(record.close),
        volume=_dec(record.volume),
    )


def _to_position(record: PositionRecord) -> Position:
    return Position(
        id=record.id,
        symbol=record.symbol,
        quantity=_dec(record.quantity),
        entry_price=_dec(record.entry_price),
        status=PositionStatus(record.status),
        opened_at=ensure_utc(record.opened_at),
        closed_at=ensure_utc(record.closed_at) if record.closed_at else None,
        metadata=dict(record.position_metadata or {}),
    )


def _to_trade(record: TradeRecord) -> Trade:
    return Trade(
        id=record.id,
        symbol=record.symbol,
        side=record.side,
        quantity=_dec(record.quantity),
        price=_dec(record.price),
        fee=_dec(record.fee),
        exchange_order_id=record.exchange_order_id,
        created_at=ensure_utc(record.created_at),
    )


def _to_report(record: OptimizationReportRecord) -> StoredOptimizationReport:
    return StoredOptimizationReport(
        id=record.id,
        run_date=ensure_utc(record.run_date),
        status=record.status,
        metrics=dict(record.metrics or {}),
        current_settings=dict(record.current_settings or {}),
        recommendations=list(record.recommendations or []),
        applied_changes=list(record.applied_changes or []),
        error=record.error,
        created_at=ensure_utc(record.created_at),
    )


class TradingLedger:
    """
    Persistence façade over the ledger repositories.

    Position and Trade writers are the Order Lifecycle Manager
    (record_fill) and Reconciliation (open/adjust/close).
    """

    def __init__(self, database: Database, clock: Optional[ClockProtocol] = None):
        self._db = database
        self._clock = clock or SystemClock()

    @property
    def database(self) -> Database:
        return self._db

    # --------------------------------------------------------
    # CANDLES
    # --------------------------------------------------------

    def append_candles(self, symbol: str, interval: str, candles: Iterable[Candle]) -> int:
        """Store candles not already present. Returns the number inserted."""
        candles = list(candles)
        if not candles:
            return 0

        with self._db.transaction() as session:
            repo = CandleRepository(session)
            times = [_utc(c.time) for c in candles]
            existing = repo.existing_times(symbol, interval, times)

            new_records = []
            seen = set(existing)
            for candle, time in zip(candles, times):
                key = CandleRepository.normalize_time(time)
                if key in seen:
                    continue
                seen.add(key)
                new_records.append(CandleRecord(
                    symbol=symbol,
                    interval=interval,
                    time=time,
                    open=candle.open,
                    high=candle.high,
                    low=candle.low,
                    close=candle.close,
                    volume=candle.volume,
                ))

            if new_records:
                repo.add_many(new_records)

        if new_records:
            logger.debug(f"Stored {len(new_records)} candles for {symbol} {interval}")
        return len(new_records)

    def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        """Newest `limit` cached candles, oldest first."""
        with self._db.session() as session:
            records = CandleRepository(session).latest(symbol, interval, limit)
            return [_to_candle(r) for r in records]

    # --------------------------------------------------------
    # INDICATOR SNAPSHOTS
    # --------------------------------------------------------

    def record_indicator_snapshot(self, snapshot: IndicatorSnapshot) -> None:
        with self._db.transaction() as session:
            IndicatorSnapshotRepository(session).add(IndicatorSnapshotRecord(
                symbol=snapshot.symbol,
                generated_at=_utc(snapshot.generated_at),
                ema_short=snapshot.ema_short,
                ema_long=snapshot.ema_long,
                rsi=snapshot.rsi,
                score=snapshot.score,
            ))

    def get_indicator_snapshots(self, symbol: str, limit: int = 10) -> List[IndicatorSnapshot]:
        with self._db.session() as session:
            records = IndicatorSnapshotRepository(session).latest_for_symbol(symbol, limit)
            return [
                IndicatorSnapshot(
                    symbol=r.symbol,
                    generated_at=ensure_utc(r.generated_at),
                    ema_short=r.ema_short,
                    ema_long=r.ema_long,
                    rsi=r.rsi,
                    score=r.score,
                )
                for r in records
            ]

    # --------------------------------------------------------
    # POSITIONS
    # --------------------------------------------------------

    def get_open_positions(self) -> List[Position]:
        with self._db.session() as session:
            return [_to_position(r) for r in PositionRepository(session).list_open()]

    def get_open_position(self, symbol: str) -> Optional[Position]:
        with self._db.session() as session:
            record = PositionRepository(session).get_open(symbol)
            return _to_position(record) if record else None

    def get_positions(
        self,
        status: Optional[PositionStatus] = None,
        closed_since: Optional[datetime] = None,
    ) -> List[Position]:
        with self._db.session() as session:
            records = PositionRepository(session).list_all(
                status=status.value if status else None,
                closed_since=_utc(closed_since) if closed_since else None,
            )
            return [_to_position(r) for r in records]

    def open_position(
        self,
        symbol: str,
        quantity: Decimal,
        entry_price: Decimal,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Position:
        """
        Create an open position.

        Raises:
            InvariantViolationError: if the symbol already has an open position
        """
        with self._db.transaction() as session:
            repo = PositionRepository(session)
            if repo.get_open(symbol) is not None:
                raise InvariantViolationError(
                    f"Open position already exists for {symbol}",
                    context={"symbol": symbol},
                )
            record = repo.add(self._new_position(symbol, quantity, entry_price, metadata))
            position = _to_position(record)

        logger.info(f"Opened position {symbol}: {quantity} @ {entry_price}")
        return position

    def adjust_position_quantity(
        self,
        symbol: str,
        quantity: Decimal,
        reason: str,
    ) -> Optional[Position]:
        """
        Overwrite the quantity of the open position (exchange is authoritative).

        Returns None when the symbol has no open position.
        """
        with self._db.transaction() as session:
            repo = PositionRepository(session)
            record = repo.get_open(symbol)
            if record is None:
                logger.warning(f"No open position to adjust for {symbol}")
                return None

            old_quantity = _dec(record.quantity)
            record.quantity = quantity
            metadata = dict(record.position_metadata or {})
            adjustments = list(metadata.get("adjustments", []))
            adjustments.append({
                "from": str(old_quantity),
                "to": str(quantity),
                "reason": reason,
                "at": self._clock.now().isoformat(),
            })
            metadata["adjustments"] = adjustments
            record.position_metadata = metadata
            repo.save(record)
            position = _to_position(record)

        logger.info(f"Adjusted position {symbol}: {old_quantity} -> {quantity} ({reason})")
        return position

    def close_position(self, symbol: str, reason: str = "") -> Optional[Position]:
        """Close the open position. No-op returning None if there is none."""
        with self._db.transaction() as session:
            repo = PositionRepository(session)
            record = repo.get_open(symbol)
            if record is None:
                logger.info(f"close_position: no open position for {symbol}")
                return None
            self._close(record, reason)
            repo.save(record)
            position = _to_position(record)

        logger.info(f"Closed position {symbol} ({reason or 'no reason'})")
        return position

    def _new_position(
        self,
        symbol: str,
        quantity: Decimal,
        entry_price: Decimal,
        metadata: Optional[Dict[str, Any]],
    ) -> PositionRecord:
        return PositionRecord(
            symbol=symbol,
            quantity=quantity,
            entry_price=entry_price,
            status=PositionStatus.OPEN.value,
            opened_at=_utc(self._clock.now()),
            position_metadata=dict(metadata or {}),
        )

    def _close(self, record: PositionRecord, reason: str) -> None:
        record.status = PositionStatus.CLOSED.value
        record.closed_at = _utc(self._clock.now())
        if reason:
            metadata = dict(record.position_metadata or {})
            metadata["close_reason"] = reason
            record.position_metadata = metadata

    # --------------------------------------------------------
    # FILLS / TRADES
    # --------------------------------------------------------

    def record_fill(self, fill: TradeFill) -> Optional[Trade]:
        """
        Append a Trade and apply it to the symbol's Position atomically.

        Buys create the position or move its entry price to the
        quantity-weighted average. Sells reduce the quantity and
        close the position when it reaches zero.

        Returns None if a fill for the same exchange order id was
        already recorded.
        """
        if fill.quantity <= 0:
            raise InvariantViolationError(
                f"Fill quantity must be positive: {fill.quantity}",
                context={"symbol": fill.symbol, "order_id": fill.exchange_order_id},
            )

        with self._db.transaction() as session:
            trades = TradeRepository(session)
            if trades.get_by_exchange_order_id(fill.exchange_order_id) is not None:
                logger.info(f"Fill for order {fill.exchange_order_id} already recorded, skipping")
                return None

            record = trades.add(TradeRecord(
                symbol=fill.symbol,
                side=fill.side.value,
                quantity=fill.quantity,
                price=fill.price,
                fee=fill.fee,
                exchange_order_id=fill.exchange_order_id,
                created_at=_utc(fill.executed_at),
            ))

            positions = PositionRepository(session)
            position = positions.get_open(fill.symbol)

            if fill.side == OrderSide.BUY:
                if position is None:
                    positions.add(self._new_position(
                        fill.symbol,
                        fill.quantity,
                        fill.price,
                        {"origin": "fill", "order_id": fill.exchange_order_id},
                    ))
                else:
                    old_qty = _dec(position.quantity)
                    new_qty = old_qty + fill.quantity
                    position.entry_price = (
                        old_qty * _dec(position.entry_price) + fill.quantity * fill.price
                    ) / new_qty
                    position.quantity = new_qty
                    positions.save(position)
            else:
                if position is None:
                    logger.warning(
                        f"Sell fill {fill.exchange_order_id} for {fill.symbol} with no open position"
                    )
                else:
                    remaining = _dec(position.quantity) - fill.quantity
                    if remaining <= ZERO:
                        position.quantity = ZERO
                        self._close(position, "sold")
                    else:
                        position.quantity = remaining
                    positions.save(position)

            trade = _to_trade(record)

        logger.info(
            f"Recorded {fill.side.value} fill {fill.symbol}: {fill.quantity} @ {fill.price} "
            f"fee={fill.fee} order={fill.exchange_order_id}"
        )
        return trade

    def get_trades(
        self,
        symbol: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[Trade]:
        """Trades in execution order."""
        with self._db.session() as session:
            records = TradeRepository(session).list_trades(
                symbol=symbol,
                since=_utc(since) if since else None,
                until=_utc(until) if until else None,
            )
            return [_to_trade(r) for r in records]

    # --------------------------------------------------------
    # NAV HISTORY
    # --------------------------------------------------------

    def record_nav(self, nav: Decimal, cash: Decimal, positions_value: Decimal) -> NavSnapshot:
        recorded_at = _utc(self._clock.now())
        with self._db.transaction() as session:
            NavSnapshotRepository(session).add(NavSnapshotRecord(
                nav=nav,
                cash=cash,
                positions_value=positions_value,
                recorded_at=recorded_at,
            ))
        return NavSnapshot(nav=nav, cash=cash, positions_value=positions_value, recorded_at=recorded_at)

    def get_nav_history(self, limit: int = 100) -> List[NavSnapshot]:
        """Newest `limit` samples, oldest first."""
        with self._db.session() as session:
            return [
                NavSnapshot(
                    nav=_dec(r.nav),
                    cash=_dec(r.cash),
                    positions_value=_dec(r.positions_value),
                    recorded_at=ensure_utc(r.recorded_at),
                )
                for r in NavSnapshotRepository(session).latest(limit)
            ]

    # --------------------------------------------------------
    # COOLDOWNS
    # --------------------------------------------------------

    def get_cooldowns(self) -> Dict[str, int]:
        with self._db.session() as session:
            return CooldownRepository(session).get_all()

    def save_cooldowns(self, cooldowns: Dict[str, int]) -> None:
        with self._db.transaction() as session:
            CooldownRepository(session).replace_all(cooldowns)

    # --------------------------------------------------------
    # OPTIMIZATION REPORTS
    # --------------------------------------------------------

    def append_optimization_report(
        self,
        run_date: datetime,
        status: str,
        metrics: Dict[str, Any],
        current_settings: Dict[str, Any],
        recommendations: List[Dict[str, Any]],
        applied_changes: List[Dict[str, Any]],
        error: Optional[str] = None,
    ) -> StoredOptimizationReport:
        with self._db.transaction() as session:
            record = OptimizationReportRepository(session).add(OptimizationReportRecord(
                run_date=_utc(run_date),
                status=status,
                metrics=metrics,
                current_settings=current_settings,
                recommendations=recommendations,
                applied_changes=applied_changes,
                error=error,
                created_at=_utc(self._clock.now()),
            ))
            report = _to_report(record)

        logger.info(
            f"Stored optimization report #{report.id} ({status}): "
            f"{len(recommendations)} recommendations, {len(applied_changes)} applied"
        )
        return report

    def get_latest_report(self) -> Optional[StoredOptimizationReport]:
        with self._db.session() as session:
            record = OptimizationReportRepository(session).latest()
            return _to_report(record) if record else None

    # --------------------------------------------------------
    # STRATEGY SETTINGS
    # --------------------------------------------------------

    def get_settings(self) -> Dict[str, SettingValue]:
        with self._db.session() as session:
            return {
                r.key: SettingValue(
                    key=r.key,
                    value=r.value,
                    version=r.version,
                    updated_at=ensure_utc(r.updated_at),
                    updated_by=r.updated_by,
                )
                for r in StrategySettingRepository(session).list_all()
            }

    def upsert_settings(self, values: Dict[str, str], source: str) -> List[SettingChange]:
        """Write several settings in one transaction."""
        now = _utc(self._clock.now())
        with self._db.transaction() as session:
            repo = StrategySettingRepository(session)
            changes = [repo.upsert(key, value, source, now) for key, value in values.items()]
            return [self._to_change(c) for c in changes]

    def upsert_setting(self, key: str, value: str, source: str) -> SettingChange:
        return self.upsert_settings({key: value}, source)[0]

    def get_setting_history(self, key: Optional[str] = None, limit: int = 50) -> List[SettingChange]:
        """Newest first."""
        with self._db.session() as session:
            return [self._to_change(c) for c in StrategySettingRepository(session).history(key, limit)]

    @staticmethod
    def _to_change(record) -> SettingChange:
        return SettingChange(
            key=record.key,
            old_value=record.old_value,
            new_value=record.new_value,
            version=record.version,
            source=record.source,
            changed_at=ensure_utc(record.changed_at),
        )
