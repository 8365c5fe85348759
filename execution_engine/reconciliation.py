"""
Execution Engine - Reconciliation.

============================================================
PURPOSE
============================================================
Keeps the position ledger consistent with exchange balances.

RESPONSIBILITIES:
- Create positions for untracked in-universe balances
- Correct quantity drift beyond epsilon
- Close in-universe positions whose balance is gone
- Flag balances and positions outside the universe
- Record NAV, raise low-balance and drawdown alerts
- Sweep stale exchange orders

CRITICAL INVARIANT:
    "Exchange balance is authoritative for quantity;
     the ledger is authoritative for cost basis."

Positions outside the universe are never modified.

============================================================
"""

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence
from decimal import Decimal
from dataclasses import dataclass, field
from enum import Enum

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.exceptions import AuthenticationError, ExchangeError
from monitoring.models import EventSeverity, EventType, TradingEvent
from monitoring.notifier import EventPublisher, NullEventPublisher

from .config import ReconciliationConfig
from .gateway import ExchangeGateway
from .portfolio import QUOTE_ASSET, NavBreakdown, compute_nav

if TYPE_CHECKING:
    from storage.ledger import TradingLedger
    from .order_manager import OrderLifecycleManager


logger = logging.getLogger(__name__)


# ============================================================
# RECONCILIATION TYPES
# ============================================================

class MismatchType(Enum):
    """Types of reconciliation mismatches."""

    MISSING_POSITION = "MISSING_POSITION"
    """Exchange balance with no open position."""

    QUANTITY_DRIFT = "QUANTITY_DRIFT"
    """Position quantity differs from balance."""

    POSITION_WITHOUT_BALANCE = "POSITION_WITHOUT_BALANCE"
    """Open position whose balance is below dust."""

    UNTRACKED_BALANCE = "UNTRACKED_BALANCE"
    """Balance in an asset outside the universe."""

    UNTRACKED_POSITION = "UNTRACKED_POSITION"
    """Open position in a symbol outside the universe."""


class MismatchSeverity(Enum):
    """Severity of mismatch."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class ReconciliationMismatch:
    """A detected mismatch."""

    mismatch_type: MismatchType
    severity: MismatchSeverity
    symbol: str
    expected_value: Optional[str] = None
    """Ledger value."""

    actual_value: Optional[str] = None
    """Exchange value."""

    message: str = ""
    auto_resolved: bool = False
    resolution: Optional[str] = None


@dataclass
class ReconciliationResult:
    """Result of a reconciliation run."""

    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    balances_checked: int = 0
    positions_created: int = 0
    positions_adjusted: int = 0
    positions_closed: int = 0
    flagged: int = 0
    nav: Optional[NavBreakdown] = None
    swept_orders: List[str] = field(default_factory=list)
    mismatches: List[ReconciliationMismatch] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def unresolved_count(self) -> int:
        return sum(1 for m in self.mismatches if not m.auto_resolved)

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def summary(self) -> str:
        nav = f", NAV ${self.nav.nav:.2f}" if self.nav else ""
        return (
            f"{self.run_id}: created {self.positions_created}, adjusted {self.positions_adjusted}, "
            f"closed {self.positions_closed}, flagged {self.flagged}{nav}"
        )


# ============================================================
# POSITION RECONCILER
# ============================================================

class PositionReconciler:
    """
    Diffs the open-position ledger against exchange balances.

    Example:
        reconciler = PositionReconciler(gateway, ledger, config)
        result = await reconciler.reconcile(settings.universe)
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        ledger: "TradingLedger",
        config: Optional[ReconciliationConfig] = None,
        clock: Optional[ClockProtocol] = None,
        publisher: Optional[EventPublisher] = None,
        order_manager: Optional["OrderLifecycleManager"] = None,
    ):
        self._gateway = gateway
        self._ledger = ledger
        self._config = config or ReconciliationConfig()
        self._clock = clock or SystemClock()
        self._publisher = publisher or NullEventPublisher()
        self._order_manager = order_manager

        self._history: List[ReconciliationResult] = []
        self._run_counter = 0
        self._lock = asyncio.Lock()

    async def reconcile(self, universe: Sequence[str]) -> ReconciliationResult:
        """
        Run a reconciliation pass.

        Raises:
            AuthenticationError: credentials rejected (after publishing an event)
        """
        async with self._lock:
            self._run_counter += 1
            result = ReconciliationResult(
                run_id=f"REC_{self._run_counter:06d}",
                started_at=self._clock.now(),
            )
            logger.debug(f"Starting reconciliation run {result.run_id}")

            try:
                snapshot_at = self._clock.now()
                balances = await self._gateway.get_balances()
                await self._reconcile_positions(set(universe), balances, snapshot_at, result)
                await self._record_nav(balances, result)
                if self._config.sweep_stale_orders and self._order_manager is not None:
                    result.swept_orders = await self._order_manager.sweep_stale_orders()
            except AuthenticationError as e:
                result.errors.append(f"Authentication failed: {e}")
                logger.critical(f"Reconciliation {result.run_id}: authentication failed: {e}")
                await self._publish(
                    EventType.AUTHENTICATION_FAILURE,
                    EventSeverity.CRITICAL,
                    "Exchange authentication failed",
                    str(e),
                )
                self._finish(result)
                raise
            except ExchangeError as e:
                result.errors.append(f"Exchange error: {e.code} {e}")
                logger.error(f"Reconciliation {result.run_id} failed: {e.code} {e}")

            self._finish(result)
            logger.info(
                f"Reconciliation {result.run_id} complete: "
                f"{result.balances_checked} balances, "
                f"{result.positions_created} created, "
                f"{result.positions_adjusted} adjusted, "
                f"{result.positions_closed} closed, "
                f"{result.flagged} flagged"
            )
            return result

    # --------------------------------------------------------
    # POSITION PASS
    # --------------------------------------------------------

    async def _reconcile_positions(
        self,
        universe: set,
        balances: Dict,
        snapshot_at: datetime,
        result: ReconciliationResult,
    ) -> None:
        holdings: Dict[str, Decimal] = {}
        for asset, balance in balances.items():
            if asset == QUOTE_ASSET or balance.total < self._config.dust_threshold:
                continue
            holdings[f"{asset}-{QUOTE_ASSET}"] = balance.total
        result.balances_checked = len(holdings)

        positions = {p.symbol: p for p in self._ledger.get_open_positions()}

        for symbol, quantity in sorted(holdings.items()):
            if symbol not in universe:
                await self._flag(
                    result,
                    MismatchType.UNTRACKED_BALANCE,
                    symbol,
                    f"{symbol} balance {quantity} outside the trading universe",
                    actual=str(quantity),
                )
                continue

            position = positions.get(symbol)
            if position is None:
                await self._create_position(symbol, quantity, result)
            elif abs(position.quantity - quantity) > self._config.quantity_epsilon:
                self._ledger.adjust_position_quantity(symbol, quantity, reason="reconciliation")
                result.positions_adjusted += 1
                message = f"{symbol} quantity {position.quantity} -> {quantity} from exchange balance"
                result.mismatches.append(ReconciliationMismatch(
                    mismatch_type=MismatchType.QUANTITY_DRIFT,
                    severity=MismatchSeverity.WARNING,
                    symbol=symbol,
                    expected_value=str(position.quantity),
                    actual_value=str(quantity),
                    message=message,
                    auto_resolved=True,
                    resolution="Adjusted to exchange balance",
                ))
                logger.warning(f"Reconciliation drift: {message}")
                await self._publish(
                    EventType.RECONCILIATION_DRIFT,
                    EventSeverity.WARNING,
                    f"Quantity drift on {symbol}",
                    message,
                    symbol=symbol,
                )

        for symbol, position in sorted(positions.items()):
            if symbol not in universe:
                if symbol not in holdings:
                    await self._flag(
                        result,
                        MismatchType.UNTRACKED_POSITION,
                        symbol,
                        f"Open position {symbol} outside the trading universe",
                        expected=str(position.quantity),
                    )
                continue
            if symbol not in holdings:
                if ensure_utc(position.opened_at) > ensure_utc(snapshot_at):
                    # Bought after the balance snapshot was taken
                    logger.info(f"Reconciliation: {symbol} opened after the balance snapshot, left open")
                    continue
                self._ledger.close_position(symbol, reason="balance below dust")
                result.positions_closed += 1
                result.mismatches.append(ReconciliationMismatch(
                    mismatch_type=MismatchType.POSITION_WITHOUT_BALANCE,
                    severity=MismatchSeverity.WARNING,
                    symbol=symbol,
                    expected_value=str(position.quantity),
                    actual_value="0",
                    message=f"{symbol} position open but exchange balance is below dust",
                    auto_resolved=True,
                    resolution="Position closed",
                ))
                logger.warning(f"Reconciliation closed {symbol}: no exchange balance")

    async def _create_position(self, symbol: str, quantity: Decimal, result: ReconciliationResult) -> None:
        try:
            ticker = await self._gateway.get_ticker(symbol)
        except AuthenticationError:
            raise
        except ExchangeError as e:
            result.mismatches.append(ReconciliationMismatch(
                mismatch_type=MismatchType.MISSING_POSITION,
                severity=MismatchSeverity.ERROR,
                symbol=symbol,
                actual_value=str(quantity),
                message=f"No price for {symbol} ({e.code}); position creation deferred",
            ))
            logger.error(f"Reconciliation: cannot price {symbol}, deferring creation: {e}")
            return

        self._ledger.open_position(
            symbol,
            quantity,
            ticker.last,
            metadata={"origin": "reconciliation", "entry_price_estimated": True},
        )
        result.positions_created += 1
        result.mismatches.append(ReconciliationMismatch(
            mismatch_type=MismatchType.MISSING_POSITION,
            severity=MismatchSeverity.WARNING,
            symbol=symbol,
            actual_value=str(quantity),
            message=f"Untracked {symbol} balance {quantity}",
            auto_resolved=True,
            resolution=f"Position created at market price {ticker.last}",
        ))

    async def _flag(
        self,
        result: ReconciliationResult,
        mismatch_type: MismatchType,
        symbol: str,
        message: str,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
    ) -> None:
        result.flagged += 1
        result.mismatches.append(ReconciliationMismatch(
            mismatch_type=mismatch_type,
            severity=MismatchSeverity.INFO,
            symbol=symbol,
            expected_value=expected,
            actual_value=actual,
            message=message,
            resolution="Left untouched",
        ))
        logger.info(f"Reconciliation flag: {message}")
        await self._publish(
            EventType.UNTRACKED_POSITION,
            EventSeverity.INFO,
            f"Untracked holding {symbol}",
            message,
            symbol=symbol,
        )

    # --------------------------------------------------------
    # NAV AND ALERTS
    # --------------------------------------------------------

    async def _record_nav(self, balances: Dict, result: ReconciliationResult) -> None:
        nav = await compute_nav(self._gateway, self._ledger.get_open_positions(), balances)
        result.nav = nav
        self._ledger.record_nav(nav.nav, nav.cash, nav.positions_value)

        if nav.nav < self._config.low_balance_usd:
            await self._publish(
                EventType.LOW_BALANCE,
                EventSeverity.WARNING,
                "Low balance",
                f"NAV ${nav.nav:.2f} below ${self._config.low_balance_usd}",
                details={"nav": str(nav.nav), "cash": str(nav.cash)},
            )

        history = self._ledger.get_nav_history(self._config.nav_history_window)
        peak = max((s.nav for s in history), default=nav.nav)
        if peak > 0:
            drawdown_pct = (peak - nav.nav) / peak * Decimal("100")
            if drawdown_pct >= self._config.drawdown_alert_pct:
                await self._publish(
                    EventType.LARGE_DRAWDOWN,
                    EventSeverity.ERROR,
                    "Large drawdown",
                    f"NAV ${nav.nav:.2f} is {drawdown_pct:.1f}% below recent peak ${peak:.2f}",
                    details={"nav": str(nav.nav), "peak": str(peak), "drawdown_pct": f"{drawdown_pct:.2f}"},
                )

    def _finish(self, result: ReconciliationResult) -> None:
        result.completed_at = self._clock.now()
        self._history.append(result)
        if len(self._history) > self._config.max_history:
            self._history.pop(0)

    async def _publish(
        self,
        event_type: EventType,
        severity: EventSeverity,
        title: str,
        message: str,
        symbol: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        try:
            await self._publisher.publish(TradingEvent(
                event_type=event_type,
                severity=severity,
                title=title,
                message=message,
                details=details or {},
                timestamp=self._clock.now(),
                symbol=symbol,
            ))
        except Exception as e:
            logger.error(f"Event publish failed: {e}")

    # --------------------------------------------------------
    # HISTORY
    # --------------------------------------------------------

    def get_last_result(self) -> Optional[ReconciliationResult]:
        return self._history[-1] if self._history else None

    def get_history(self, limit: int = 10) -> List[ReconciliationResult]:
        return self._history[-limit:]
