"""
Execution Engine - Order Lifecycle Manager.

============================================================
PURPOSE
============================================================
Turns TradeIntents into confirmed fills.

RESPONSIBILITIES:
- Post-only maker order at a small offset from the book
- Poll until filled or the fill timeout expires
- Stale orders: cancel, record the executed part, replace the
  remainder with a market order
- Record Trades from exchange-reported fills only

SAFETY CONSTRAINTS:
- At most one in-flight order per symbol (per-symbol lock)
- Sells never exceed the free base-asset balance
- A fill is recorded once per exchange order id
- Bounded polling everywhere

============================================================
ORDER LIFECYCLE
============================================================
PENDING -> PARTIALLY_FILLED/FILLED
PENDING/PARTIALLY_FILLED -> STALE -> CANCELLED -> market order

============================================================
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence
from dataclasses import dataclass, field

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.exceptions import AuthenticationError, ExchangeError, SymbolBusyError
from monitoring.models import EventSeverity, EventType, TradingEvent
from monitoring.notifier import EventPublisher, NullEventPublisher

from .config import ExecutionEngineConfig
from .gateway import ExchangeGateway
from .state_machine import OrderStateMachine, StateTransitionEvent
from .types import (
    OpenOrder,
    OrderSide,
    OrderState,
    OrderStatusReport,
    OrderType,
    TradeFill,
)

if TYPE_CHECKING:
    from storage.ledger import TradingLedger
    from strategy_engine.types import TradeIntent


logger = logging.getLogger(__name__)

ZERO = Decimal("0")


# ============================================================
# EXECUTION REPORT
# ============================================================

class ExecutionStatus(Enum):
    """Final outcome of one intent."""

    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    UNFILLED = "unfilled"
    REJECTED = "rejected"
    """Refused before anything reached the exchange."""

    FAILED = "failed"
    """Exchange error while placing or tracking."""

    DRY_RUN = "dry_run"


@dataclass
class ExecutionReport:
    """What happened to one intent."""

    symbol: str
    side: OrderSide
    requested_quantity: Decimal
    status: ExecutionStatus
    filled_quantity: Decimal = ZERO
    average_price: Optional[Decimal] = None
    fee: Decimal = ZERO
    order_ids: List[str] = field(default_factory=list)
    """Maker order first, then the replacement market order if any."""

    replaced_with_market: bool = False
    error_code: Optional[str] = None
    message: str = ""
    transitions: List[StateTransitionEvent] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status in (ExecutionStatus.FILLED, ExecutionStatus.PARTIALLY_FILLED)

    def add_fill(self, quantity: Decimal, price: Optional[Decimal], fee: Decimal) -> None:
        """Merge one order's fill into the totals (volume-weighted price)."""
        if quantity <= 0 or price is None:
            return
        total = self.filled_quantity + quantity
        previous = self.filled_quantity * (self.average_price or ZERO)
        self.average_price = (previous + quantity * price) / total
        self.filled_quantity = total
        self.fee += fee


# ============================================================
# ORDER LIFECYCLE MANAGER
# ============================================================

class OrderLifecycleManager:
    """
    Executes intents against the exchange gateway.

    Example:
        manager = OrderLifecycleManager(gateway, ledger, config)
        reports = await manager.execute_intents(result.intents)
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        ledger: "TradingLedger",
        config: Optional[ExecutionEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self._gateway = gateway
        self._ledger = ledger
        self._config = config or ExecutionEngineConfig()
        self._lifecycle = self._config.lifecycle
        self._clock = clock or SystemClock()
        self._publisher = publisher or NullEventPublisher()

        self._locks: Dict[str, asyncio.Lock] = {}
        self._active: Dict[str, OpenOrder] = {}

    # --------------------------------------------------------
    # PUBLIC API
    # --------------------------------------------------------

    def is_symbol_busy(self, symbol: str) -> bool:
        lock = self._locks.get(symbol)
        return lock is not None and lock.locked()

    async def execute(self, intent: "TradeIntent") -> ExecutionReport:
        """
        Execute one intent to completion.

        Raises:
            SymbolBusyError: another intent for the symbol is in flight
        """
        lock = self._locks.setdefault(intent.symbol, asyncio.Lock())
        if lock.locked():
            raise SymbolBusyError(intent.symbol)

        async with lock:
            return await self._execute_locked(intent)

    async def execute_intents(self, intents: Sequence["TradeIntent"]) -> List[ExecutionReport]:
        """
        Execute intents, symbols concurrently.

        Returns one report per intent, in input order.
        """
        if not intents:
            return []

        async def run(intent: "TradeIntent") -> ExecutionReport:
            try:
                return await self.execute(intent)
            except SymbolBusyError as e:
                logger.warning(f"Rejected {intent.side.value} {intent.symbol}: {e}")
                return ExecutionReport(
                    symbol=intent.symbol,
                    side=intent.side,
                    requested_quantity=intent.quantity,
                    status=ExecutionStatus.REJECTED,
                    message=str(e),
                )

        reports = await asyncio.gather(*(run(i) for i in intents))
        filled = sum(1 for r in reports if r.succeeded)
        logger.info(f"Executed {len(intents)} intents: {filled} with fills")
        return list(reports)

    async def sweep_stale_orders(self) -> List[str]:
        """
        Cancel exchange open orders older than the fill timeout.

        Orders on symbols this manager is working are left alone.
        Executed parts of swept orders are recorded.

        Returns:
            Ids of the cancelled orders
        """
        timeout = timedelta(seconds=self._lifecycle.fill_timeout_seconds)
        now = self._clock.now()
        cancelled: List[str] = []

        for order in await self._gateway.get_open_orders():
            if order.opened_at is None or order.order_id in self._active:
                continue
            if self.is_symbol_busy(order.symbol):
                continue
            age = now - ensure_utc(order.opened_at)
            if age < timeout:
                continue

            try:
                if not await self._gateway.cancel_order(order.symbol, order.order_id):
                    continue
                cancelled.append(order.order_id)
                logger.info(
                    f"Swept stale order {order.order_id} ({order.symbol}), "
                    f"age {age.total_seconds() / 60:.0f} min"
                )
                final = await self._gateway.get_order_status(order.symbol, order.order_id)
                self._record_fill(
                    final.order_id, final.symbol, final.side,
                    final.filled_quantity, final.average_price, final.fee,
                )
            except AuthenticationError:
                raise
            except ExchangeError as e:
                logger.warning(f"Sweep of {order.order_id} ({order.symbol}) failed: {e.code} {e}")

        return cancelled

    # --------------------------------------------------------
    # EXECUTION
    # --------------------------------------------------------

    async def _execute_locked(self, intent: "TradeIntent") -> ExecutionReport:
        report = ExecutionReport(
            symbol=intent.symbol,
            side=intent.side,
            requested_quantity=intent.quantity,
            status=ExecutionStatus.UNFILLED,
        )

        if self._config.dry_run:
            report.status = ExecutionStatus.DRY_RUN
            report.message = f"dry run: {intent.side.value} {intent.quantity} {intent.symbol}"
            logger.info(report.message)
            return report

        try:
            quantity = await self._executable_quantity(intent)
            if quantity <= 0:
                report.status = ExecutionStatus.REJECTED
                report.message = "quantity below exchange minimum after rounding"
                logger.warning(f"Rejected {intent.side.value} {intent.symbol}: {report.message}")
                return report

            order = await self._post_maker_order(intent.symbol, intent.side, quantity)
            report.order_ids.append(order.order_id)
            self._active[order.order_id] = order
            try:
                await self._track(order, report)
            finally:
                self._active.pop(order.order_id, None)

        except ExchangeError as e:
            report.status = ExecutionStatus.FAILED
            report.error_code = e.code
            report.message = str(e)
            await self._on_exchange_error(intent, e)

        return report

    async def _executable_quantity(self, intent: "TradeIntent") -> Decimal:
        """Lot-rounded quantity; sells clamped to the free base balance."""
        quantity = intent.quantity
        if intent.side == OrderSide.SELL:
            base = self._gateway.symbol_mapper.base_asset(intent.symbol)
            balances = await self._gateway.get_balances()
            balance = balances.get(base)
            free = balance.free if balance else ZERO
            if free < quantity:
                logger.warning(
                    f"Sell {intent.symbol} clamped from {quantity} to free balance {free}"
                )
                quantity = free
        return await self._gateway.round_quantity(intent.symbol, quantity)

    async def _post_maker_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> OpenOrder:
        ticker = await self._gateway.get_ticker(symbol)
        offset = self._lifecycle.maker_offset_pct
        if side == OrderSide.BUY:
            raw_price = ticker.ask * (Decimal("1") - offset)
        else:
            raw_price = ticker.bid * (Decimal("1") + offset)
        price = await self._gateway.round_price(symbol, raw_price, side)

        order_id = await self._gateway.place_limit_order(
            symbol, side, quantity, price, post_only=self._lifecycle.post_only,
        )
        return OpenOrder(
            order_id=order_id,
            symbol=symbol,
            side=side,
            quantity=quantity,
            order_type=OrderType.LIMIT,
            limit_price=price,
            posted_at=self._clock.now(),
        )

    async def _track(self, order: OpenOrder, report: ExecutionReport) -> None:
        """Poll the maker order until filled, cancelled by the exchange, or timed out."""
        machine = OrderStateMachine(order, now=self._clock.now)
        machine.add_listener(report.transitions.append)
        deadline = order.posted_at + timedelta(seconds=self._lifecycle.fill_timeout_seconds)

        while True:
            await self._clock.sleep(self._lifecycle.poll_interval_seconds)

            try:
                status = await self._gateway.get_order_status(order.symbol, order.order_id)
            except AuthenticationError:
                raise
            except ExchangeError as e:
                logger.warning(f"Status poll for {order.order_id} failed: {e.code} {e}")
                status = None

            if status is not None:
                self._apply_status(machine, status)

                if order.status == OrderState.FILLED:
                    self._record_order_fill(order)
                    report.add_fill(order.filled_quantity, order.average_price, order.fee)
                    report.status = ExecutionStatus.FILLED
                    return

                if status.status == OrderState.CANCELLED:
                    await self._handle_stale(machine, report, "cancelled by exchange", already_cancelled=True)
                    return

            if self._clock.now() >= deadline:
                await self._handle_stale(machine, report, "fill timeout")
                return

    def _apply_status(self, machine: OrderStateMachine, status: OrderStatusReport) -> None:
        order = machine.order
        previous_filled = order.filled_quantity
        order.apply_report(status)

        if status.status == OrderState.FILLED:
            machine.mark_filled()
        elif order.filled_quantity > previous_filled and order.filled_quantity < order.quantity:
            machine.mark_partially_filled()

    async def _handle_stale(
        self,
        machine: OrderStateMachine,
        report: ExecutionReport,
        reason: str,
        already_cancelled: bool = False,
    ) -> None:
        """
        Cancel the maker order and replace the remainder with a market order.

        Steps: cancel, re-query, record the executed part, slippage
        guard, market order for exactly quantity - filled.
        """
        order = machine.order
        machine.mark_stale(reason)

        if not already_cancelled:
            await self._gateway.cancel_order(order.symbol, order.order_id)

        final = await self._gateway.get_order_status(order.symbol, order.order_id)
        order.apply_report(final)

        if final.status == OrderState.FILLED:
            # Filled between the last poll and the cancel
            machine.mark_filled("filled during cancel")
            self._record_order_fill(order)
            report.add_fill(order.filled_quantity, order.average_price, order.fee)
            report.status = ExecutionStatus.FILLED
            return

        if final.status != OrderState.CANCELLED:
            # Maker order still resting: a replacement would put two orders on the symbol
            report.add_fill(order.filled_quantity, order.average_price, order.fee)
            report.status = (
                ExecutionStatus.PARTIALLY_FILLED if order.filled_quantity > 0 else ExecutionStatus.UNFILLED
            )
            report.message = f"cancel of {order.order_id} not confirmed, left for the stale-order sweep"
            logger.warning(f"{order.symbol}: {report.message}")
            await self._publish(
                EventType.ORDER_FAILED,
                EventSeverity.ERROR,
                f"Cancel unconfirmed for {order.symbol}",
                report.message,
                symbol=order.symbol,
                details={"order_id": order.order_id, "exchange_status": final.status.value},
            )
            return

        machine.mark_cancelled(reason)
        self._record_order_fill(order)
        report.add_fill(order.filled_quantity, order.average_price, order.fee)

        remaining = order.quantity - order.filled_quantity
        if remaining <= 0:
            report.status = ExecutionStatus.FILLED
            return

        remaining = await self._gateway.round_quantity(order.symbol, remaining)
        if remaining <= 0:
            report.status = ExecutionStatus.PARTIALLY_FILLED if report.filled_quantity > 0 else ExecutionStatus.UNFILLED
            report.message = "remainder below exchange minimum"
            logger.info(f"{order.symbol}: remainder of {order.order_id} below minimum, not replaced")
            return

        if not await self._within_slippage(order, report):
            return

        await self._replace_with_market(order, remaining, report)

    async def _within_slippage(self, order: OpenOrder, report: ExecutionReport) -> bool:
        max_slippage = self._lifecycle.max_slippage_pct
        if max_slippage is None or order.limit_price is None or order.limit_price <= 0:
            return True

        ticker = await self._gateway.get_ticker(order.symbol)
        market = ticker.price_for(order.side)
        if order.side == OrderSide.BUY:
            slippage = (market - order.limit_price) / order.limit_price * Decimal("100")
        else:
            slippage = (order.limit_price - market) / order.limit_price * Decimal("100")

        if slippage <= max_slippage:
            return True

        report.status = ExecutionStatus.PARTIALLY_FILLED if report.filled_quantity > 0 else ExecutionStatus.UNFILLED
        report.message = f"market replacement skipped: slippage {slippage:.3f}% > {max_slippage}%"
        logger.warning(f"{order.symbol}: {report.message}")
        await self._publish(
            EventType.ORDER_FAILED,
            EventSeverity.WARNING,
            f"Replacement skipped for {order.symbol}",
            report.message,
            symbol=order.symbol,
            details={"limit_price": str(order.limit_price), "market_price": str(market)},
        )
        return False

    async def _replace_with_market(self, stale: OpenOrder, quantity: Decimal, report: ExecutionReport) -> None:
        market_id = await self._gateway.place_market_order(stale.symbol, stale.side, quantity)
        report.order_ids.append(market_id)
        report.replaced_with_market = True

        await self._publish(
            EventType.ORDER_REPLACED,
            EventSeverity.INFO,
            f"Maker order replaced for {stale.symbol}",
            f"{stale.order_id} went stale; market {stale.side.value} {quantity} placed as {market_id}",
            symbol=stale.symbol,
        )

        status: Optional[OrderStatusReport] = None
        for _ in range(self._lifecycle.market_fill_checks):
            await self._clock.sleep(self._lifecycle.market_poll_interval_seconds)
            try:
                status = await self._gateway.get_order_status(stale.symbol, market_id)
            except AuthenticationError:
                raise
            except ExchangeError as e:
                logger.warning(f"Status poll for market order {market_id} failed: {e.code} {e}")
                continue
            if status.status in (OrderState.FILLED, OrderState.CANCELLED):
                break

        if status is not None:
            self._record_fill(
                market_id, stale.symbol, stale.side,
                status.filled_quantity, status.average_price, status.fee,
            )
            report.add_fill(status.filled_quantity, status.average_price, status.fee)

        if report.filled_quantity >= report.requested_quantity or (
            status is not None and status.status == OrderState.FILLED
        ):
            report.status = ExecutionStatus.FILLED
        elif report.filled_quantity > 0:
            report.status = ExecutionStatus.PARTIALLY_FILLED
        else:
            report.status = ExecutionStatus.UNFILLED

        if status is None or status.status != OrderState.FILLED:
            report.message = f"market order {market_id} not confirmed filled"
            await self._publish(
                EventType.ORDER_FAILED,
                EventSeverity.ERROR,
                f"Market order unconfirmed for {stale.symbol}",
                report.message,
                symbol=stale.symbol,
            )

    # --------------------------------------------------------
    # LEDGER
    # --------------------------------------------------------

    def _record_order_fill(self, order: OpenOrder) -> None:
        self._record_fill(
            order.order_id, order.symbol, order.side,
            order.filled_quantity, order.average_price, order.fee,
        )

    def _record_fill(
        self,
        order_id: str,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Optional[Decimal],
        fee: Decimal,
    ) -> None:
        if quantity <= 0:
            return
        if price is None:
            logger.error(
                f"Order {order_id} ({symbol}) reports {quantity} filled without a price; "
                f"not recorded, reconciliation will correct the quantity"
            )
            return

        self._ledger.record_fill(TradeFill(
            symbol=symbol,
            side=side,
            quantity=quantity,
            price=price,
            fee=fee,
            exchange_order_id=order_id,
            executed_at=self._clock.now(),
        ))

    # --------------------------------------------------------
    # EVENTS
    # --------------------------------------------------------

    async def _on_exchange_error(self, intent: "TradeIntent", error: ExchangeError) -> None:
        if isinstance(error, AuthenticationError):
            logger.critical(f"Authentication failure executing {intent.symbol}: {error.code} {error}")
            await self._publish(
                EventType.AUTHENTICATION_FAILURE,
                EventSeverity.CRITICAL,
                "Exchange authentication failed",
                str(error),
                symbol=intent.symbol,
                details={"code": error.code},
            )
            return

        logger.error(f"Order for {intent.side.value} {intent.symbol} failed: {error.code} {error}")
        await self._publish(
            EventType.ORDER_FAILED,
            EventSeverity.ERROR,
            f"Order failed for {intent.symbol}",
            str(error),
            symbol=intent.symbol,
            details={"code": error.code, "side": intent.side.value, "quantity": str(intent.quantity)},
        )

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
