"""
Order Lifecycle Tests.

============================================================
PURPOSE
============================================================
Tests for the order state machine and the lifecycle manager
running against the mock exchange with a mock clock.

TEST CATEGORIES:
- State machine guards
- Maker fills
- Stale orders and market replacement
- Safety: per-symbol lock, sell clamp, minimum size
- Sweep of orphaned resting orders

============================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from core.clock import MockClock
from core.exceptions import OrderLifecycleError
from execution_engine.adapters import FILL_NEVER, FILL_PARTIAL, MockConfig, MockExchangeAdapter
from execution_engine.config import ExecutionEngineConfig
from execution_engine.gateway import ExchangeGateway
from execution_engine.order_manager import ExecutionStatus, OrderLifecycleManager
from execution_engine.state_machine import OrderStateMachine
from execution_engine.types import OpenOrder, OrderSide, OrderState, OrderType, TradeFill
from monitoring.models import EventType
from monitoring.notifier import LoggingEventPublisher
from storage.database import Database
from storage.ledger import TradingLedger
from strategy_engine.types import IntentAction, TradeIntent


NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def buy(quantity: str, symbol: str = "BTC-USD") -> TradeIntent:
    return TradeIntent(
        symbol=symbol,
        side=OrderSide.BUY,
        quantity=Decimal(quantity),
        reference_price=Decimal("50000"),
        action=IntentAction.ENTER,
    )


def sell(quantity: str, symbol: str = "BTC-USD") -> TradeIntent:
    return TradeIntent(
        symbol=symbol,
        side=OrderSide.SELL,
        quantity=Decimal(quantity),
        reference_price=Decimal("50000"),
        action=IntentAction.EXIT,
    )


class Harness:
    """Mock exchange, ledger and manager wired to one mock clock."""

    def __init__(self, mock_config: MockConfig = None, config: ExecutionEngineConfig = None):
        self.clock = MockClock(NOW)
        self.exchange = MockExchangeAdapter(mock_config or MockConfig(
            initial_balances={"USD": Decimal("10000")},
        ))
        self.exchange.set_ticker("BTC-USD", Decimal("50000"), Decimal("50000"), Decimal("50000"))
        self.config = config or ExecutionEngineConfig.for_testing()
        self.ledger = TradingLedger(Database.in_memory(), self.clock)
        self.publisher = LoggingEventPublisher()
        self.gateway = ExchangeGateway(self.exchange, self.config, self.ledger, self.clock)
        self.manager = OrderLifecycleManager(
            self.gateway, self.ledger, self.config, self.clock, self.publisher,
        )

    def event_types(self):
        return [e.event_type for e in self.publisher.events]


# ============================================================
# STATE MACHINE TESTS
# ============================================================


class TestOrderStateMachine:
    """Tests for order state transitions."""

    def make_machine(self) -> OrderStateMachine:
        order = OpenOrder(order_id="O1", symbol="BTC-USD", side=OrderSide.BUY, quantity=Decimal("1"))
        return OrderStateMachine(order)

    def test_happy_path(self):
        """Test PENDING -> PARTIALLY_FILLED -> FILLED."""
        machine = self.make_machine()

        machine.mark_partially_filled()
        machine.mark_filled()

        assert machine.current_state == OrderState.FILLED
        assert machine.is_terminal()
        assert len(machine.history) == 2

    def test_stale_path(self):
        """Test PENDING -> STALE -> CANCELLED."""
        machine = self.make_machine()

        machine.mark_stale()
        machine.mark_cancelled()

        assert machine.current_state == OrderState.CANCELLED

    def test_terminal_is_final(self):
        """Test no transition leaves a terminal state."""
        machine = self.make_machine()
        machine.mark_filled()

        with pytest.raises(OrderLifecycleError):
            machine.mark_cancelled()

    def test_stale_cannot_partially_fill(self):
        """Test STALE only resolves to FILLED or CANCELLED."""
        allowed, _ = OrderStateMachine.can_transition(OrderState.STALE, OrderState.PARTIALLY_FILLED)

        assert not allowed

    def test_listener_notified(self):
        """Test listeners receive each transition."""
        machine = self.make_machine()
        seen = []
        machine.add_listener(seen.append)

        machine.mark_stale("fill timeout")

        assert seen[0].from_state == OrderState.PENDING
        assert seen[0].to_state == OrderState.STALE
        assert seen[0].reason == "fill timeout"


# ============================================================
# MAKER FILL TESTS
# ============================================================


class TestMakerFills:
    """Tests for post-only orders that fill."""

    @pytest.mark.asyncio
    async def test_buy_fills_at_maker_price(self):
        """Test a buy rests 0.1% under the ask and is recorded on fill."""
        harness = Harness()

        report = await harness.manager.execute(buy("0.01"))

        assert report.status == ExecutionStatus.FILLED
        assert report.filled_quantity == Decimal("0.01")
        assert report.average_price == Decimal("49950.0")
        assert not report.replaced_with_market
        submitted = harness.exchange.calls("submit_order")[0]
        assert submitted["post_only"] is True
        assert submitted["price"] == Decimal("49950.0")

        position = harness.ledger.get_open_position("BTC-USD")
        assert position.quantity == Decimal("0.01")
        assert position.entry_price == Decimal("49950.0")
        assert len(harness.ledger.get_trades()) == 1

    @pytest.mark.asyncio
    async def test_sell_priced_above_bid(self):
        """Test a sell rests 0.1% over the bid."""
        harness = Harness()
        harness.exchange.set_balance("BTC", Decimal("1"))

        await harness.manager.execute(sell("0.01"))

        assert harness.exchange.calls("submit_order")[0]["price"] == Decimal("50050.0")

    @pytest.mark.asyncio
    async def test_sell_clamped_to_free_balance(self):
        """Test a sell never exceeds the free base balance."""
        harness = Harness()
        harness.exchange.set_balance("BTC", Decimal("0.005"))

        report = await harness.manager.execute(sell("0.01"))

        assert harness.exchange.calls("submit_order")[0]["quantity"] == Decimal("0.005")
        assert report.filled_quantity == Decimal("0.005")

    @pytest.mark.asyncio
    async def test_below_minimum_rejected(self):
        """Test a quantity that rounds to zero never reaches the exchange."""
        harness = Harness()

        report = await harness.manager.execute(buy("0.00001"))

        assert report.status == ExecutionStatus.REJECTED
        assert harness.exchange.calls("submit_order") == []

    @pytest.mark.asyncio
    async def test_dry_run(self):
        """Test dry run places nothing."""
        config = ExecutionEngineConfig.for_testing()
        config.dry_run = True
        harness = Harness(config=config)

        report = await harness.manager.execute(buy("0.01"))

        assert report.status == ExecutionStatus.DRY_RUN
        assert harness.exchange.calls("submit_order") == []


# ============================================================
# STALE ORDER TESTS
# ============================================================


class TestStaleOrders:
    """Tests for timeout handling and market replacement."""

    @pytest.mark.asyncio
    async def test_partial_fill_replaced_with_exact_remainder(self):
        """Test a half-filled maker order is topped up by a market order."""
        harness = Harness(MockConfig(
            initial_balances={"USD": Decimal("10000")},
            limit_fill_mode=FILL_PARTIAL,
        ))

        report = await harness.manager.execute(buy("0.02"))

        submits = harness.exchange.calls("submit_order")
        assert len(submits) == 2
        assert submits[1]["quantity"] == Decimal("0.01")
        assert report.status == ExecutionStatus.FILLED
        assert report.replaced_with_market
        assert report.filled_quantity == Decimal("0.02")
        assert report.average_price == Decimal("49975")
        assert [t.to_state for t in report.transitions] == [
            OrderState.PARTIALLY_FILLED,
            OrderState.STALE,
            OrderState.CANCELLED,
        ]
        assert EventType.ORDER_REPLACED in harness.event_types()

        position = harness.ledger.get_open_position("BTC-USD")
        assert position.quantity == Decimal("0.02")
        assert len(harness.ledger.get_trades()) == 2

    @pytest.mark.asyncio
    async def test_timeout_respected(self):
        """Test the maker order rests for the full fill timeout."""
        harness = Harness(MockConfig(
            initial_balances={"USD": Decimal("10000")},
            limit_fill_mode=FILL_NEVER,
        ))

        await harness.manager.execute(buy("0.01"))

        maker_id = harness.exchange.calls("cancel_order")[0]["order_id"]
        assert harness.exchange.orders[maker_id].status == OrderState.CANCELLED
        # 6 polls of 10s to reach the 60s timeout, then one market poll
        assert harness.clock.sleep_calls[:6] == [10.0] * 6

    @pytest.mark.asyncio
    async def test_unfilled_replaced_in_full(self):
        """Test a maker order with no fills is replaced for its full quantity."""
        harness = Harness(MockConfig(
            initial_balances={"USD": Decimal("10000")},
            limit_fill_mode=FILL_NEVER,
        ))

        report = await harness.manager.execute(buy("0.02"))

        assert harness.exchange.calls("submit_order")[1]["quantity"] == Decimal("0.02")
        assert report.status == ExecutionStatus.FILLED
        assert report.average_price == Decimal("50000")
        assert [t.to_state for t in report.transitions] == [OrderState.STALE, OrderState.CANCELLED]

    @pytest.mark.asyncio
    async def test_failed_cancel_not_replaced(self):
        """Test a maker order the exchange did not cancel gets no market replacement."""
        harness = Harness(MockConfig(
            initial_balances={"USD": Decimal("10000")},
            limit_fill_mode=FILL_NEVER,
        ))
        harness.exchange.inject_error("cancel_order", "RTE_API_LIMIT")

        report = await harness.manager.execute(buy("0.02"))

        submits = harness.exchange.calls("submit_order")
        assert len(submits) == 1
        maker_id = harness.exchange.calls("cancel_order")[0]["order_id"]
        assert harness.exchange.orders[maker_id].status == OrderState.PENDING
        assert report.status == ExecutionStatus.UNFILLED
        assert not report.replaced_with_market
        assert EventType.ORDER_FAILED in harness.event_types()
        assert harness.ledger.get_trades() == []

        # The next sweep picks up the order left resting
        harness.exchange.orders[maker_id].created_at = NOW - timedelta(hours=1)
        cancelled = await harness.manager.sweep_stale_orders()

        assert cancelled == [maker_id]
        assert harness.exchange.orders[maker_id].status == OrderState.CANCELLED

    @pytest.mark.asyncio
    async def test_exchange_cancel_replaced_without_cancel_call(self):
        """Test an order cancelled by the exchange is replaced without a cancel request."""
        harness = Harness(MockConfig(
            initial_balances={"USD": Decimal("10000")},
            limit_fill_mode=FILL_NEVER,
        ))
        exchange = harness.exchange
        original_status = exchange.get_order_status

        async def cancel_resting_limit(symbol, order_id):
            if exchange.orders[order_id].order_type == OrderType.LIMIT:
                exchange.cancel_externally(order_id)
            return await original_status(symbol, order_id)

        exchange.get_order_status = cancel_resting_limit

        report = await harness.manager.execute(buy("0.02"))

        assert exchange.calls("cancel_order") == []
        market = exchange.calls("submit_order")[1]
        assert market["order_type"] == OrderType.MARKET
        assert market["quantity"] == Decimal("0.02")
        assert report.status == ExecutionStatus.FILLED
        assert harness.clock.sleep_calls[0] == 10.0

    @pytest.mark.asyncio
    async def test_slippage_guard_skips_replacement(self):
        """Test no market order when the price moved past the guard."""
        config = ExecutionEngineConfig.for_testing()
        config.lifecycle.max_slippage_pct = Decimal("0.05")
        harness = Harness(
            MockConfig(initial_balances={"USD": Decimal("10000")}, limit_fill_mode=FILL_NEVER),
            config,
        )

        report = await harness.manager.execute(buy("0.02"))

        assert len(harness.exchange.calls("submit_order")) == 1
        assert report.status == ExecutionStatus.UNFILLED
        assert EventType.ORDER_FAILED in harness.event_types()

    @pytest.mark.asyncio
    async def test_unconfirmed_market_order(self):
        """Test an unfilled market replacement is reported and alerted."""
        harness = Harness(MockConfig(
            initial_balances={"USD": Decimal("10000")},
            limit_fill_mode=FILL_NEVER,
            market_fill_mode=FILL_NEVER,
        ))

        report = await harness.manager.execute(buy("0.02"))

        assert report.status == ExecutionStatus.UNFILLED
        assert "not confirmed" in report.message
        assert EventType.ORDER_FAILED in harness.event_types()
        assert harness.ledger.get_trades() == []


# ============================================================
# FAILURE AND CONCURRENCY TESTS
# ============================================================


class TestFailures:
    """Tests for placement errors and symbol locking."""

    @pytest.mark.asyncio
    async def test_rejected_placement(self):
        """Test an exchange rejection is reported, not raised."""
        harness = Harness()
        harness.exchange.inject_error("submit_order", "VAL_INSUFFICIENT_FUNDS")

        report = await harness.manager.execute(buy("0.01"))

        assert report.status == ExecutionStatus.FAILED
        assert report.error_code == "VAL_INSUFFICIENT_FUNDS"
        assert EventType.ORDER_FAILED in harness.event_types()

    @pytest.mark.asyncio
    async def test_authentication_failure_alerts(self):
        """Test credential failures raise a critical event."""
        harness = Harness()
        harness.exchange.inject_error("submit_order", "AUT_INVALID_KEY")

        report = await harness.manager.execute(buy("0.01"))

        assert report.status == ExecutionStatus.FAILED
        assert EventType.AUTHENTICATION_FAILURE in harness.event_types()

    @pytest.mark.asyncio
    async def test_one_order_per_symbol(self):
        """Test a second intent for a busy symbol is rejected."""
        harness = Harness()

        reports = await harness.manager.execute_intents([buy("0.01"), buy("0.02")])

        assert [r.status for r in reports] == [ExecutionStatus.FILLED, ExecutionStatus.REJECTED]
        assert len(harness.exchange.calls("submit_order")) == 1
        assert not harness.manager.is_symbol_busy("BTC-USD")

    @pytest.mark.asyncio
    async def test_symbols_run_concurrently(self):
        """Test intents on different symbols all execute."""
        harness = Harness()
        harness.exchange.set_ticker("ETH-USD", Decimal("3000"), Decimal("3000"), Decimal("3000"))

        reports = await harness.manager.execute_intents([buy("0.01"), buy("0.1", "ETH-USD")])

        assert all(r.status == ExecutionStatus.FILLED for r in reports)
        assert {p.symbol for p in harness.ledger.get_open_positions()} == {"BTC-USD", "ETH-USD"}


# ============================================================
# SWEEP TESTS
# ============================================================


class TestSweep:
    """Tests for the stale-order sweep."""

    @pytest.mark.asyncio
    async def test_old_orders_cancelled_and_fills_recorded(self):
        """Test an orphaned order is cancelled and its executed part recorded."""
        harness = Harness()
        old_id = harness.exchange.add_resting_order(
            "BTC-USD", OrderSide.BUY, Decimal("0.01"), Decimal("49000"),
            created_at=NOW - timedelta(hours=2),
        )
        harness.exchange.fill_order(old_id, Decimal("0.004"))
        young_id = harness.exchange.add_resting_order(
            "BTC-USD", OrderSide.BUY, Decimal("0.01"), Decimal("49000"),
            created_at=NOW - timedelta(seconds=10),
        )

        cancelled = await harness.manager.sweep_stale_orders()

        assert cancelled == [old_id]
        assert harness.exchange.orders[young_id].status == OrderState.PENDING
        trades = harness.ledger.get_trades()
        assert len(trades) == 1
        assert trades[0].quantity == Decimal("0.004")
        assert trades[0].price == Decimal("49000")

    @pytest.mark.asyncio
    async def test_sweep_records_once(self):
        """Test a second sweep does not duplicate the fill."""
        harness = Harness()
        old_id = harness.exchange.add_resting_order(
            "BTC-USD", OrderSide.BUY, Decimal("0.01"), Decimal("49000"),
            created_at=NOW - timedelta(hours=2),
        )
        harness.exchange.fill_order(old_id, Decimal("0.004"))

        await harness.manager.sweep_stale_orders()
        second = await harness.manager.sweep_stale_orders()

        assert second == []
        assert len(harness.ledger.get_trades()) == 1

    @pytest.mark.asyncio
    async def test_fill_recorded_before_restart_not_duplicated(self):
        """Test a new manager sweeping an already-recorded order adds no trade."""
        harness = Harness()
        old_id = harness.exchange.add_resting_order(
            "BTC-USD", OrderSide.BUY, Decimal("0.01"), Decimal("49000"),
            created_at=NOW - timedelta(hours=2),
        )
        harness.exchange.fill_order(old_id, Decimal("0.004"))
        harness.ledger.record_fill(TradeFill(
            symbol="BTC-USD",
            side=OrderSide.BUY,
            quantity=Decimal("0.004"),
            price=Decimal("49000"),
            fee=Decimal("0"),
            exchange_order_id=old_id,
            executed_at=NOW - timedelta(hours=1),
        ))
        restarted = OrderLifecycleManager(
            harness.gateway, harness.ledger, harness.config, harness.clock, harness.publisher,
        )

        cancelled = await restarted.sweep_stale_orders()

        assert cancelled == [old_id]
        assert len(harness.ledger.get_trades()) == 1
        assert harness.ledger.get_open_position("BTC-USD").quantity == Decimal("0.004")
