"""
Reconciliation Tests.

============================================================
PURPOSE
============================================================
Tests for the position reconciler against the mock exchange.

TEST CATEGORIES:
- Missing, drifted and vanished positions
- Holdings outside the universe
- Failure handling
- NAV recording and alerts

============================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from core.clock import MockClock
from core.exceptions import AuthenticationError
from execution_engine.adapters import MockConfig, MockExchangeAdapter
from execution_engine.config import ExecutionEngineConfig, ReconciliationConfig
from execution_engine.gateway import ExchangeGateway
from execution_engine.order_manager import OrderLifecycleManager
from execution_engine.reconciliation import (
    MismatchSeverity,
    MismatchType,
    PositionReconciler,
)
from execution_engine.types import OrderSide
from monitoring.models import EventType
from monitoring.notifier import LoggingEventPublisher
from storage.database import Database
from storage.ledger import TradingLedger


NOW = datetime(2026, 1, 5, 13, 0, tzinfo=timezone.utc)
UNIVERSE = ("BTC-USD", "ETH-USD", "SOL-USD")


@pytest.fixture
def clock():
    return MockClock(NOW)


@pytest.fixture
def exchange():
    adapter = MockExchangeAdapter(MockConfig(initial_balances={"USD": Decimal("1000")}))
    adapter.set_ticker("BTC-USD", Decimal("50000"), Decimal("49990"), Decimal("50010"))
    adapter.set_ticker("SOL-USD", Decimal("100"), Decimal("99.9"), Decimal("100.1"))
    return adapter


@pytest.fixture
def ledger(clock):
    return TradingLedger(Database.in_memory(), clock)


@pytest.fixture
def publisher():
    return LoggingEventPublisher()


@pytest.fixture
def config():
    return ExecutionEngineConfig.for_testing()


@pytest.fixture
def reconciler(exchange, ledger, clock, publisher, config):
    gateway = ExchangeGateway(exchange, config, ledger, clock)
    return PositionReconciler(
        gateway,
        ledger,
        ReconciliationConfig(sweep_stale_orders=False),
        clock,
        publisher,
    )


def event_types(publisher):
    return [e.event_type for e in publisher.events]


# ============================================================
# POSITION PASS TESTS
# ============================================================


class TestPositionPass:
    """Tests for ledger corrections from exchange balances."""

    @pytest.mark.asyncio
    async def test_untracked_balance_creates_position(self, reconciler, exchange, ledger):
        """Test an in-universe balance with no position is adopted at market."""
        exchange.set_balance("BTC", Decimal("0.01"))

        result = await reconciler.reconcile(UNIVERSE)

        position = ledger.get_open_position("BTC-USD")
        assert position.quantity == Decimal("0.01")
        assert position.entry_price == Decimal("50000")
        assert position.metadata["origin"] == "reconciliation"
        assert result.positions_created == 1
        assert result.mismatches[0].mismatch_type == MismatchType.MISSING_POSITION
        assert result.mismatches[0].auto_resolved

    @pytest.mark.asyncio
    async def test_drift_adjusts_quantity_keeps_cost(self, reconciler, exchange, ledger, publisher):
        """Test the exchange quantity wins and the entry price is kept."""
        ledger.open_position("BTC-USD", Decimal("0.01"), Decimal("48000"))
        exchange.set_balance("BTC", Decimal("0.008"))

        result = await reconciler.reconcile(UNIVERSE)

        position = ledger.get_open_position("BTC-USD")
        assert position.quantity == Decimal("0.008")
        assert position.entry_price == Decimal("48000")
        assert position.metadata["adjustments"][0]["reason"] == "reconciliation"
        assert result.positions_adjusted == 1
        assert EventType.RECONCILIATION_DRIFT in event_types(publisher)

    @pytest.mark.asyncio
    async def test_matching_quantity_untouched(self, reconciler, exchange, ledger):
        """Test no correction when ledger and exchange agree."""
        ledger.open_position("BTC-USD", Decimal("0.01"), Decimal("48000"))
        exchange.set_balance("BTC", Decimal("0.01"))

        result = await reconciler.reconcile(UNIVERSE)

        assert result.positions_adjusted == 0
        assert result.mismatches == []
        assert "adjustments" not in ledger.get_open_position("BTC-USD").metadata

    @pytest.mark.asyncio
    async def test_vanished_balance_closes_position(self, reconciler, ledger):
        """Test a position with no balance is closed."""
        ledger.open_position("ETH-USD", Decimal("0.5"), Decimal("3000"))

        result = await reconciler.reconcile(UNIVERSE)

        assert ledger.get_open_position("ETH-USD") is None
        assert result.positions_closed == 1
        assert result.mismatches[0].mismatch_type == MismatchType.POSITION_WITHOUT_BALANCE

    @pytest.mark.asyncio
    async def test_position_opened_after_snapshot_kept(self, reconciler, exchange, ledger, clock):
        """Test a buy recorded after the balance read is not closed as dust."""
        read_balances = exchange.get_balances

        async def balances_then_buy():
            balances = await read_balances()
            clock.advance(seconds=1)
            ledger.open_position("SOL-USD", Decimal("1.5"), Decimal("100"))
            return balances

        with patch.object(exchange, "get_balances", new=balances_then_buy):
            result = await reconciler.reconcile(UNIVERSE)

        assert ledger.get_open_position("SOL-USD").quantity == Decimal("1.5")
        assert result.positions_closed == 0
        assert result.mismatches == []

    @pytest.mark.asyncio
    async def test_dust_counts_as_zero(self, reconciler, exchange, ledger):
        """Test a balance below the dust threshold closes the position."""
        ledger.open_position("BTC-USD", Decimal("0.01"), Decimal("48000"))
        exchange.set_balance("BTC", Decimal("0.000001"))

        result = await reconciler.reconcile(UNIVERSE)

        assert ledger.get_open_position("BTC-USD") is None
        assert result.balances_checked == 0

    @pytest.mark.asyncio
    async def test_creation_deferred_without_price(self, reconciler, exchange, ledger):
        """Test a balance that cannot be priced is left for the next run."""
        exchange.set_balance("SOL", Decimal("5"))
        exchange.remove_ticker("SOL-USD")

        result = await reconciler.reconcile(UNIVERSE)

        assert ledger.get_open_position("SOL-USD") is None
        assert result.positions_created == 0
        assert result.mismatches[0].severity == MismatchSeverity.ERROR
        assert not result.mismatches[0].auto_resolved
        assert result.success


# ============================================================
# UNIVERSE TESTS
# ============================================================


class TestOutsideUniverse:
    """Tests for holdings the strategy does not trade."""

    @pytest.mark.asyncio
    async def test_foreign_balance_flagged_only(self, reconciler, exchange, ledger, publisher):
        """Test a balance outside the universe is flagged, not adopted."""
        exchange.set_balance("ADA", Decimal("250"))

        result = await reconciler.reconcile(UNIVERSE)

        assert ledger.get_open_position("ADA-USD") is None
        assert result.flagged == 1
        assert result.mismatches[0].mismatch_type == MismatchType.UNTRACKED_BALANCE
        assert EventType.UNTRACKED_POSITION in event_types(publisher)

    @pytest.mark.asyncio
    async def test_foreign_position_never_modified(self, reconciler, ledger):
        """Test a ledger position outside the universe stays open."""
        ledger.open_position("DOGE-USD", Decimal("1000"), Decimal("0.1"))

        result = await reconciler.reconcile(UNIVERSE)

        assert ledger.get_open_position("DOGE-USD").quantity == Decimal("1000")
        assert result.positions_closed == 0
        assert result.mismatches[0].mismatch_type == MismatchType.UNTRACKED_POSITION


# ============================================================
# FAILURE TESTS
# ============================================================


class TestFailures:
    """Tests for exchange failures during reconciliation."""

    @pytest.mark.asyncio
    async def test_authentication_failure_raises(self, reconciler, exchange, publisher):
        """Test credential failures alert and propagate."""
        exchange.inject_error("get_balances", "AUT_INVALID_KEY")

        with pytest.raises(AuthenticationError):
            await reconciler.reconcile(UNIVERSE)

        assert EventType.AUTHENTICATION_FAILURE in event_types(publisher)
        assert not reconciler.get_last_result().success

    @pytest.mark.asyncio
    async def test_unavailable_exchange_reported(self, reconciler, exchange, ledger):
        """Test an outage ends the run with an error and no changes."""
        ledger.open_position("BTC-USD", Decimal("0.01"), Decimal("48000"))
        exchange.inject_error("get_balances", "EXC_SERVICE_UNAVAILABLE", times=5)

        result = await reconciler.reconcile(UNIVERSE)

        assert not result.success
        assert "EXC_SERVICE_UNAVAILABLE" in result.errors[0]
        assert ledger.get_open_position("BTC-USD") is not None


# ============================================================
# NAV TESTS
# ============================================================


class TestNav:
    """Tests for NAV recording and balance alerts."""

    @pytest.mark.asyncio
    async def test_nav_recorded(self, reconciler, exchange, ledger):
        """Test NAV is cash plus positions at last price."""
        ledger.open_position("BTC-USD", Decimal("0.01"), Decimal("48000"))
        exchange.set_balance("BTC", Decimal("0.01"))

        result = await reconciler.reconcile(UNIVERSE)

        assert result.nav.nav == Decimal("1500")
        history = ledger.get_nav_history()
        assert len(history) == 1
        assert history[0].nav == Decimal("1500")

    @pytest.mark.asyncio
    async def test_low_balance_alert(self, reconciler, exchange, publisher):
        """Test NAV under the floor raises LOW_BALANCE."""
        exchange.set_balance("USD", Decimal("20"))

        await reconciler.reconcile(UNIVERSE)

        assert EventType.LOW_BALANCE in event_types(publisher)

    @pytest.mark.asyncio
    async def test_drawdown_alert(self, reconciler, ledger, publisher):
        """Test NAV far below the recent peak raises LARGE_DRAWDOWN."""
        ledger.record_nav(Decimal("2000"), Decimal("2000"), Decimal("0"))

        await reconciler.reconcile(UNIVERSE)

        assert EventType.LARGE_DRAWDOWN in event_types(publisher)
        assert EventType.LOW_BALANCE not in event_types(publisher)

    @pytest.mark.asyncio
    async def test_no_alert_near_peak(self, reconciler, ledger, publisher):
        """Test a small dip raises nothing."""
        ledger.record_nav(Decimal("1050"), Decimal("1050"), Decimal("0"))

        await reconciler.reconcile(UNIVERSE)

        assert publisher.events == []


# ============================================================
# SWEEP TESTS
# ============================================================


class TestSweepHook:
    """Tests for the stale-order sweep at the end of a run."""

    @pytest.mark.asyncio
    async def test_stale_orders_swept(self, exchange, ledger, clock, publisher, config):
        """Test reconciliation cancels orphaned resting orders."""
        gateway = ExchangeGateway(exchange, config, ledger, clock)
        manager = OrderLifecycleManager(gateway, ledger, config, clock, publisher)
        reconciler = PositionReconciler(
            gateway, ledger, ReconciliationConfig(), clock, publisher, order_manager=manager,
        )
        order_id = exchange.add_resting_order(
            "SOL-USD", OrderSide.BUY, Decimal("1"), Decimal("95"),
            created_at=NOW - timedelta(hours=3),
        )

        result = await reconciler.reconcile(UNIVERSE)

        assert result.swept_orders == [order_id]
