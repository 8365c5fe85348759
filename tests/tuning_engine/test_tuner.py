"""
Auto-Tuner Tests.

============================================================
PURPOSE
============================================================
Tests for FIFO profit matching, window metrics, recommendation
rules and the bounded auto-apply policy.

TEST CATEGORIES:
- FIFO matching
- Metrics
- Rules
- Auto-apply bounds
- Nightly run and reporting

============================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from core.clock import MockClock
from execution_engine.types import OrderSide, TradeFill
from monitoring.models import EventType
from monitoring.notifier import LoggingEventPublisher
from storage.database import Database
from storage.ledger import TradingLedger
from storage.types import Trade
from strategy_engine.config import default_settings
from strategy_engine.settings import SettingsService
from tuning_engine import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    AutoTuner,
    FifoMatcher,
    PerformanceMetrics,
    Recommendation,
    TuningThresholds,
    analysis_window,
    compute_metrics,
    compute_roi,
    generate_recommendations,
    is_conservative,
)
from tuning_engine.recommendations import (
    asymmetric_losses,
    excessive_frequency,
    long_holds,
    losing_low_win_rate,
    low_win_rate_fee_drag,
    tiny_average_profit,
)


DAY = datetime(2026, 1, 5, tzinfo=timezone.utc)
NOW = DAY + timedelta(days=1, minutes=5)


def trade(symbol: str, side: str, quantity: str, price: str, fee: str, at: datetime) -> Trade:
    return Trade(
        id=0,
        symbol=symbol,
        side=side,
        quantity=Decimal(quantity),
        price=Decimal(price),
        fee=Decimal(fee),
        exchange_order_id=f"{symbol}-{side}-{at.isoformat()}",
        created_at=at,
    )


def recommendation(parameter: str, old: str, new: str) -> Recommendation:
    return Recommendation(parameter, old, new, "test", "test")


# ============================================================
# FIFO TESTS
# ============================================================


class TestFifoMatcher:
    """Tests for round-trip reconstruction."""

    def test_sell_spans_lots(self):
        """Test a sell consumes lots in order with proportional fees."""
        matcher = FifoMatcher()
        matcher.add_buy("BTC-USD", Decimal("1"), Decimal("100"), Decimal("1"), DAY)
        matcher.add_buy("BTC-USD", Decimal("1"), Decimal("110"), Decimal("1"), DAY + timedelta(hours=1))

        trip = matcher.add_sell("BTC-USD", Decimal("1.5"), Decimal("120"), Decimal("1.5"), DAY + timedelta(hours=2))

        assert trip.quantity == Decimal("1.5")
        assert trip.buy_cost == Decimal("156.5")
        assert trip.profit == Decimal("22")
        assert trip.opened_at == DAY
        assert matcher.open_quantity("BTC-USD") == Decimal("0.5")

    def test_remaining_lot_keeps_remaining_fee(self):
        """Test a partly consumed lot carries only its unused fee."""
        matcher = FifoMatcher()
        matcher.add_buy("BTC-USD", Decimal("1"), Decimal("110"), Decimal("1"), DAY)
        matcher.add_sell("BTC-USD", Decimal("0.5"), Decimal("120"), Decimal("0.5"), DAY + timedelta(hours=1))

        trip = matcher.add_sell("BTC-USD", Decimal("0.5"), Decimal("100"), Decimal("0.5"), DAY + timedelta(hours=2))

        assert trip.profit == Decimal("-6")
        assert not trip.is_win
        assert matcher.open_quantity("BTC-USD") == Decimal("0")

    def test_sell_without_buys(self):
        """Test an unmatched sell yields no round-trip."""
        matcher = FifoMatcher()

        assert matcher.add_sell("BTC-USD", Decimal("1"), Decimal("100"), Decimal("0"), DAY) is None
        assert matcher.round_trips == []

    def test_symbols_isolated(self):
        """Test lots are queued per symbol."""
        matcher = FifoMatcher()
        matcher.add_buy("ETH-USD", Decimal("1"), Decimal("100"), Decimal("0"), DAY)

        assert matcher.add_sell("BTC-USD", Decimal("1"), Decimal("100"), Decimal("0"), DAY) is None
        assert matcher.open_quantity("ETH-USD") == Decimal("1")

    def test_hold_hours(self):
        """Test hold time runs from the earliest matched buy."""
        matcher = FifoMatcher()
        matcher.add_buy("BTC-USD", Decimal("1"), Decimal("100"), Decimal("0"), DAY)

        trip = matcher.add_sell("BTC-USD", Decimal("1"), Decimal("100"), Decimal("0"), DAY + timedelta(hours=9))

        assert trip.hold_hours == 9.0


# ============================================================
# METRICS TESTS
# ============================================================


class TestMetrics:
    """Tests for window aggregation."""

    def test_window_metrics(self):
        """Test only sells inside the window count as round-trips."""
        trades = [
            trade("BTC-USD", "buy", "1", "100", "0.2", DAY - timedelta(hours=14)),
            trade("BTC-USD", "sell", "1", "110", "0.2", DAY + timedelta(hours=10)),
            trade("ETH-USD", "buy", "2", "50", "0.1", DAY + timedelta(hours=11)),
            trade("ETH-USD", "sell", "2", "45", "0.1", DAY + timedelta(hours=12)),
        ]

        metrics = compute_metrics(trades, DAY, DAY + timedelta(days=1))

        assert metrics.total_trades == 2
        assert metrics.winning_trades == 1
        assert metrics.losing_trades == 1
        assert metrics.win_rate == 50.0
        assert metrics.total_profit == pytest.approx(-0.6)
        assert metrics.avg_profit_per_trade == pytest.approx(-0.3)
        assert metrics.total_fees == pytest.approx(0.4)
        assert metrics.max_profit == pytest.approx(9.6)
        assert metrics.max_loss == pytest.approx(-10.2)
        assert metrics.trades_per_day == 3

    def test_sell_after_window_excluded(self):
        """Test the window end is exclusive."""
        trades = [
            trade("BTC-USD", "buy", "1", "100", "0", DAY + timedelta(hours=1)),
            trade("BTC-USD", "sell", "1", "110", "0", DAY + timedelta(days=1)),
        ]

        metrics = compute_metrics(trades, DAY, DAY + timedelta(days=1))

        assert metrics.total_trades == 0
        assert metrics.trades_per_day == 1

    def test_empty_window(self):
        """Test defaults when nothing traded."""
        metrics = compute_metrics([], DAY, DAY + timedelta(days=1))

        assert metrics.total_trades == 0
        assert metrics.win_rate == 0.0
        assert metrics.avg_hold_time_hours == 6.0

    def test_roi(self):
        """Test ROI from the first and last NAV samples."""
        class Sample:
            def __init__(self, nav):
                self.nav = Decimal(nav)

        assert compute_roi([Sample("1000"), Sample("990"), Sample("1100")]) == pytest.approx(10.0)
        assert compute_roi([]) == 0.0


# ============================================================
# RULE TESTS
# ============================================================


class TestRules:
    """Tests for individual recommendation rules."""

    def setup_method(self):
        self.settings = default_settings()
        self.thresholds = TuningThresholds()

    def test_quiet_day_recommends_nothing(self):
        """Test default metrics trigger no rule."""
        assert generate_recommendations(PerformanceMetrics(), self.settings) == []

    def test_fee_drag_raises_min_profit(self):
        """Test low win rate with fee drag raises the profit target."""
        metrics = PerformanceMetrics(win_rate=30.0, total_fees=5.0, total_profit=10.0)

        recs = low_win_rate_fee_drag(metrics, self.settings, self.thresholds)

        assert [(r.parameter, r.old_value, r.new_value) for r in recs] == [("MIN_PROFIT_PCT", "3", "4")]

    def test_fee_drag_respects_cap(self):
        """Test the profit target never passes its cap."""
        metrics = PerformanceMetrics(win_rate=30.0, total_fees=5.0, total_profit=10.0)

        recs = low_win_rate_fee_drag(metrics, self.settings.replace(min_profit_pct=Decimal("8")), self.thresholds)

        assert recs == []

    def test_frequency_raises_cooldown(self):
        """Test frequent trading lengthens the cooldown."""
        recs = excessive_frequency(PerformanceMetrics(trades_per_day=6), self.settings, self.thresholds)

        assert [(r.parameter, r.new_value) for r in recs] == [("COOLDOWN_CYCLES", "3")]

    def test_frequency_respects_cap(self):
        """Test cooldown stops at its cap."""
        settings = self.settings.replace(cooldown_cycles=5)

        assert excessive_frequency(PerformanceMetrics(trades_per_day=9), settings, self.thresholds) == []

    def test_tiny_profit_big_step(self):
        """Test tiny average profit raises the target by two points."""
        metrics = PerformanceMetrics(total_trades=11, avg_profit_per_trade=0.005)

        recs = tiny_average_profit(metrics, self.settings, self.thresholds)

        assert recs[0].new_value == "5"

    def test_asymmetric_losses_tighten_stop(self):
        """Test a large worst loss tightens MAX_LOSS_PCT."""
        metrics = PerformanceMetrics(max_loss=-1.0, max_profit=0.5)

        recs = asymmetric_losses(metrics, self.settings, self.thresholds)

        assert [(r.parameter, r.new_value) for r in recs] == [("MAX_LOSS_PCT", "1.5")]

    def test_losing_reduces_positions(self):
        """Test losing with a low win rate reduces MAX_POSITIONS."""
        metrics = PerformanceMetrics(win_rate=30.0, avg_profit_per_trade=-0.1)

        recs = losing_low_win_rate(metrics, self.settings, self.thresholds)

        assert [(r.parameter, r.new_value) for r in recs] == [
            ("STRONG_SIGNAL_COUNT", "1"),
            ("MAX_POSITIONS", "2"),
        ]

    def test_long_holds_lower_target(self):
        """Test long holds with small profit lower the exit target."""
        metrics = PerformanceMetrics(avg_hold_time_hours=30.0, avg_profit_per_trade=0.01, win_rate=50.0)

        recs = long_holds(metrics, self.settings.replace(min_profit_pct=Decimal("4")), self.thresholds)

        assert [(r.parameter, r.new_value) for r in recs] == [("MIN_PROFIT_PCT", "3.5")]

    def test_failing_rule_skipped(self):
        """Test one broken rule does not stop the others."""
        def broken(metrics, settings, thresholds):
            raise ValueError("broken rule")

        recs = generate_recommendations(
            PerformanceMetrics(trades_per_day=6),
            self.settings,
            rules=[broken, excessive_frequency],
        )

        assert [r.parameter for r in recs] == ["COOLDOWN_CYCLES"]


# ============================================================
# AUTO-APPLY TESTS
# ============================================================


class TestConservativeBounds:
    """Tests for the auto-apply policy."""

    def test_integer_step(self):
        """Test integer settings move by at most one."""
        thresholds = TuningThresholds()

        assert is_conservative("MAX_POSITIONS", Decimal("3"), Decimal("2"), thresholds)
        assert not is_conservative("MAX_POSITIONS", Decimal("3"), Decimal("1"), thresholds)

    def test_relative_change(self):
        """Test continuous settings move by at most half."""
        thresholds = TuningThresholds()

        assert is_conservative("MIN_PROFIT_PCT", Decimal("3"), Decimal("4"), thresholds)
        assert not is_conservative("MIN_PROFIT_PCT", Decimal("3"), Decimal("5"), thresholds)

    def test_small_values_measured_against_themselves(self):
        """Test a value under one may not move by more than half of itself."""
        thresholds = TuningThresholds()

        assert not is_conservative("MIN_PROFIT_PCT", Decimal("0.6"), Decimal("1.1"), thresholds)
        assert not is_conservative("MAX_LOSS_PCT", Decimal("0.5"), Decimal("1"), thresholds)
        assert is_conservative("MAX_LOSS_PCT", Decimal("0.5"), Decimal("0.75"), thresholds)

    def test_zero_never_auto_applied(self):
        """Test any change away from zero needs manual approval."""
        assert not is_conservative("MAX_LOSS_USD", Decimal("0"), Decimal("0.1"), TuningThresholds())


@pytest.fixture
def clock():
    return MockClock(NOW)


@pytest.fixture
def ledger(clock):
    return TradingLedger(Database.in_memory(), clock)


@pytest.fixture
def service(ledger):
    return SettingsService(ledger, environ={})


@pytest.fixture
def publisher():
    return LoggingEventPublisher()


@pytest.fixture
def tuner(ledger, service, clock, publisher):
    return AutoTuner(ledger, service, clock, publisher)


class TestApply:
    """Tests for applying recommendations."""

    @pytest.mark.asyncio
    async def test_large_change_recorded_only(self, tuner, service):
        """Test a change beyond the bounds is not applied."""
        applied = await tuner.apply([recommendation("MIN_PROFIT_PCT", "3", "5")])

        assert applied == []
        assert service.get_value("MIN_PROFIT_PCT") == Decimal("3")

    @pytest.mark.asyncio
    async def test_one_change_per_parameter(self, tuner, service):
        """Test a second change to the same parameter is skipped."""
        applied = await tuner.apply([
            recommendation("MIN_PROFIT_PCT", "3", "4"),
            recommendation("MIN_PROFIT_PCT", "3", "3.5"),
        ])

        assert [r.new_value for r in applied] == ["4"]
        assert service.get_value("MIN_PROFIT_PCT") == Decimal("4")

    @pytest.mark.asyncio
    async def test_delta_against_stored_value(self, tuner, service):
        """Test the bound uses the stored value, not the recommendation's."""
        service.update_setting("MIN_PROFIT_PCT", "2", source="cli")

        applied = await tuner.apply([recommendation("MIN_PROFIT_PCT", "3", "3.5")])

        assert applied == []
        assert service.get_value("MIN_PROFIT_PCT") == Decimal("2")

    @pytest.mark.asyncio
    async def test_invalid_value_not_applied(self, tuner, service):
        """Test a value failing validation is skipped."""
        service.update_setting("MAX_POSITIONS", "1", source="cli")

        applied = await tuner.apply([recommendation("MAX_POSITIONS", "1", "0")])

        assert applied == []
        assert service.get_value("MAX_POSITIONS") == 1

    @pytest.mark.asyncio
    async def test_applied_change_audited(self, tuner, service, publisher):
        """Test applied changes are versioned and announced."""
        await tuner.apply([recommendation("COOLDOWN_CYCLES", "2", "3")])

        change = service.get_history("COOLDOWN_CYCLES")[0]
        assert change.source == "auto_tuner"
        assert change.new_value == "3"
        assert publisher.events[0].event_type == EventType.SETTINGS_AUTO_APPLIED

    @pytest.mark.asyncio
    async def test_positions_reduced_with_strong_count(self, tuner, service):
        """Test a generated MAX_POSITIONS reduction applies on default settings."""
        metrics = PerformanceMetrics(win_rate=30.0, avg_profit_per_trade=-0.1)
        recs = losing_low_win_rate(metrics, service.load_snapshot(), tuner.thresholds)

        applied = await tuner.apply(recs)

        assert [r.parameter for r in applied] == ["STRONG_SIGNAL_COUNT", "MAX_POSITIONS"]
        assert service.get_value("MAX_POSITIONS") == 2
        assert service.get_value("STRONG_SIGNAL_COUNT") == 1

    @pytest.mark.asyncio
    async def test_positions_onto_strong_count_rejected(self, tuner, service):
        """Test MAX_POSITIONS alone cannot drop to STRONG_SIGNAL_COUNT."""
        applied = await tuner.apply([recommendation("MAX_POSITIONS", "3", "2")])

        assert applied == []
        assert service.get_value("MAX_POSITIONS") == 3


# ============================================================
# NIGHTLY RUN TESTS
# ============================================================


class TestNightlyRun:
    """Tests for the full optimization run."""

    def record_round_trips(self, ledger, count: int) -> None:
        for i in range(count):
            at = DAY + timedelta(hours=2 * i + 1)
            for side, price in ((OrderSide.BUY, "100"), (OrderSide.SELL, "102")):
                ledger.record_fill(TradeFill(
                    symbol="BTC-USD",
                    side=side,
                    quantity=Decimal("1"),
                    price=Decimal(price),
                    fee=Decimal("0.1"),
                    exchange_order_id=f"{side.value}-{i}",
                    executed_at=at,
                ))
                at += timedelta(minutes=30)

    def test_analysis_window(self):
        """Test the window is the previous UTC day."""
        assert analysis_window(NOW) == (DAY, DAY + timedelta(days=1))

    @pytest.mark.asyncio
    async def test_run_applies_and_reports(self, tuner, ledger, service):
        """Test a busy day lengthens the cooldown and stores a report."""
        self.record_round_trips(ledger, 3)

        result = await tuner.run()

        assert result.status == STATUS_COMPLETED
        assert result.metrics.total_trades == 3
        assert result.metrics.trades_per_day == 6
        assert [r.parameter for r in result.recommendations] == ["COOLDOWN_CYCLES"]
        assert result.applied == result.recommendations
        assert service.get_value("COOLDOWN_CYCLES") == 3

        report = ledger.get_latest_report()
        assert report.run_date == DAY
        assert report.applied_changes[0]["new_value"] == "3"
        assert report.current_settings["COOLDOWN_CYCLES"] == 2

    @pytest.mark.asyncio
    async def test_manual_mode_records_only(self, ledger, service, clock):
        """Test auto-apply can be disabled."""
        tuner = AutoTuner(ledger, service, clock, thresholds=TuningThresholds(auto_apply=False))
        self.record_round_trips(ledger, 3)

        result = await tuner.run()

        assert len(result.recommendations) == 1
        assert result.applied == []
        assert service.get_value("COOLDOWN_CYCLES") == 2

    @pytest.mark.asyncio
    async def test_failure_still_reported(self, tuner, ledger, service):
        """Test a failed run appends a failed report."""
        with patch.object(service, "load_snapshot", side_effect=RuntimeError("settings unavailable")):
            result = await tuner.run()

        assert result.status == STATUS_FAILED
        assert result.error == "settings unavailable"
        report = ledger.get_latest_report()
        assert report.status == STATUS_FAILED
        assert report.error == "settings unavailable"
