"""
Event Publisher Tests.

============================================================
PURPOSE
============================================================
Tests for the logging, composite and Telegram publishers.

TEST CATEGORIES:
- Logging publisher
- Composite fan-out
- Telegram filtering, rate limiting and failures

============================================================
"""

from datetime import datetime, timezone

import aiohttp
import pytest
from unittest.mock import AsyncMock, patch

from core.clock import MockClock
from monitoring.models import EventSeverity, EventType, TradingEvent
from monitoring.notifier import (
    CompositeEventPublisher,
    LoggingEventPublisher,
    TelegramEventPublisher,
    build_event_publisher,
)


NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def make_event(
    event_type: EventType = EventType.LOW_BALANCE,
    severity: EventSeverity = EventSeverity.WARNING,
) -> TradingEvent:
    return TradingEvent(
        event_type=event_type,
        severity=severity,
        title="Low balance",
        message="NAV $40.00 below $50",
        details={"nav": "40"},
        timestamp=NOW,
        symbol="BTC-USD",
    )


class FakeResponse:
    def __init__(self, status: int, body: str = ""):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, status: int = 200, error: Exception = None):
        self.status = status
        self.error = error
        self.posts = []
        self.closed = False

    def post(self, url, json=None):
        self.posts.append((url, json))
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status, "bad request")

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return MockClock(NOW)


def make_telegram(clock, session):
    publisher = TelegramEventPublisher(bot_token="token", chat_id="42", clock=clock)
    publisher._get_session = AsyncMock(return_value=session)
    return publisher


# ============================================================
# LOGGING AND COMPOSITE TESTS
# ============================================================


class TestLoggingPublisher:
    """Tests for the log publisher."""

    @pytest.mark.asyncio
    async def test_events_kept(self):
        """Test published events are logged and kept."""
        publisher = LoggingEventPublisher()

        await publisher.publish(make_event())

        assert publisher.events[0].event_type == EventType.LOW_BALANCE

    def test_event_serialization(self):
        """Test events convert to plain dictionaries."""
        data = make_event().to_dict()

        assert data["event_type"] == "LOW_BALANCE"
        assert data["severity"] == "WARNING"
        assert data["timestamp"] == NOW.isoformat()


class TestCompositePublisher:
    """Tests for fan-out."""

    @pytest.mark.asyncio
    async def test_failing_child_isolated(self):
        """Test one failing publisher does not block the others."""
        broken = LoggingEventPublisher()
        broken.publish = AsyncMock(side_effect=RuntimeError("down"))
        working = LoggingEventPublisher()
        composite = CompositeEventPublisher([broken, working])

        await composite.publish(make_event())

        assert len(working.events) == 1

    def test_builder_without_telegram(self, monkeypatch):
        """Test only logging is used when Telegram is not configured."""
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
        monkeypatch.delenv("TELEGRAM_CHAT_ID", raising=False)

        publisher = build_event_publisher()

        assert [type(p) for p in publisher._publishers] == [LoggingEventPublisher]


# ============================================================
# TELEGRAM TESTS
# ============================================================


class TestTelegramPublisher:
    """Tests for Telegram delivery."""

    @pytest.mark.asyncio
    async def test_sends_message(self, clock):
        """Test a warning is posted to the chat."""
        session = FakeSession()
        publisher = make_telegram(clock, session)

        await publisher.publish(make_event())

        url, payload = session.posts[0]
        assert url.endswith("bottoken/sendMessage")
        assert payload["chat_id"] == "42"
        assert "Low balance" in payload["text"]
        assert "BTC-USD" in payload["text"]

    @pytest.mark.asyncio
    async def test_info_filtered(self, clock):
        """Test events below the minimum severity are not sent."""
        session = FakeSession()
        publisher = make_telegram(clock, session)

        await publisher.publish(make_event(EventType.SETTINGS_AUTO_APPLIED, EventSeverity.INFO))

        assert session.posts == []

    @pytest.mark.asyncio
    async def test_rate_limited_per_type(self, clock):
        """Test repeats of one event type are throttled."""
        session = FakeSession()
        publisher = make_telegram(clock, session)

        await publisher.publish(make_event())
        await publisher.publish(make_event())
        await publisher.publish(make_event(EventType.LARGE_DRAWDOWN, EventSeverity.ERROR))
        clock.advance(seconds=61)
        await publisher.publish(make_event())

        assert len(session.posts) == 3

    @pytest.mark.asyncio
    async def test_api_error_not_raised(self, clock):
        """Test a rejected request is logged and not rate limited."""
        session = FakeSession(status=400)
        publisher = make_telegram(clock, session)

        await publisher.publish(make_event())
        await publisher.publish(make_event())

        assert len(session.posts) == 2

    @pytest.mark.asyncio
    async def test_network_error_not_raised(self, clock):
        """Test connection failures are swallowed."""
        session = FakeSession(error=aiohttp.ClientConnectionError("refused"))
        publisher = make_telegram(clock, session)

        await publisher.publish(make_event())

        assert len(session.posts) == 1

    @pytest.mark.asyncio
    async def test_unconfigured_is_silent(self, clock, monkeypatch):
        """Test nothing is sent without credentials."""
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
        monkeypatch.delenv("TELEGRAM_CHAT_ID", raising=False)
        publisher = TelegramEventPublisher(clock=clock)

        with patch.object(publisher, "_send", AsyncMock()) as send:
            await publisher.publish(make_event())

        assert not publisher.is_configured
        send.assert_not_called()
