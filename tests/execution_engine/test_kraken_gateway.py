"""
Kraken Adapter and Exchange Gateway Tests.

============================================================
PURPOSE
============================================================
Tests for the exchange boundary: request signing, error and
symbol mapping, candle aggregation, lot normalization and the
gateway retry policy.

TEST CATEGORIES:
- Signing: bit-exact API-Sign, nonce monotonicity
- Mapping: Kraken errors, pairs and asset codes
- Adapter: response parsing with a stubbed HTTP session
- Normalizer: cache and fallback policy
- Gateway: retries, placement timeouts, closed candles

============================================================
"""

import asyncio
import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs

import pytest

from core.clock import MockClock
from core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ExchangeError,
    RateLimitError,
)
from execution_engine.adapters import (
    KrakenAdapter,
    KrakenSigner,
    KrakenSymbolMapper,
    LotSizeNormalizer,
    MockExchangeAdapter,
    NonceGenerator,
    SubmitOrderRequest,
    aggregate_candles,
    native_interval_for,
    parse_interval,
    round_price,
    round_quantity,
    sign_request,
)
from execution_engine.config import ExecutionEngineConfig, KrakenConfig
from execution_engine.errors import build_exchange_error, map_kraken_error
from execution_engine.gateway import ExchangeGateway
from execution_engine.types import Candle, LotInfo, OrderSide, OrderState, OrderType
from storage.database import Database
from storage.ledger import TradingLedger


SECRET = "kQH5HW/8p1uGOVjbgWA7FunAmGO8lsSUXNsu3eow76sz84Q18fWxnyRzBHCd3pd5nE9qa99HAZtuZuj6F1huXg=="
NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeResponse:
    """aiohttp response stand-in usable as an async context manager."""

    def __init__(self, status: int, payload):
        self.status = status
        self._payload = payload

    async def json(self, content_type=None):
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    def __init__(self, response: FakeResponse):
        self.response = response
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        return self.response

    async def close(self):
        pass


def make_adapter(secret: str = SECRET) -> KrakenAdapter:
    return KrakenAdapter(KrakenConfig(), signer=KrakenSigner("api-key", secret))


def hourly_candles(start: datetime, closes):
    return [
        Candle(
            time=start + timedelta(hours=i),
            open=Decimal(str(c)),
            high=Decimal(str(c)) + 1,
            low=Decimal(str(c)) - 1,
            close=Decimal(str(c)),
            volume=Decimal("2"),
        )
        for i, c in enumerate(closes)
    ]


# ============================================================
# SIGNING TESTS
# ============================================================


class TestSigning:
    """Tests for Kraken API-Sign computation."""

    def test_published_vector(self):
        """Test the signature matches Kraken's documented example."""
        signature = sign_request(
            "/0/private/AddOrder",
            1616492376594,
            "nonce=1616492376594&ordertype=limit&pair=XBTUSD&price=37500&type=buy&volume=1.25",
            SECRET,
        )

        assert signature == (
            "4/dpxb3iT4tp/ZCVEwSnEsLxx0bqyhLpdfOpc6fn7OR8+UClSV5n9E6aSS8MPtnRfp32bAb0nmbRn6H8ndwLUQ=="
        )

    def test_signature_construction(self):
        """Test HMAC-SHA512 over path + SHA256(nonce + body)."""
        post_data = "nonce=42"

        expected_digest = hmac.new(
            base64.b64decode(SECRET),
            b"/0/private/Balance" + hashlib.sha256(b"42" + post_data.encode()).digest(),
            hashlib.sha512,
        ).digest()

        assert base64.b64decode(sign_request("/0/private/Balance", 42, post_data, SECRET)) == expected_digest

    def test_nonce_strictly_increasing(self):
        """Test same-millisecond requests still get increasing nonces."""
        nonces = NonceGenerator(lambda: 1700000000.0)

        first, second, third = nonces.next(), nonces.next(), nonces.next()

        assert first == 1700000000000000
        assert first < second < third

    def test_signed_body_contains_nonce(self):
        """Test the signed bytes are exactly the bytes sent."""
        signer = KrakenSigner("api-key", SECRET, NonceGenerator(lambda: 1700000000.0))

        post_data, headers = signer.sign("/0/private/AddOrder", {"pair": "XBTUSD"})

        nonce = int(parse_qs(post_data)["nonce"][0])
        assert headers["API-Key"] == "api-key"
        assert headers["API-Sign"] == sign_request("/0/private/AddOrder", nonce, post_data, SECRET)

    def test_missing_credentials(self):
        """Test a signer without a key reports no credentials."""
        assert not KrakenSigner("", SECRET).has_credentials


# ============================================================
# MAPPING TESTS
# ============================================================


class TestMapping:
    """Tests for Kraken error, pair and asset mapping."""

    def test_auth_errors(self):
        """Test authentication error strings map to AUT codes."""
        assert map_kraken_error(["EAPI:Invalid key"]) == "AUT_INVALID_KEY"
        assert map_kraken_error(["EAPI:Invalid nonce"]) == "AUT_INVALID_NONCE"
        assert map_kraken_error(["EGeneral:Permission denied"]) == "AUT_PERMISSION_DENIED"

    def test_auth_wins(self):
        """Test an auth error anywhere in the array decides the code."""
        code = map_kraken_error(["EService:Unavailable", "EAPI:Invalid signature"])

        assert code == "AUT_INVALID_SIGNATURE"

    def test_unknown_error(self):
        """Test unrecognized strings map to the unknown code."""
        assert map_kraken_error(["EFoo:Bar"]) == "EXC_UNKNOWN_ERROR"
        assert map_kraken_error([]) == "EXC_UNKNOWN_ERROR"

    def test_exception_types(self):
        """Test codes become the matching exception class."""
        assert isinstance(build_exchange_error("x", "AUT_INVALID_KEY"), AuthenticationError)
        assert isinstance(build_exchange_error("x", "RTE_API_LIMIT"), RateLimitError)
        error = build_exchange_error("x", "VAL_INSUFFICIENT_FUNDS")
        assert not error.is_retryable

    def test_pairs(self):
        """Test internal <-> Kraken pair names."""
        mapper = KrakenSymbolMapper()

        assert mapper.to_exchange("BTC-USD") == "XBTUSD"
        assert mapper.to_exchange("link-usd") == "LINKUSD"
        assert mapper.from_exchange("XXBTZUSD") == "BTC-USD"
        assert mapper.from_exchange("XBTUSD") == "BTC-USD"
        assert mapper.from_exchange("LINKUSD") == "LINK-USD"

    def test_assets(self):
        """Test legacy X/Z asset codes are normalized."""
        mapper = KrakenSymbolMapper()

        assert mapper.normalize_asset("XXBT") == "BTC"
        assert mapper.normalize_asset("ZUSD") == "USD"
        assert mapper.normalize_asset("XETH") == "ETH"
        assert mapper.normalize_asset("SOL") == "SOL"


# ============================================================
# CANDLE TESTS
# ============================================================


class TestCandles:
    """Tests for interval parsing and aggregation."""

    def test_parse_interval(self):
        """Test interval strings to minutes."""
        assert parse_interval("15m") == 15
        assert parse_interval("6h") == 360
        assert parse_interval("1d") == 1440

    @pytest.mark.parametrize("bad", ["", "h", "6x", "0h", "abch"])
    def test_parse_interval_invalid(self, bad):
        """Test malformed intervals are rejected."""
        with pytest.raises(ConfigurationError):
            parse_interval(bad)

    def test_native_interval(self):
        """Test the largest dividing native interval is chosen."""
        assert native_interval_for(240) == 240
        assert native_interval_for(360) == 60
        assert native_interval_for(120) == 60

    def test_aggregate_six_hours(self):
        """Test six hourly candles collapse into one 6h candle."""
        start = datetime(2026, 1, 5, 0, 0, tzinfo=timezone.utc)
        candles = hourly_candles(start, [10, 12, 9, 11, 13, 12])

        result = aggregate_candles(candles, 360, 10)

        assert len(result) == 1
        bucket = result[0]
        assert bucket.time == start
        assert bucket.open == Decimal("10")
        assert bucket.close == Decimal("12")
        assert bucket.high == Decimal("14")
        assert bucket.low == Decimal("8")
        assert bucket.volume == Decimal("12")

    def test_aggregate_limit(self):
        """Test only the newest `limit` buckets are returned."""
        start = datetime(2026, 1, 5, 0, 0, tzinfo=timezone.utc)
        candles = hourly_candles(start, list(range(24)))

        result = aggregate_candles(candles, 360, 2)

        assert [c.time.hour for c in result] == [12, 18]


# ============================================================
# ADAPTER TESTS
# ============================================================


class TestKrakenAdapter:
    """Tests for Kraken response parsing."""

    @pytest.mark.asyncio
    async def test_ticker(self):
        """Test last/bid/ask parsing."""
        adapter = make_adapter()
        result = {"XXBTZUSD": {"a": ["50010.0", "1"], "b": ["49990.0", "1"], "c": ["50000.0", "0.1"]}}

        with patch.object(adapter, "_public", AsyncMock(return_value=result)) as public:
            ticker = await adapter.get_ticker("BTC-USD")

        public.assert_awaited_once_with("/0/public/Ticker", {"pair": "XBTUSD"})
        assert ticker.last == Decimal("50000.0")
        assert ticker.bid == Decimal("49990.0")
        assert ticker.ask == Decimal("50010.0")

    @pytest.mark.asyncio
    async def test_balances(self):
        """Test asset normalization and staking keys skipped."""
        adapter = make_adapter()
        result = {"ZUSD": "1000.50", "XXBT": "0.01", "DOT.S": "5", "XETH": "0"}

        with patch.object(adapter, "_private", AsyncMock(return_value=result)):
            balances = await adapter.get_balances()

        assert balances["USD"].free == Decimal("1000.50")
        assert balances["BTC"].total == Decimal("0.01")
        assert "DOT" not in balances
        assert "DOT.S" not in balances

    @pytest.mark.asyncio
    async def test_lot_info(self):
        """Test AssetPairs parsing."""
        adapter = make_adapter()
        result = {"XXBTZUSD": {"lot_decimals": 8, "ordermin": "0.0001", "pair_decimals": 1}}

        with patch.object(adapter, "_public", AsyncMock(return_value=result)):
            lot = await adapter.fetch_lot_info("BTC-USD")

        assert lot.lot_size == Decimal("0.00000001")
        assert lot.min_order_size == Decimal("0.0001")
        assert lot.price_decimals == 1
        assert lot.source == "exchange"

    @pytest.mark.asyncio
    async def test_candles_aggregated(self):
        """Test a 6h request is built from hourly OHLC rows."""
        adapter = make_adapter()
        start = int(datetime(2026, 1, 5, 0, 0, tzinfo=timezone.utc).timestamp())
        rows = [
            [start + 3600 * i, "10", "11", "9", str(10 + i), "10.5", "1", 5]
            for i in range(12)
        ]

        with patch.object(adapter, "_public", AsyncMock(return_value={"XXBTZUSD": rows, "last": 0})) as public:
            candles = await adapter.get_candles("BTC-USD", "6h", 2)

        assert public.await_args.args[1]["interval"] == 60
        assert len(candles) == 2
        assert candles[0].close == Decimal("15")
        assert candles[1].close == Decimal("21")
        assert candles[1].volume == Decimal("6")

    @pytest.mark.asyncio
    async def test_submit_limit_post_only(self):
        """Test AddOrder parameters for a post-only limit buy."""
        adapter = make_adapter()
        private = AsyncMock(return_value={"txid": ["OABC-123"]})

        with patch.object(adapter, "_private", private):
            response = await adapter.place_limit_order(
                "BTC-USD", OrderSide.BUY, Decimal("0.00123"), Decimal("49990.5"),
            )

        params = private.await_args.args[1]
        assert response.success
        assert response.exchange_order_id == "OABC-123"
        assert params["pair"] == "XBTUSD"
        assert params["type"] == "buy"
        assert params["ordertype"] == "limit"
        assert params["volume"] == "0.00123"
        assert params["price"] == "49990.5"
        assert params["oflags"] == "post"

    @pytest.mark.asyncio
    async def test_submit_rejected(self):
        """Test an exchange error becomes an unsuccessful response."""
        adapter = make_adapter()
        error = build_exchange_error("EOrder:Insufficient funds", "VAL_INSUFFICIENT_FUNDS")

        with patch.object(adapter, "_private", AsyncMock(side_effect=error)):
            response = await adapter.submit_order(SubmitOrderRequest(
                symbol="BTC-USD",
                side=OrderSide.BUY,
                order_type=OrderType.MARKET,
                quantity=Decimal("1"),
            ))

        assert not response.success
        assert response.error_code == "VAL_INSUFFICIENT_FUNDS"

    @pytest.mark.asyncio
    async def test_order_status_partial(self):
        """Test an open order with executed volume is partially filled."""
        adapter = make_adapter()
        result = {"OABC": {
            "status": "open",
            "vol": "1.0",
            "vol_exec": "0.4",
            "price": "100.5",
            "fee": "0.1",
            "opentm": 1767600000.0,
            "descr": {"pair": "XBTUSD", "type": "buy", "ordertype": "limit", "price": "101"},
        }}

        with patch.object(adapter, "_private", AsyncMock(return_value=result)):
            report = await adapter.get_order_status("BTC-USD", "OABC")

        assert report.status == OrderState.PARTIALLY_FILLED
        assert report.symbol == "BTC-USD"
        assert report.remaining_quantity == Decimal("0.6")
        assert report.average_price == Decimal("100.5")
        assert report.limit_price == Decimal("101")

    @pytest.mark.asyncio
    async def test_private_without_credentials(self):
        """Test private calls fail fast without credentials."""
        adapter = KrakenAdapter(KrakenConfig(), signer=KrakenSigner("", ""))

        with pytest.raises(AuthenticationError):
            await adapter.get_balances()

    @pytest.mark.asyncio
    async def test_error_envelope_raises_auth(self):
        """Test the error array of a 200 response is mapped."""
        adapter = make_adapter()
        adapter._session = FakeSession(FakeResponse(200, {"error": ["EAPI:Invalid key"], "result": {}}))

        with pytest.raises(AuthenticationError) as exc_info:
            await adapter.get_balances()

        assert exc_info.value.code == "AUT_INVALID_KEY"

    @pytest.mark.asyncio
    async def test_signed_request_headers(self):
        """Test private requests carry API-Key and API-Sign over the body."""
        adapter = make_adapter()
        session = FakeSession(FakeResponse(200, {"error": [], "result": {"ZUSD": "1"}}))
        adapter._session = session

        await adapter.get_balances()

        method, url, kwargs = session.requests[0]
        assert method == "POST"
        assert url == "https://api.kraken.com/0/private/Balance"
        assert "nonce=" in kwargs["data"]
        assert kwargs["headers"]["API-Key"] == "api-key"
        assert kwargs["headers"]["API-Sign"]

    @pytest.mark.asyncio
    async def test_http_429(self):
        """Test HTTP 429 is a rate limit error."""
        adapter = make_adapter()
        adapter._session = FakeSession(FakeResponse(429, {}))

        with pytest.raises(RateLimitError):
            await adapter.get_ticker("BTC-USD")

    @pytest.mark.asyncio
    async def test_not_connected(self):
        """Test calls before connect raise a retryable error."""
        with pytest.raises(ExchangeError) as exc_info:
            await make_adapter().get_ticker("BTC-USD")

        assert exc_info.value.is_retryable


# ============================================================
# LOT NORMALIZER TESTS
# ============================================================


class TestLotNormalizer:
    """Tests for lot info caching and rounding."""

    LOT = LotInfo(
        symbol="BTC-USD",
        lot_size=Decimal("0.0001"),
        lot_decimals=4,
        min_order_size=Decimal("0.0002"),
        price_decimals=1,
    )

    def test_round_quantity_down(self):
        """Test quantities are floored to the lot increment."""
        assert round_quantity(Decimal("0.12349"), self.LOT) == Decimal("0.1234")

    def test_round_quantity_below_minimum(self):
        """Test a rounded quantity under the minimum is zero."""
        assert round_quantity(Decimal("0.00019"), self.LOT) == Decimal("0")

    def test_round_price_by_side(self):
        """Test buys round down and sells round up."""
        assert round_price(Decimal("100.05"), self.LOT, OrderSide.BUY) == Decimal("100.0")
        assert round_price(Decimal("100.05"), self.LOT, OrderSide.SELL) == Decimal("100.1")

    @pytest.mark.asyncio
    async def test_cached_after_fetch(self):
        """Test a fetched entry is cached."""
        fetcher = AsyncMock(return_value=self.LOT)
        normalizer = LotSizeNormalizer(fetcher)

        await normalizer.get_lot_info("BTC-USD")
        await normalizer.get_lot_info("btc-usd")

        assert fetcher.await_count == 1
        assert normalizer.is_cached("BTC-USD")

    @pytest.mark.asyncio
    async def test_fallback_not_cached(self):
        """Test a failed fetch uses the fallback and retries next time."""
        fetcher = AsyncMock(side_effect=[
            build_exchange_error("down", "EXC_SERVICE_UNAVAILABLE"),
            self.LOT,
        ])
        normalizer = LotSizeNormalizer(fetcher)

        first = await normalizer.get_lot_info("BTC-USD")
        second = await normalizer.get_lot_info("BTC-USD")

        assert first.source == "fallback"
        assert first.lot_size == Decimal("0.00001")
        assert second is self.LOT
        assert fetcher.await_count == 2

    @pytest.mark.asyncio
    async def test_auth_error_propagates(self):
        """Test credential errors are not hidden behind the fallback."""
        normalizer = LotSizeNormalizer(AsyncMock(side_effect=build_exchange_error("x", "AUT_INVALID_KEY")))

        with pytest.raises(AuthenticationError):
            await normalizer.get_lot_info("BTC-USD")

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        """Test a cached entry is refreshed after its TTL."""
        clock = MockClock(NOW)
        fetcher = AsyncMock(return_value=self.LOT)
        normalizer = LotSizeNormalizer(fetcher, ttl_seconds=60, clock=clock)

        await normalizer.get_lot_info("BTC-USD")
        clock.advance(seconds=61)
        await normalizer.get_lot_info("BTC-USD")

        assert fetcher.await_count == 2


# ============================================================
# GATEWAY TESTS
# ============================================================


class TestExchangeGateway:
    """Tests for retries, placement and candles."""

    @pytest.fixture
    def clock(self):
        return MockClock(NOW)

    @pytest.fixture
    def exchange(self):
        return MockExchangeAdapter()

    @pytest.fixture
    def gateway(self, exchange, clock):
        return ExchangeGateway(exchange, ExecutionEngineConfig.for_testing(), clock=clock)

    @pytest.mark.asyncio
    async def test_read_retried(self, gateway, exchange):
        """Test a transient read failure is retried."""
        exchange.inject_error("get_ticker", "EXC_SERVICE_UNAVAILABLE")

        ticker = await gateway.get_ticker("BTC-USD")

        assert ticker.symbol == "BTC-USD"
        assert len(exchange.calls("get_ticker")) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, gateway, exchange):
        """Test max_retries bounds the attempts."""
        exchange.inject_error("get_ticker", "NET_CONNECTION_FAILED", times=5)

        with pytest.raises(ExchangeError):
            await gateway.get_ticker("BTC-USD")

        assert len(exchange.calls("get_ticker")) == 3

    @pytest.mark.asyncio
    async def test_validation_not_retried(self, gateway, exchange):
        """Test an unknown pair fails on the first attempt."""
        with pytest.raises(ExchangeError) as exc_info:
            await gateway.get_ticker("FOO-USD")

        assert exc_info.value.code == "VAL_UNKNOWN_PAIR"
        assert len(exchange.calls("get_ticker")) == 1

    @pytest.mark.asyncio
    async def test_placement_resubmitted_on_rate_limit(self, gateway, exchange):
        """Test a rate-limited placement is resubmitted."""
        exchange.inject_error("submit_order", "RTE_ORDER_LIMIT")

        order_id = await gateway.place_limit_order("BTC-USD", OrderSide.BUY, Decimal("0.001"), Decimal("49000"))

        assert order_id.startswith("MOCK-")
        assert len(exchange.calls("submit_order")) == 2

    @pytest.mark.asyncio
    async def test_placement_rejection_not_retried(self, gateway, exchange):
        """Test a rejected order is not resubmitted."""
        exchange.inject_error("submit_order", "VAL_INSUFFICIENT_FUNDS")

        with pytest.raises(ExchangeError) as exc_info:
            await gateway.place_market_order("BTC-USD", OrderSide.BUY, Decimal("1"))

        assert exc_info.value.code == "VAL_INSUFFICIENT_FUNDS"
        assert len(exchange.calls("submit_order")) == 1

    @pytest.mark.asyncio
    async def test_unknown_error_not_resubmitted(self, gateway, exchange):
        """Test an ambiguous placement failure is never resubmitted."""
        exchange.inject_error("submit_order", "EXC_UNKNOWN_ERROR")

        with pytest.raises(ExchangeError):
            await gateway.place_market_order("BTC-USD", OrderSide.BUY, Decimal("0.001"))

        assert len(exchange.calls("submit_order")) == 1

    @pytest.mark.asyncio
    async def test_placement_timeout(self, exchange, clock):
        """Test a slow placement reports TMO_ORDER_CONFIRMATION once."""
        config = ExecutionEngineConfig.for_testing()
        config.timeout.order_submission_timeout_seconds = 0.01
        gateway = ExchangeGateway(exchange, config, clock=clock)

        async def slow_submit(request):
            await asyncio.sleep(1)

        with patch.object(exchange, "submit_order", AsyncMock(side_effect=slow_submit)) as submit:
            with pytest.raises(ExchangeError) as exc_info:
                await gateway.place_limit_order("BTC-USD", OrderSide.BUY, Decimal("0.001"), Decimal("49000"))

        assert exc_info.value.code == "TMO_ORDER_CONFIRMATION"
        assert submit.await_count == 1

    @pytest.mark.asyncio
    async def test_cancel_unknown_order(self, gateway):
        """Test cancelling an order the exchange does not know returns False."""
        assert await gateway.cancel_order("BTC-USD", "MISSING") is False

    @pytest.mark.asyncio
    async def test_open_candle_dropped(self, gateway, exchange):
        """Test the bucket still in progress is never returned."""
        candles = hourly_candles(NOW - timedelta(hours=4), [1, 2, 3, 4, 5])
        exchange.set_candles("BTC-USD", "1h", candles)

        result = await gateway.get_candles("BTC-USD", "1h", 10)

        # 12:00 opened at NOW and is still open
        assert len(result) == 4
        assert result[-1].time == NOW - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_candles_cached_in_ledger(self, exchange, clock):
        """Test closed candles are stored and served from the ledger."""
        ledger = TradingLedger(Database.in_memory(), clock)
        gateway = ExchangeGateway(exchange, ExecutionEngineConfig.for_testing(), ledger, clock)
        exchange.set_candles("BTC-USD", "1h", hourly_candles(NOW - timedelta(hours=10), list(range(10))))

        first = await gateway.get_candles("BTC-USD", "1h", 5)
        second = await gateway.get_candles("BTC-USD", "1h", 5)

        assert [c.close for c in first] == [c.close for c in second]
        assert len(exchange.calls("get_candles")) == 1
        # limit + 1 fetched, all closed
        assert len(ledger.get_candles("BTC-USD", "1h", 100)) == 6
