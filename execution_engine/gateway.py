"""
Execution Engine - Exchange Gateway.

============================================================
PURPOSE
============================================================
Single exchange entry point for the evaluator, the order
lifecycle manager and reconciliation.

Wraps an ExchangeAdapter with:
- Bounded retries on transient errors
- Lot / price normalization
- Candle cache backed by the trading ledger
- Timeouts on order placement

RETRY RULES:
- Reads retry on any retryable code
- Order placement retries only when the request was certainly
  not accepted (rate limit, connection refused, service down)
- Authentication errors are raised immediately

============================================================
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, List, Optional

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.exceptions import ExchangeError

from .adapters.base import ExchangeAdapter, SubmitOrderResponse
from .adapters.candles import parse_interval
from .adapters.lot_sizes import LotSizeNormalizer
from .adapters.symbols import SymbolMapper
from .config import ExecutionEngineConfig
from .errors import RESUBMITTABLE_ERROR_CODES, build_exchange_error
from .retry import RetryPolicy
from .types import (
    AccountBalance,
    Candle,
    LotInfo,
    OrderSide,
    OrderStatusReport,
    Ticker,
)

if TYPE_CHECKING:
    from storage.ledger import TradingLedger


logger = logging.getLogger(__name__)


class ExchangeGateway:
    """
    Uniform, retried exchange contract.

    Example:
        gateway = ExchangeGateway(adapter, config, ledger=ledger)
        ticker = await gateway.get_ticker("BTC-USD")
        qty = await gateway.round_quantity("BTC-USD", Decimal("0.0023"))
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        config: Optional[ExecutionEngineConfig] = None,
        ledger: Optional["TradingLedger"] = None,
        clock: Optional[ClockProtocol] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._adapter = adapter
        self._config = config or ExecutionEngineConfig()
        self._ledger = ledger
        self._clock = clock or SystemClock()
        self._retry = retry_policy or RetryPolicy(self._config.retry)
        self._normalizer = LotSizeNormalizer(
            fetcher=self._fetch_lot_info,
            ttl_seconds=self._config.exchange.lot_info_ttl_seconds,
            clock=self._clock,
        )

    @property
    def adapter(self) -> ExchangeAdapter:
        return self._adapter

    @property
    def symbol_mapper(self) -> SymbolMapper:
        return self._adapter.symbol_mapper

    @property
    def normalizer(self) -> LotSizeNormalizer:
        return self._normalizer

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_ticker(self, symbol: str) -> Ticker:
        return await self._retry.call(
            f"ticker {symbol}",
            lambda: self._adapter.get_ticker(symbol),
        )

    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        """
        Closed candles, time-ascending, at most `limit`.

        The bucket still in progress is dropped so every stored
        candle is final. The ledger cache is used while it already
        holds the most recently closed bucket.
        """
        interval_delta = timedelta(minutes=parse_interval(interval))
        now = self._clock.now()

        if self._ledger is not None:
            cached = self._ledger.get_candles(symbol, interval, limit)
            if len(cached) >= limit and ensure_utc(cached[-1].time) + 2 * interval_delta > now:
                logger.debug(f"Candle cache hit for {symbol} {interval} ({len(cached)})")
                return cached

        fetched = await self._retry.call(
            f"candles {symbol} {interval}",
            lambda: self._adapter.get_candles(symbol, interval, limit + 1),
        )
        closed = [c for c in fetched if ensure_utc(c.time) + interval_delta <= now]

        if self._ledger is not None and closed:
            self._ledger.append_candles(symbol, interval, closed)

        return closed[-limit:]

    async def get_lot_info(self, symbol: str) -> LotInfo:
        return await self._normalizer.get_lot_info(symbol)

    async def round_quantity(self, symbol: str, quantity: Decimal) -> Decimal:
        return await self._normalizer.round_quantity(symbol, quantity)

    async def round_price(self, symbol: str, price: Decimal, side: OrderSide) -> Decimal:
        return await self._normalizer.round_price(symbol, price, side)

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_balances(self) -> Dict[str, AccountBalance]:
        return await self._retry.call("balances", self._adapter.get_balances)

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
        post_only: bool = True,
    ) -> str:
        """
        Place a limit order and return the exchange order id.

        Raises:
            ExchangeError: rejected, or placement outcome unknown
        """
        return await self._place(
            f"limit {side.value} {quantity} {symbol} @ {price}",
            lambda: self._adapter.place_limit_order(symbol, side, quantity, price, post_only),
        )

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> str:
        return await self._place(
            f"market {side.value} {quantity} {symbol}",
            lambda: self._adapter.place_market_order(symbol, side, quantity),
        )

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        """Cancel an order. Returns False if the exchange refused."""
        response = await self._adapter.cancel_order(symbol, order_id)
        if not response.success:
            code = response.error_code or "EXC_UNKNOWN_ERROR"
            error = build_exchange_error(response.error_message or "Cancel failed", code)
            if not error.is_retryable and code != "EXC_ORDER_NOT_FOUND":
                raise error
            logger.warning(f"Cancel {order_id} ({symbol}) failed: {code} {response.error_message}")
            return False
        return True

    async def get_order_status(self, symbol: str, order_id: str) -> OrderStatusReport:
        return await self._retry.call(
            f"order status {order_id}",
            lambda: self._adapter.get_order_status(symbol, order_id),
        )

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderStatusReport]:
        return await self._retry.call(
            "open orders",
            lambda: self._adapter.get_open_orders(symbol),
        )

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _fetch_lot_info(self, symbol: str) -> LotInfo:
        return await self._retry.call(
            f"lot info {symbol}",
            lambda: self._adapter.fetch_lot_info(symbol),
        )

    async def _place(self, description: str, submit) -> str:
        timeout = self._config.timeout.order_submission_timeout_seconds

        async def attempt() -> str:
            try:
                response: SubmitOrderResponse = await asyncio.wait_for(submit(), timeout=timeout)
            except asyncio.TimeoutError:
                raise build_exchange_error(
                    f"No confirmation for {description} within {timeout}s",
                    "TMO_ORDER_CONFIRMATION",
                )
            if not response.success or not response.exchange_order_id:
                code = response.error_code or "EXC_UNKNOWN_ERROR"
                raise build_exchange_error(response.error_message or "Order rejected", code)
            return response.exchange_order_id

        try:
            order_id = await self._retry.call(description, attempt, retry_codes=RESUBMITTABLE_ERROR_CODES)
        except ExchangeError as e:
            logger.error(f"Order placement failed ({description}): {e.code} {e}")
            raise

        logger.info(f"Placed {description}: {order_id}")
        return order_id
