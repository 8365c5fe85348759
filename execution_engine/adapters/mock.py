"""
Execution Engine - Mock Exchange Adapter.

============================================================
PURPOSE
============================================================
Mock adapter for tests and dry runs.

FEATURES:
- Scripted tickers, candles, balances and lot info
- Configurable fill behavior (immediate, never, partial)
- Per-operation error injection
- Full request log

============================================================
"""

import asyncio
import logging
import random
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field
from decimal import Decimal

from ..types import (
    OrderSide,
    OrderType,
    OrderState,
    Candle,
    Ticker,
    AccountBalance,
    LotInfo,
    OrderStatusReport,
)
from ..errors import build_exchange_error
from .base import (
    ExchangeAdapter,
    SubmitOrderRequest,
    SubmitOrderResponse,
    CancelOrderResponse,
)
from .candles import parse_interval
from .lot_sizes import fallback_lot_info
from .symbols import KrakenSymbolMapper, SymbolMapper


logger = logging.getLogger(__name__)


# Fill modes
FILL_IMMEDIATE = "immediate"
FILL_NEVER = "never"
FILL_PARTIAL = "partial"


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for mock adapter."""

    # Latency simulation
    min_latency_ms: float = 0.0
    """Minimum simulated latency."""

    max_latency_ms: float = 0.0
    """Maximum simulated latency."""

    # Initial state
    initial_balances: Dict[str, Decimal] = field(
        default_factory=lambda: {"USD": Decimal("1000")}
    )
    """Initial balances by asset."""

    prices: Dict[str, Decimal] = field(
        default_factory=lambda: {
            "BTC-USD": Decimal("50000"),
            "ETH-USD": Decimal("3000"),
            "SOL-USD": Decimal("100"),
        }
    )
    """Mid prices by symbol."""

    spread_bps: int = 5
    """Half-spread applied around the mid price for bid/ask."""

    # Fill behavior
    limit_fill_mode: str = FILL_IMMEDIATE
    """What happens to a resting limit order: immediate, never, partial."""

    market_fill_mode: str = FILL_IMMEDIATE
    """What happens to a market order: immediate, never, partial."""

    partial_fill_ratio: Decimal = Decimal("0.5")
    """Executed share for partial fills."""

    # Fees
    maker_fee_rate: Decimal = Decimal("0.0016")
    taker_fee_rate: Decimal = Decimal("0.0026")


# ============================================================
# MOCK ORDER
# ============================================================

@dataclass
class MockOrder:
    """Mock order state."""

    order_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Optional[Decimal]
    post_only: bool

    status: OrderState = OrderState.PENDING
    filled_quantity: Decimal = Decimal("0")
    average_price: Optional[Decimal] = None
    fee: Decimal = Decimal("0")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_report(self) -> OrderStatusReport:
        return OrderStatusReport(
            order_id=self.order_id,
            symbol=self.symbol,
            side=self.side,
            order_type=self.order_type,
            status=self.status,
            quantity=self.quantity,
            filled_quantity=self.filled_quantity,
            average_price=self.average_price,
            fee=self.fee,
            limit_price=self.price,
            opened_at=self.created_at,
        )


# ============================================================
# MOCK EXCHANGE ADAPTER
# ============================================================

class MockExchangeAdapter(ExchangeAdapter):
    """
    Mock exchange adapter for testing.

    Simulates exchange behavior including:
    - Order submission and fills
    - Balance management
    - Error injection
    """

    def __init__(self, config: Optional[MockConfig] = None):
        self._config = config or MockConfig()
        self._connected = False
        self._mapper = KrakenSymbolMapper()

        # State
        self._balances: Dict[str, AccountBalance] = {}
        self._orders: Dict[str, MockOrder] = {}
        self._tickers: Dict[str, Ticker] = {}
        self._candles: Dict[Tuple[str, str], List[Candle]] = {}
        self._lot_infos: Dict[str, LotInfo] = {}

        # Error injection: operation -> queue of error codes
        self._injected_errors: Dict[str, List[str]] = defaultdict(list)

        # Request log: (operation, details)
        self.requests: List[Tuple[str, Dict[str, Any]]] = []

        self._init_state()

    def _init_state(self) -> None:
        """Initialize mock state."""
        self._balances = {
            asset: AccountBalance(asset=asset, free=amount)
            for asset, amount in self._config.initial_balances.items()
        }
        self._tickers = {}
        for symbol, price in self._config.prices.items():
            self.set_price(symbol, price)

    @property
    def exchange_id(self) -> str:
        return "mock"

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def symbol_mapper(self) -> SymbolMapper:
        return self._mapper

    @property
    def orders(self) -> Dict[str, MockOrder]:
        return self._orders

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Connect to mock exchange."""
        await self._simulate_latency()
        self._connected = True
        logger.info("MockExchangeAdapter connected")

    async def disconnect(self) -> None:
        """Disconnect from mock exchange."""
        self._connected = False
        logger.info("MockExchangeAdapter disconnected")

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_ticker(self, symbol: str) -> Ticker:
        await self._simulate_latency()
        self._record("get_ticker", symbol=symbol)
        self._raise_injected("get_ticker")

        ticker = self._tickers.get(symbol)
        if ticker is None:
            raise build_exchange_error(f"Unknown asset pair {symbol}", "VAL_UNKNOWN_PAIR")
        return ticker

    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        await self._simulate_latency()
        self._record("get_candles", symbol=symbol, interval=interval, limit=limit)
        self._raise_injected("get_candles")

        scripted = self._candles.get((symbol, interval))
        if scripted is not None:
            return list(scripted[-limit:])

        ticker = self._tickers.get(symbol)
        if ticker is None:
            raise build_exchange_error(f"Unknown asset pair {symbol}", "VAL_UNKNOWN_PAIR")

        # Flat synthetic series ending at the current hour
        step = timedelta(minutes=parse_interval(interval))
        end = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
        price = ticker.last
        return [
            Candle(
                time=end - step * (limit - 1 - i),
                open=price,
                high=price,
                low=price,
                close=price,
                volume=Decimal("1"),
            )
            for i in range(limit)
        ]

    async def fetch_lot_info(self, symbol: str) -> LotInfo:
        await self._simulate_latency()
        self._record("fetch_lot_info", symbol=symbol)
        self._raise_injected("fetch_lot_info")

        if symbol in self._lot_infos:
            return self._lot_infos[symbol]
        info = fallback_lot_info(symbol)
        return LotInfo(
            symbol=info.symbol,
            lot_size=info.lot_size,
            lot_decimals=info.lot_decimals,
            min_order_size=info.min_order_size,
            price_decimals=info.price_decimals,
        )

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_balances(self) -> Dict[str, AccountBalance]:
        await self._simulate_latency()
        self._record("get_balances")
        self._raise_injected("get_balances")

        return {
            asset: AccountBalance(asset=asset, free=b.free, locked=b.locked)
            for asset, b in self._balances.items()
        }

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    async def submit_order(self, request: SubmitOrderRequest) -> SubmitOrderResponse:
        await self._simulate_latency()
        self._record(
            "submit_order",
            symbol=request.symbol,
            side=request.side,
            order_type=request.order_type,
            quantity=request.quantity,
            price=request.price,
            post_only=request.post_only,
        )

        error = self._pop_injected("submit_order")
        if error:
            return SubmitOrderResponse(
                success=False,
                error_code=error,
                error_message=f"Injected error: {error}",
            )

        order = MockOrder(
            order_id=f"MOCK-{uuid.uuid4().hex[:12].upper()}",
            symbol=request.symbol,
            side=request.side,
            order_type=request.order_type,
            quantity=request.quantity,
            price=request.price,
            post_only=request.post_only,
        )
        self._orders[order.order_id] = order

        mode = (
            self._config.market_fill_mode
            if request.order_type == OrderType.MARKET
            else self._config.limit_fill_mode
        )
        if mode == FILL_IMMEDIATE:
            self.fill_order(order.order_id)
        elif mode == FILL_PARTIAL:
            self.fill_order(order.order_id, request.quantity * self._config.partial_fill_ratio)

        return SubmitOrderResponse(
            success=True,
            exchange_order_id=order.order_id,
            status=order.status.value,
            exchange_timestamp=datetime.now(timezone.utc),
        )

    async def cancel_order(self, symbol: str, order_id: str) -> CancelOrderResponse:
        await self._simulate_latency()
        self._record("cancel_order", symbol=symbol, order_id=order_id)

        error = self._pop_injected("cancel_order")
        if error:
            return CancelOrderResponse(
                success=False,
                exchange_order_id=order_id,
                error_code=error,
                error_message=f"Injected error: {error}",
            )

        order = self._orders.get(order_id)
        if not order or order.status.is_terminal():
            return CancelOrderResponse(
                success=False,
                exchange_order_id=order_id,
                error_code="EXC_ORDER_NOT_FOUND",
                error_message="Order not found or already closed",
            )

        order.status = OrderState.CANCELLED
        return CancelOrderResponse(success=True, exchange_order_id=order_id)

    async def get_order_status(self, symbol: str, order_id: str) -> OrderStatusReport:
        await self._simulate_latency()
        self._record("get_order_status", symbol=symbol, order_id=order_id)
        self._raise_injected("get_order_status")

        order = self._orders.get(order_id)
        if not order:
            raise build_exchange_error(f"Unknown order {order_id}", "EXC_ORDER_NOT_FOUND")
        return order.to_report()

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderStatusReport]:
        await self._simulate_latency()
        self._record("get_open_orders", symbol=symbol)
        self._raise_injected("get_open_orders")

        return [
            order.to_report()
            for order in self._orders.values()
            if order.status.is_active() and (symbol is None or order.symbol == symbol)
        ]

    # --------------------------------------------------------
    # TEST HELPERS
    # --------------------------------------------------------

    def set_price(self, symbol: str, price: Decimal) -> None:
        """Set mid price; bid/ask are derived from the spread."""
        half_spread = price * Decimal(self._config.spread_bps) / Decimal("10000")
        self._tickers[symbol] = Ticker(
            symbol=symbol,
            last=price,
            bid=price - half_spread,
            ask=price + half_spread,
        )

    def set_ticker(self, symbol: str, last: Decimal, bid: Decimal, ask: Decimal) -> None:
        self._tickers[symbol] = Ticker(symbol=symbol, last=last, bid=bid, ask=ask)

    def remove_ticker(self, symbol: str) -> None:
        self._tickers.pop(symbol, None)

    def set_balance(self, asset: str, free: Decimal, locked: Decimal = Decimal("0")) -> None:
        """Set balance for testing."""
        self._balances[asset] = AccountBalance(asset=asset, free=free, locked=locked)

    def set_candles(self, symbol: str, interval: str, candles: List[Candle]) -> None:
        self._candles[(symbol, interval)] = list(candles)

    def set_lot_info(self, lot_info: LotInfo) -> None:
        self._lot_infos[lot_info.symbol] = lot_info

    def inject_error(self, operation: str, error_code: str, times: int = 1) -> None:
        """Fail the next `times` calls of an operation with error_code."""
        self._injected_errors[operation].extend([error_code] * times)

    def add_resting_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
        created_at: Optional[datetime] = None,
    ) -> str:
        """Place a resting limit order directly, bypassing the fill mode."""
        order = MockOrder(
            order_id=f"MOCK-{uuid.uuid4().hex[:12].upper()}",
            symbol=symbol,
            side=side,
            order_type=OrderType.LIMIT,
            quantity=quantity,
            price=price,
            post_only=True,
            created_at=created_at or datetime.now(timezone.utc),
        )
        self._orders[order.order_id] = order
        return order.order_id

    def fill_order(
        self,
        order_id: str,
        quantity: Optional[Decimal] = None,
        price: Optional[Decimal] = None,
    ) -> None:
        """Execute (part of) an order and move balances."""
        order = self._orders[order_id]
        fill_qty = min(quantity if quantity is not None else order.quantity, order.quantity - order.filled_quantity)
        if fill_qty <= 0:
            return

        if price is None:
            if order.order_type == OrderType.LIMIT and order.price is not None:
                price = order.price
            else:
                price = self._tickers[order.symbol].price_for(order.side)

        is_taker = order.order_type == OrderType.MARKET
        rate = self._config.taker_fee_rate if is_taker else self._config.maker_fee_rate
        fee = fill_qty * price * rate

        previous_notional = order.filled_quantity * (order.average_price or Decimal("0"))
        order.filled_quantity += fill_qty
        order.average_price = (previous_notional + fill_qty * price) / order.filled_quantity
        order.fee += fee
        order.status = (
            OrderState.FILLED
            if order.filled_quantity >= order.quantity
            else OrderState.PARTIALLY_FILLED
        )

        self._apply_fill_to_balances(order.symbol, order.side, fill_qty, price, fee)

    def cancel_externally(self, order_id: str) -> None:
        """Simulate an exchange-side cancellation (e.g. post-only reject)."""
        self._orders[order_id].status = OrderState.CANCELLED

    def calls(self, operation: str) -> List[Dict[str, Any]]:
        """Logged requests for one operation."""
        return [details for op, details in self.requests if op == operation]

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _simulate_latency(self) -> None:
        """Simulate network latency."""
        if self._config.max_latency_ms <= 0:
            return
        latency_ms = random.uniform(
            self._config.min_latency_ms,
            self._config.max_latency_ms,
        )
        await asyncio.sleep(latency_ms / 1000)

    def _record(self, operation: str, **details: Any) -> None:
        self.requests.append((operation, details))

    def _pop_injected(self, operation: str) -> Optional[str]:
        queue = self._injected_errors.get(operation)
        if queue:
            return queue.pop(0)
        return None

    def _raise_injected(self, operation: str) -> None:
        code = self._pop_injected(operation)
        if code:
            raise build_exchange_error(f"Injected error: {code}", code)

    def _apply_fill_to_balances(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
        fee: Decimal,
    ) -> None:
        base = self._mapper.base_asset(symbol)
        quote = self._mapper.quote_asset(symbol)
        base_balance = self._balances.setdefault(base, AccountBalance(asset=base))
        quote_balance = self._balances.setdefault(quote, AccountBalance(asset=quote))

        if side == OrderSide.BUY:
            base_balance.free += quantity
            quote_balance.free -= quantity * price + fee
        else:
            base_balance.free -= quantity
            quote_balance.free += quantity * price - fee
