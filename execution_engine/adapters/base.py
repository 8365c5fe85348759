"""
Execution Engine - Exchange Adapter Base.

============================================================
PURPOSE
============================================================
Abstract interface for the exchange collaborator.

CONTRACT:
    ticker(symbol), balances(), candles(symbol, interval, limit),
    place limit / market order, cancel(id), order status(id),
    open orders, lot info(symbol)

DESIGN PRINCIPLES:
- Internal symbols (BTC-USD) and normalized assets (BTC) only
- Read failures raise ExchangeError subclasses
- Order submission and cancellation report failure in the response
- Fully testable with the mock adapter

============================================================
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from decimal import Decimal

from ..types import (
    OrderSide,
    OrderType,
    Candle,
    Ticker,
    AccountBalance,
    LotInfo,
    OrderStatusReport,
)
from .symbols import SymbolMapper


logger = logging.getLogger(__name__)


# ============================================================
# ADAPTER REQUEST/RESPONSE TYPES
# ============================================================

@dataclass
class SubmitOrderRequest:
    """Request to submit an order."""

    symbol: str
    """Internal symbol."""

    side: OrderSide
    """Order side."""

    order_type: OrderType
    """Order type."""

    quantity: Decimal
    """Order quantity, already lot-rounded."""

    price: Optional[Decimal] = None
    """Limit price, already rounded."""

    post_only: bool = False
    """Reject instead of taking liquidity."""

    client_order_id: Optional[str] = None
    """Client reference for idempotency."""


@dataclass
class SubmitOrderResponse:
    """Response from order submission."""

    success: bool
    """Whether submission succeeded."""

    exchange_order_id: Optional[str] = None
    """Exchange-assigned order ID."""

    status: Optional[str] = None
    """Order status from exchange."""

    # Error info
    error_code: Optional[str] = None
    """Internal error code if failed."""

    error_message: Optional[str] = None
    """Error message if failed."""

    exchange_timestamp: Optional[datetime] = None

    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CancelOrderResponse:
    """Response from order cancellation."""

    success: bool
    """Whether cancellation succeeded."""

    exchange_order_id: Optional[str] = None
    """Exchange order ID."""

    # Error info
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    raw_response: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# ABSTRACT EXCHANGE ADAPTER
# ============================================================

class ExchangeAdapter(ABC):
    """
    Abstract interface for exchange adapters.

    Implementations:
    - KrakenAdapter: Kraken spot REST API
    - MockExchangeAdapter: For testing and dry runs
    """

    @property
    @abstractmethod
    def exchange_id(self) -> str:
        """Get exchange identifier."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if adapter is connected."""
        pass

    @property
    @abstractmethod
    def symbol_mapper(self) -> SymbolMapper:
        """Symbol / asset translation for this exchange."""
        pass

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        """
        Connect to exchange.

        Raises:
            ExchangeError: If connection fails
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from exchange."""
        pass

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Ticker:
        """Last trade and top of book."""
        pass

    @abstractmethod
    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        """
        Candle history, time-ascending, newest last.

        Args:
            symbol: Internal symbol
            interval: Interval string (15m, 6h, 1d)
            limit: Maximum candles returned
        """
        pass

    @abstractmethod
    async def fetch_lot_info(self, symbol: str) -> LotInfo:
        """Tradable increments for a symbol, straight from the exchange."""
        pass

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    @abstractmethod
    async def get_balances(self) -> Dict[str, AccountBalance]:
        """All balances keyed by normalized asset code."""
        pass

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    @abstractmethod
    async def submit_order(self, request: SubmitOrderRequest) -> SubmitOrderResponse:
        """
        Submit an order to exchange.

        Rejections and transport failures come back as
        success=False with an internal error code.
        """
        pass

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> CancelOrderResponse:
        """Cancel a resting order."""
        pass

    @abstractmethod
    async def get_order_status(self, symbol: str, order_id: str) -> OrderStatusReport:
        """Authoritative status, executed quantity, average price and fee."""
        pass

    @abstractmethod
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderStatusReport]:
        """Resting orders, optionally filtered by symbol."""
        pass

    # --------------------------------------------------------
    # CONVENIENCE
    # --------------------------------------------------------

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
        post_only: bool = True,
    ) -> SubmitOrderResponse:
        return await self.submit_order(SubmitOrderRequest(
            symbol=symbol,
            side=side,
            order_type=OrderType.LIMIT,
            quantity=quantity,
            price=price,
            post_only=post_only,
        ))

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
    ) -> SubmitOrderResponse:
        return await self.submit_order(SubmitOrderRequest(
            symbol=symbol,
            side=side,
            order_type=OrderType.MARKET,
            quantity=quantity,
        ))
