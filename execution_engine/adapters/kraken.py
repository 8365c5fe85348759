"""
Execution Engine - Kraken Spot Adapter.

============================================================
PURPOSE
============================================================
Production adapter for the Kraken spot REST API.

SAFETY FEATURES:
- Request signing (see signing.py)
- Error mapping onto the internal registry
- Authentication failures surface as AuthenticationError
- Timeouts on every request

ENDPOINTS:
    public:  Time, Ticker, OHLC, AssetPairs
    private: Balance, AddOrder, CancelOrder, QueryOrders, OpenOrders

============================================================
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List

import aiohttp

from core.clock import from_epoch_ms
from core.exceptions import ExchangeError

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
from ..errors import build_exchange_error, map_kraken_error
from ..config import KrakenConfig, TimeoutConfig
from .base import (
    ExchangeAdapter,
    SubmitOrderRequest,
    SubmitOrderResponse,
    CancelOrderResponse,
)
from .candles import (
    aggregate_candles,
    native_fetch_limit,
    native_interval_for,
    parse_interval,
)
from .signing import KrakenSigner
from .symbols import KrakenSymbolMapper, SymbolMapper


logger = logging.getLogger(__name__)


# ============================================================
# STATUS MAPPING
# ============================================================

def map_kraken_order_status(status: str, filled_quantity: Decimal) -> OrderState:
    """
    Map a Kraken order status string to OrderState.

    open/pending with executed volume counts as partially filled.
    """
    status_lower = (status or "").lower()

    if status_lower in {"open", "pending"}:
        if filled_quantity > 0:
            return OrderState.PARTIALLY_FILLED
        return OrderState.PENDING
    if status_lower == "closed":
        return OrderState.FILLED
    if status_lower in {"canceled", "cancelled", "expired"}:
        return OrderState.CANCELLED

    logger.warning(f"Unknown Kraken order status: {status}")
    return OrderState.PENDING


def _decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


# ============================================================
# KRAKEN ADAPTER
# ============================================================

class KrakenAdapter(ExchangeAdapter):
    """
    Kraken spot exchange adapter.

    Implements the ExchangeAdapter interface for Kraken's REST API.
    """

    def __init__(
        self,
        config: Optional[KrakenConfig] = None,
        timeout_config: Optional[TimeoutConfig] = None,
        signer: Optional[KrakenSigner] = None,
        symbol_mapper: Optional[SymbolMapper] = None,
    ):
        """
        Initialize Kraken adapter.

        Args:
            config: Exchange configuration
            timeout_config: Timeout configuration
            signer: Request signer (built from env credentials if omitted)
            symbol_mapper: Symbol translation (Kraken naming if omitted)
        """
        self._config = config or KrakenConfig()
        self._timeout_config = timeout_config or TimeoutConfig()
        self._rest_url = self._config.base_url.rstrip("/")

        self._signer = signer or KrakenSigner(
            os.environ.get(self._config.api_key_env, ""),
            os.environ.get(self._config.api_secret_env, ""),
        )
        self._mapper = symbol_mapper or KrakenSymbolMapper()

        # Session
        self._session: Optional[aiohttp.ClientSession] = None
        self._connected = False

    @property
    def exchange_id(self) -> str:
        return "kraken"

    @property
    def is_connected(self) -> bool:
        return self._connected and self._session is not None

    @property
    def symbol_mapper(self) -> SymbolMapper:
        return self._mapper

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Connect to Kraken."""
        if self._session is not None:
            await self.disconnect()

        timeout = aiohttp.ClientTimeout(
            connect=self._timeout_config.connection_timeout_seconds,
            total=self._timeout_config.read_timeout_seconds,
        )
        self._session = aiohttp.ClientSession(timeout=timeout)

        try:
            await self._public("/0/public/Time")
            self._connected = True
            logger.info(f"Connected to Kraken ({self._rest_url})")
        except ExchangeError:
            await self.disconnect()
            raise

    async def disconnect(self) -> None:
        """Disconnect from Kraken."""
        self._connected = False
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Disconnected from Kraken")

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_ticker(self, symbol: str) -> Ticker:
        pair = self._mapper.to_exchange(symbol)
        result = await self._public("/0/public/Ticker", {"pair": pair})
        data = self._first_result(result, symbol)

        return Ticker(
            symbol=symbol,
            last=_decimal(data["c"][0]),
            bid=_decimal(data["b"][0]),
            ask=_decimal(data["a"][0]),
        )

    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        target_minutes = parse_interval(interval)
        native_minutes = native_interval_for(target_minutes)
        pair = self._mapper.to_exchange(symbol)

        result = await self._public(
            "/0/public/OHLC",
            {"pair": pair, "interval": native_minutes},
        )
        rows = [value for key, value in result.items() if key != "last"]
        if not rows:
            return []

        candles = [
            Candle(
                time=from_epoch_ms(int(row[0]) * 1000),
                open=_decimal(row[1]),
                high=_decimal(row[2]),
                low=_decimal(row[3]),
                close=_decimal(row[4]),
                volume=_decimal(row[6]),
            )
            for row in rows[0]
        ]

        if native_minutes == target_minutes:
            return candles[-limit:]

        fetch_limit = native_fetch_limit(limit, target_minutes, native_minutes)
        logger.debug(
            f"Aggregating {symbol} {native_minutes}m -> {interval} "
            f"from {min(fetch_limit, len(candles))} candles"
        )
        return aggregate_candles(candles[-fetch_limit:], target_minutes, limit)

    async def fetch_lot_info(self, symbol: str) -> LotInfo:
        pair = self._mapper.to_exchange(symbol)
        result = await self._public("/0/public/AssetPairs", {"pair": pair})
        data = self._first_result(result, symbol)

        lot_decimals = int(data.get("lot_decimals", 8))
        multiplier = _decimal(data.get("lot_multiplier"), "1")
        lot_size = multiplier * Decimal(1).scaleb(-lot_decimals)
        ordermin = _decimal(data.get("ordermin"))

        return LotInfo(
            symbol=symbol.upper(),
            lot_size=lot_size,
            lot_decimals=lot_decimals,
            min_order_size=ordermin if ordermin > 0 else lot_size,
            price_decimals=int(data.get("pair_decimals", 8)),
        )

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_balances(self) -> Dict[str, AccountBalance]:
        result = await self._private("/0/private/Balance")

        balances: Dict[str, AccountBalance] = {}
        for raw_asset, amount in result.items():
            # Staking and earn sub-accounts (DOT.S, XBT.M) are not spot balances
            if "." in raw_asset:
                continue
            asset = self._mapper.normalize_asset(raw_asset)
            total = _decimal(amount)
            existing = balances.get(asset)
            if existing is not None:
                existing.free += total
            else:
                balances[asset] = AccountBalance(asset=asset, free=total)

        return balances

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    async def submit_order(self, request: SubmitOrderRequest) -> SubmitOrderResponse:
        """Submit an order to Kraken."""
        params: Dict[str, Any] = {
            "pair": self._mapper.to_exchange(request.symbol),
            "type": request.side.value,
            "ordertype": request.order_type.value,
            "volume": f"{request.quantity:f}",
        }

        if request.order_type == OrderType.LIMIT:
            if request.price is None:
                return SubmitOrderResponse(
                    success=False,
                    error_code="VAL_INVALID_ARGUMENTS",
                    error_message="Limit order requires a price",
                )
            params["price"] = f"{request.price:f}"

        if request.post_only:
            params["oflags"] = "post"

        if request.client_order_id:
            params["cl_ord_id"] = request.client_order_id

        try:
            data = await self._private(
                "/0/private/AddOrder",
                params,
                timeout_code="TMO_ORDER_CONFIRMATION",
            )
        except ExchangeError as e:
            return SubmitOrderResponse(
                success=False,
                error_code=e.code,
                error_message=str(e),
            )

        txids = data.get("txid") or []
        if not txids:
            return SubmitOrderResponse(
                success=False,
                error_code="NET_BAD_RESPONSE",
                error_message="AddOrder returned no txid",
                raw_response=data,
            )

        return SubmitOrderResponse(
            success=True,
            exchange_order_id=str(txids[0]),
            status="open",
            exchange_timestamp=datetime.now(timezone.utc),
            raw_response=data,
        )

    async def cancel_order(self, symbol: str, order_id: str) -> CancelOrderResponse:
        try:
            data = await self._private("/0/private/CancelOrder", {"txid": order_id})
        except ExchangeError as e:
            return CancelOrderResponse(
                success=False,
                exchange_order_id=order_id,
                error_code=e.code,
                error_message=str(e),
            )

        return CancelOrderResponse(
            success=int(data.get("count", 0)) > 0,
            exchange_order_id=order_id,
            raw_response=data,
        )

    async def get_order_status(self, symbol: str, order_id: str) -> OrderStatusReport:
        result = await self._private(
            "/0/private/QueryOrders",
            {"txid": order_id, "trades": "false"},
        )
        data = result.get(order_id)
        if data is None:
            raise build_exchange_error(f"Order not found: {order_id}", "EXC_ORDER_NOT_FOUND")
        return self._parse_order(order_id, data, symbol)

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderStatusReport]:
        result = await self._private("/0/private/OpenOrders")

        reports = []
        for order_id, data in (result.get("open") or {}).items():
            report = self._parse_order(order_id, data)
            if symbol and report.symbol != symbol.upper():
                continue
            reports.append(report)
        return reports

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _parse_order(
        self,
        order_id: str,
        data: Dict[str, Any],
        symbol: Optional[str] = None,
    ) -> OrderStatusReport:
        descr = data.get("descr") or {}
        mapped = self._mapper.from_exchange(descr.get("pair", "")) if descr.get("pair") else None
        resolved_symbol = (mapped or symbol or descr.get("pair", "")).upper()

        filled = _decimal(data.get("vol_exec"))
        average = _decimal(data.get("price"))
        limit_price = _decimal(descr.get("price"))
        opened_at = None
        if data.get("opentm"):
            opened_at = datetime.fromtimestamp(float(data["opentm"]), tz=timezone.utc)

        return OrderStatusReport(
            order_id=order_id,
            symbol=resolved_symbol,
            side=OrderSide.SELL if descr.get("type") == "sell" else OrderSide.BUY,
            order_type=OrderType.MARKET if descr.get("ordertype") == "market" else OrderType.LIMIT,
            status=map_kraken_order_status(data.get("status", ""), filled),
            quantity=_decimal(data.get("vol")),
            filled_quantity=filled,
            average_price=average if average > 0 else None,
            fee=_decimal(data.get("fee")),
            limit_price=limit_price if limit_price > 0 else None,
            opened_at=opened_at,
        )

    @staticmethod
    def _first_result(result: Dict[str, Any], symbol: str) -> Dict[str, Any]:
        if not result:
            raise build_exchange_error(f"No data returned for {symbol}", "VAL_UNKNOWN_PAIR")
        return next(iter(result.values()))

    async def _public(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params)

    async def _private(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        timeout_code: str = "TMO_READ",
    ) -> Any:
        if not self._signer.has_credentials:
            raise build_exchange_error(
                "Kraken API credentials are not configured",
                "AUT_MISSING_CREDENTIALS",
            )
        return await self._request(
            "POST", path, params=params, signed=True, timeout_code=timeout_code,
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        timeout_code: str = "TMO_READ",
    ) -> Any:
        """Make API request and unwrap Kraken's {error, result} envelope."""
        if not self._session:
            raise ExchangeError("Not connected", code="NET_CONNECTION_FAILED", is_retryable=True)

        url = f"{self._rest_url}{path}"
        headers: Dict[str, str] = {}
        data = None

        if signed:
            data, headers = self._signer.sign(path, params)
            params = None

        try:
            async with self._session.request(
                method,
                url,
                params=params,
                data=data,
                headers=headers,
            ) as response:
                if response.status == 429:
                    raise build_exchange_error("HTTP 429 Too Many Requests", "RTE_API_LIMIT")
                if response.status >= 500:
                    raise build_exchange_error(
                        f"HTTP {response.status} from Kraken", "EXC_SERVICE_UNAVAILABLE",
                    )

                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    raise build_exchange_error(
                        f"Invalid JSON from {path} (HTTP {response.status})",
                        "NET_BAD_RESPONSE",
                    )

                errors = payload.get("error") or []
                if errors:
                    code = map_kraken_error(errors)
                    raise build_exchange_error("; ".join(errors), code)

                if response.status != 200:
                    raise build_exchange_error(
                        f"HTTP {response.status} from {path}", "NET_BAD_RESPONSE",
                    )

                return payload.get("result", {})

        except aiohttp.ClientError as e:
            raise ExchangeError(
                f"Network error: {e}",
                code="NET_CONNECTION_FAILED",
                is_retryable=True,
            )
        except asyncio.TimeoutError:
            raise build_exchange_error(f"Request timeout: {path}", timeout_code)
