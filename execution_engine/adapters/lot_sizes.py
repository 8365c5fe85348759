"""
Execution Engine - Lot / Price Normalizer.

============================================================
PURPOSE
============================================================
Round quantities and prices to what the exchange will accept.

ROUNDING RULES:
- Quantity always rounds toward zero, so the notional placed
  never exceeds the computed allocation.
- Price rounds to the passive side: buys down, sells up.

CACHING:
- Lot info is fetched lazily per symbol and kept for the
  process lifetime (optional TTL).
- A failed fetch falls back to FALLBACK_LOT_SIZES. Fallback
  entries are NOT cached so the next call retries the fetch.

============================================================
"""

import logging
from decimal import Decimal, ROUND_DOWN, ROUND_FLOOR, ROUND_UP
from typing import Awaitable, Callable, Dict, Optional, Tuple

from core.clock import ClockProtocol, SystemClock
from core.exceptions import AuthenticationError, ExchangeError

from ..types import LotInfo, OrderSide


logger = logging.getLogger(__name__)


# ============================================================
# FALLBACK POLICY TABLE
# ============================================================

# symbol -> (lot size, lot decimals, min order size, price decimals)
FALLBACK_LOT_SIZES: Dict[str, Tuple[str, int, str, int]] = {
    "BTC-USD": ("0.00001", 5, "0.0001", 1),
    "ETH-USD": ("0.001", 3, "0.01", 2),
    "SOL-USD": ("0.01", 2, "0.1", 2),
    "LINK-USD": ("0.01", 2, "0.1", 3),
    "AVAX-USD": ("0.01", 2, "0.1", 2),
    "ADA-USD": ("0.1", 1, "1", 4),
    "XRP-USD": ("0.1", 1, "1", 4),
    "DOGE-USD": ("0.00000001", 8, "0.00000001", 6),
    "DOT-USD": ("0.01", 2, "0.1", 4),
}

DEFAULT_FALLBACK: Tuple[str, int, str, int] = ("0.00000001", 8, "0.00000001", 8)


def fallback_lot_info(symbol: str) -> LotInfo:
    """Conservative lot info for a symbol whose metadata could not be fetched."""
    lot, lot_decimals, minimum, price_decimals = FALLBACK_LOT_SIZES.get(
        symbol.upper(), DEFAULT_FALLBACK,
    )
    return LotInfo(
        symbol=symbol.upper(),
        lot_size=Decimal(lot),
        lot_decimals=lot_decimals,
        min_order_size=Decimal(minimum),
        price_decimals=price_decimals,
        source="fallback",
    )


# ============================================================
# ROUNDING
# ============================================================

def _exponent(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def round_quantity(quantity: Decimal, lot: LotInfo) -> Decimal:
    """
    Round a quantity down to the lot increment.

    Returns Decimal("0") when the rounded quantity is below the
    exchange minimum order size.
    """
    if quantity <= 0 or lot.lot_size <= 0:
        return Decimal("0")

    steps = (quantity / lot.lot_size).to_integral_value(rounding=ROUND_FLOOR)
    rounded = (steps * lot.lot_size).quantize(
        _exponent(lot.lot_decimals), rounding=ROUND_DOWN,
    )
    if rounded < lot.min_order_size:
        return Decimal("0")
    return rounded


def round_price(price: Decimal, lot: LotInfo, side: OrderSide) -> Decimal:
    """Quantize a limit price; buys round down, sells round up."""
    rounding = ROUND_DOWN if side == OrderSide.BUY else ROUND_UP
    return price.quantize(_exponent(lot.price_decimals), rounding=rounding)


# ============================================================
# NORMALIZER
# ============================================================

LotInfoFetcher = Callable[[str], Awaitable[LotInfo]]


class LotSizeNormalizer:
    """
    Per-symbol lot info cache with a fallback policy.

    The fetcher is usually ExchangeAdapter.fetch_lot_info.
    """

    def __init__(
        self,
        fetcher: LotInfoFetcher,
        ttl_seconds: Optional[float] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._fetcher = fetcher
        self._ttl_seconds = ttl_seconds
        self._clock = clock or SystemClock()
        self._cache: Dict[str, Tuple[LotInfo, float]] = {}

    async def get_lot_info(self, symbol: str) -> LotInfo:
        """
        Cached lot info for a symbol.

        Authentication errors propagate; every other fetch failure
        resolves to the fallback table.
        """
        symbol = symbol.upper()
        cached = self._cache.get(symbol)
        if cached is not None:
            info, fetched_at = cached
            if self._ttl_seconds is None or self._clock.timestamp() - fetched_at < self._ttl_seconds:
                return info

        try:
            info = await self._fetcher(symbol)
        except AuthenticationError:
            raise
        except ExchangeError as e:
            logger.warning(f"Lot info fetch failed for {symbol}, using fallback: {e}")
            return fallback_lot_info(symbol)

        self._cache[symbol] = (info, self._clock.timestamp())
        logger.debug(
            f"Cached lot info for {symbol}: lot={info.lot_size} "
            f"min={info.min_order_size} price_decimals={info.price_decimals}"
        )
        return info

    async def round_quantity(self, symbol: str, quantity: Decimal) -> Decimal:
        return round_quantity(quantity, await self.get_lot_info(symbol))

    async def round_price(self, symbol: str, price: Decimal, side: OrderSide) -> Decimal:
        return round_price(price, await self.get_lot_info(symbol), side)

    def is_cached(self, symbol: str) -> bool:
        return symbol.upper() in self._cache

    def clear(self) -> None:
        self._cache.clear()
