"""
Execution Engine - Adapters Package.

============================================================
PURPOSE
============================================================
Exchange adapter implementations.

AVAILABLE ADAPTERS:
- KrakenAdapter: Kraken spot REST API
- MockExchangeAdapter: For testing and dry runs

UTILITIES:
- KrakenSigner: HMAC-SHA512 request signing
- LotSizeNormalizer: Lot/price rounding with fallback table
- KrakenSymbolMapper: Symbol and asset code translation
- aggregate_candles: Client-side interval aggregation

============================================================
"""

# Base types
from .base import (
    ExchangeAdapter,
    SubmitOrderRequest,
    SubmitOrderResponse,
    CancelOrderResponse,
)

# Adapters
from .kraken import KrakenAdapter, map_kraken_order_status
from .mock import (
    MockExchangeAdapter,
    MockConfig,
    MockOrder,
    FILL_IMMEDIATE,
    FILL_NEVER,
    FILL_PARTIAL,
)

# Utilities
from .signing import KrakenSigner, NonceGenerator, sign_request
from .symbols import SymbolMapper, KrakenSymbolMapper
from .lot_sizes import (
    FALLBACK_LOT_SIZES,
    LotSizeNormalizer,
    fallback_lot_info,
    round_quantity,
    round_price,
)
from .candles import (
    KRAKEN_INTERVALS,
    parse_interval,
    native_interval_for,
    aggregate_candles,
)


__all__ = [
    # Base
    "ExchangeAdapter",
    "SubmitOrderRequest",
    "SubmitOrderResponse",
    "CancelOrderResponse",
    # Adapters
    "KrakenAdapter",
    "map_kraken_order_status",
    "MockExchangeAdapter",
    "MockConfig",
    "MockOrder",
    "FILL_IMMEDIATE",
    "FILL_NEVER",
    "FILL_PARTIAL",
    # Signing
    "KrakenSigner",
    "NonceGenerator",
    "sign_request",
    # Symbols
    "SymbolMapper",
    "KrakenSymbolMapper",
    # Lot sizes
    "FALLBACK_LOT_SIZES",
    "LotSizeNormalizer",
    "fallback_lot_info",
    "round_quantity",
    "round_price",
    # Candles
    "KRAKEN_INTERVALS",
    "parse_interval",
    "native_interval_for",
    "aggregate_candles",
]
