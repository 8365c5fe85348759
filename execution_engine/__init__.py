"""
Execution Engine Package.

============================================================
PURPOSE
============================================================
Everything that talks to the exchange.

CRITICAL PRINCIPLE:
    "The exchange is authoritative for fills and balances."

AUTHORITY BOUNDARIES:
    CAN:
        - Place, poll and cancel orders
        - Replace stale maker orders with market orders
        - Record confirmed fills in the ledger
        - Correct position quantities from balances

    MUST NOT:
        - Generate trade ideas
        - Resize intents (beyond lot rounding and balance clamps)
        - Force-close positions outside the universe

============================================================
MODULES
============================================================
- types: Orders, candles, tickers, balances, lot info
- config: Execution configuration
- errors: Error code registry and Kraken error mapping
- retry: Bounded backoff retry policy
- adapters: Kraken and mock exchange adapters, lot sizes, signing
- gateway: Retried, normalized exchange contract
- state_machine: Order state transitions
- order_manager: Order Lifecycle Manager
- portfolio: NAV valuation
- reconciliation: Position ledger vs exchange balances

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    OrderSide,
    OrderType,
    OrderState,
    Candle,
    Ticker,
    AccountBalance,
    LotInfo,
    OrderStatusReport,
    OpenOrder,
    TradeFill,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    RetryConfig,
    TimeoutConfig,
    KrakenConfig,
    OrderLifecycleConfig,
    ReconciliationConfig,
    ExecutionEngineConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorCodeInfo,
    ERROR_CODES,
    get_error_info,
    map_kraken_error,
    is_retryable,
    build_exchange_error,
)

# ============================================================
# EXCHANGE ACCESS
# ============================================================
from .retry import RetryPolicy
from .gateway import ExchangeGateway
from .portfolio import NavBreakdown, compute_nav

# ============================================================
# ORDER LIFECYCLE
# ============================================================
from .state_machine import (
    VALID_TRANSITIONS,
    StateTransitionEvent,
    OrderStateMachine,
)
from .order_manager import (
    ExecutionStatus,
    ExecutionReport,
    OrderLifecycleManager,
)

# ============================================================
# RECONCILIATION
# ============================================================
from .reconciliation import (
    MismatchType,
    MismatchSeverity,
    ReconciliationMismatch,
    ReconciliationResult,
    PositionReconciler,
)


__all__ = [
    # Types
    "OrderSide",
    "OrderType",
    "OrderState",
    "Candle",
    "Ticker",
    "AccountBalance",
    "LotInfo",
    "OrderStatusReport",
    "OpenOrder",
    "TradeFill",
    # Config
    "RetryConfig",
    "TimeoutConfig",
    "KrakenConfig",
    "OrderLifecycleConfig",
    "ReconciliationConfig",
    "ExecutionEngineConfig",
    # Errors
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "get_error_info",
    "map_kraken_error",
    "is_retryable",
    "build_exchange_error",
    # Exchange access
    "RetryPolicy",
    "ExchangeGateway",
    "NavBreakdown",
    "compute_nav",
    # Order lifecycle
    "VALID_TRANSITIONS",
    "StateTransitionEvent",
    "OrderStateMachine",
    "ExecutionStatus",
    "ExecutionReport",
    "OrderLifecycleManager",
    # Reconciliation
    "MismatchType",
    "MismatchSeverity",
    "ReconciliationMismatch",
    "ReconciliationResult",
    "PositionReconciler",
]
