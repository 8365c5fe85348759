"""
Execution Engine - Configuration.

============================================================
PURPOSE
============================================================
Process-level configuration for the exchange gateway, the
order lifecycle manager and reconciliation.

Strategy parameters (universe, thresholds, ...) are NOT here;
they live in the versioned settings store (strategy_engine).

CRITICAL CONSTRAINTS:
- Bounded retries only
- Every exchange call has a timeout
- Deterministic behavior

============================================================
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

from core.exceptions import ConfigurationError


def _env_decimal(key: str, default: str) -> Decimal:
    raw = os.getenv(key, default)
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigurationError(
            f"{key} must be a number", config_key=key, actual_value=raw,
        )


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(
            f"{key} must be a number", config_key=key, actual_value=raw,
        )


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration for exchange calls.

    SAFETY: Limited retries with exponential backoff.
    Authentication and validation errors are never retried.
    """

    max_retries: int = 3
    """Maximum number of retry attempts."""

    initial_delay_seconds: float = 1.0
    """Initial delay before first retry."""

    max_delay_seconds: float = 30.0
    """Maximum delay between retries."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """Timeout configuration."""

    connection_timeout_seconds: float = 5.0
    """Connection timeout."""

    read_timeout_seconds: float = 30.0
    """Total timeout for one request."""

    order_submission_timeout_seconds: float = 15.0
    """Timeout for order placement."""


# ============================================================
# EXCHANGE CONFIGURATION
# ============================================================

@dataclass
class KrakenConfig:
    """Kraken REST configuration."""

    base_url: str = "https://api.kraken.com"
    """REST endpoint."""

    api_key_env: str = "KRAKEN_API_KEY"
    """Env var holding the API key."""

    api_secret_env: str = "KRAKEN_API_SECRET"
    """Env var holding the base64 API secret."""

    lot_info_ttl_seconds: Optional[float] = None
    """Lot info cache TTL; None keeps entries for the process lifetime."""


# ============================================================
# ORDER LIFECYCLE CONFIGURATION
# ============================================================

@dataclass
class OrderLifecycleConfig:
    """
    Maker-first order placement with a taker fallback.
    """

    maker_offset_pct: Decimal = Decimal("0.001")
    """Offset from best bid/ask for the post-only price (0.001 = 0.1%)."""

    fill_timeout_seconds: float = 15 * 60.0
    """How long a maker order may rest before it is stale."""

    poll_interval_seconds: float = 30.0
    """Order status polling interval."""

    market_fill_checks: int = 10
    """Status checks for the replacement market order."""

    market_poll_interval_seconds: float = 2.0
    """Polling interval for the replacement market order."""

    max_slippage_pct: Optional[Decimal] = None
    """Abort the market fallback if price moved further than this (None = no guard)."""

    post_only: bool = True
    """Place maker orders with the post-only flag."""


# ============================================================
# RECONCILIATION CONFIGURATION
# ============================================================

@dataclass
class ReconciliationConfig:
    """Reconciliation configuration."""

    quantity_epsilon: Decimal = Decimal("0.00000001")
    """Quantity drift below this is ignored."""

    dust_threshold: Decimal = Decimal("0.00001")
    """Balances below this count as zero."""

    low_balance_usd: Decimal = Decimal("50")
    """Publish LOW_BALANCE when NAV falls below this."""

    drawdown_alert_pct: Decimal = Decimal("10")
    """Publish LARGE_DRAWDOWN when NAV is this far below the recent peak."""

    nav_history_window: int = 100
    """NAV records considered for the peak."""

    sweep_stale_orders: bool = True
    """Cancel stale open orders at the end of each run."""

    max_history: int = 100
    """Reconciliation results kept in memory."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class ExecutionEngineConfig:
    """Master configuration for the Execution Engine."""

    retry: RetryConfig = field(default_factory=RetryConfig)

    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)

    exchange: KrakenConfig = field(default_factory=KrakenConfig)

    lifecycle: OrderLifecycleConfig = field(default_factory=OrderLifecycleConfig)

    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)

    dry_run: bool = False
    """Log intents without placing orders."""

    @classmethod
    def from_env(cls) -> "ExecutionEngineConfig":
        """Build configuration from environment variables."""
        slippage_raw = os.getenv("MAX_SLIPPAGE_PCT")
        max_slippage = None
        if slippage_raw:
            max_slippage = _env_decimal("MAX_SLIPPAGE_PCT", slippage_raw)

        lifecycle = OrderLifecycleConfig(
            maker_offset_pct=_env_decimal("MAKER_OFFSET_PCT", "0.001"),
            fill_timeout_seconds=_env_float("FILL_TIMEOUT_MINUTES", 15.0) * 60.0,
            poll_interval_seconds=_env_float("ORDER_POLL_SECONDS", 30.0),
            max_slippage_pct=max_slippage,
        )
        reconciliation = ReconciliationConfig(
            low_balance_usd=_env_decimal("ALERTS_LOW_BALANCE_USD", "50"),
            drawdown_alert_pct=_env_decimal("ALERTS_LARGE_DRAWDOWN_PCT", "10"),
        )
        exchange = KrakenConfig(
            base_url=os.getenv("KRAKEN_BASE_URL", "https://api.kraken.com"),
        )
        return cls(
            exchange=exchange,
            lifecycle=lifecycle,
            reconciliation=reconciliation,
            dry_run=os.getenv("DRY_RUN", "false").lower() == "true",
        )

    @classmethod
    def for_testing(cls) -> "ExecutionEngineConfig":
        """No waiting between polls or retries."""
        return cls(
            retry=RetryConfig(
                max_retries=2,
                initial_delay_seconds=0.0,
                max_delay_seconds=0.0,
            ),
            lifecycle=OrderLifecycleConfig(
                fill_timeout_seconds=60.0,
                poll_interval_seconds=10.0,
                market_fill_checks=3,
                market_poll_interval_seconds=1.0,
            ),
        )
