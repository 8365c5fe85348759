"""
Core Module Package.

Shared infrastructure that every other package depends on.

Components:
- clock: Injectable UTC time abstraction
- exceptions: Exception hierarchy for the trading core
"""

from .clock import (
    ClockProtocol,
    SystemClock,
    MockClock,
    ensure_utc,
    from_epoch_ms,
    to_epoch_ms,
)
from .exceptions import (
    Severity,
    ErrorClassification,
    TradingException,
    ConfigurationError,
    InvalidSettingError,
    DataInsufficiencyError,
    ExchangeError,
    AuthenticationError,
    RateLimitError,
    ExchangeUnavailableError,
    InvariantViolationError,
    OrderLifecycleError,
    SymbolBusyError,
)


__all__ = [
    # Clock
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ensure_utc",
    "from_epoch_ms",
    "to_epoch_ms",
    # Exceptions
    "Severity",
    "ErrorClassification",
    "TradingException",
    "ConfigurationError",
    "InvalidSettingError",
    "DataInsufficiencyError",
    "ExchangeError",
    "AuthenticationError",
    "RateLimitError",
    "ExchangeUnavailableError",
    "InvariantViolationError",
    "OrderLifecycleError",
    "SymbolBusyError",
]
