"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines all custom exceptions for the trading core.

- Provides clear exception hierarchy
- Separates transient exchange faults from credential problems
- Carries context for debugging and alerting

============================================================
EXCEPTION HIERARCHY
============================================================
TradingException (base)
├── ConfigurationError
│   └── InvalidSettingError
├── DataInsufficiencyError
├── ExchangeError
│   ├── AuthenticationError
│   ├── RateLimitError
│   └── ExchangeUnavailableError
├── InvariantViolationError
└── OrderLifecycleError
    └── SymbolBusyError

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for alerting."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, may impact operations."""

    CRITICAL = "critical"
    """Critical issue, requires immediate action."""


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    TRANSIENT = "transient"
    """Temporary error, retry may succeed."""

    SKIPPABLE = "skippable"
    """Affected item is skipped, the operation continues."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, requires intervention."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class TradingException(Exception):
    """
    Base exception for all trading core errors.

    All exceptions carry:
    - severity: for alerting
    - context: for debugging
    - classification: for error handling decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_classification: ErrorClassification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(TradingException):
    """Invalid or missing configuration. Fails the triggering operation."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]

        super().__init__(message, context=context, **kwargs)
        self.config_key = config_key


class InvalidSettingError(ConfigurationError):
    """A strategy setting failed validation."""
    pass


# ============================================================
# DATA ERRORS
# ============================================================

class DataInsufficiencyError(TradingException):
    """Too little data to compute a result (e.g. short candle history)."""

    default_severity = Severity.LOW
    default_classification = ErrorClassification.SKIPPABLE

    def __init__(
        self,
        message: str,
        symbol: Optional[str] = None,
        required: Optional[int] = None,
        available: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if symbol:
            context["symbol"] = symbol
        if required is not None:
            context["required"] = required
        if available is not None:
            context["available"] = available

        super().__init__(message, context=context, **kwargs)
        self.symbol = symbol
        self.required = required
        self.available = available


# ============================================================
# EXCHANGE ERRORS
# ============================================================

class ExchangeError(TradingException):
    """Exchange communication error."""

    default_severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        is_retryable: bool = False,
        **kwargs,
    ):
        kwargs.setdefault(
            "classification",
            ErrorClassification.TRANSIENT if is_retryable else ErrorClassification.NON_RECOVERABLE,
        )
        super().__init__(message, **kwargs)
        self.code = code
        self.is_retryable = is_retryable


class AuthenticationError(ExchangeError):
    """
    Credential problem: bad key, bad signature or stale nonce.

    Never retried.
    """

    default_severity = Severity.CRITICAL

    def __init__(self, message: str, code: Optional[str] = None, **kwargs):
        kwargs.pop("is_retryable", None)
        super().__init__(message, code=code, is_retryable=False, **kwargs)


class RateLimitError(ExchangeError):
    """Exchange rate limit exceeded."""

    default_severity = Severity.LOW

    def __init__(self, message: str, code: Optional[str] = None, **kwargs):
        kwargs.pop("is_retryable", None)
        super().__init__(message, code=code, is_retryable=True, **kwargs)


class ExchangeUnavailableError(ExchangeError):
    """Exchange busy or in maintenance."""

    def __init__(self, message: str, code: Optional[str] = None, **kwargs):
        kwargs.pop("is_retryable", None)
        super().__init__(message, code=code, is_retryable=True, **kwargs)


# ============================================================
# LEDGER / LIFECYCLE ERRORS
# ============================================================

class InvariantViolationError(TradingException):
    """A mutation would break a ledger invariant. The mutation is rejected."""

    default_severity = Severity.CRITICAL
    default_classification = ErrorClassification.NON_RECOVERABLE


class OrderLifecycleError(TradingException):
    """Order could not be carried through its lifecycle."""

    default_severity = Severity.HIGH


class SymbolBusyError(OrderLifecycleError):
    """An order for this symbol is already in flight."""

    default_severity = Severity.MEDIUM

    def __init__(self, symbol: str):
        super().__init__(
            f"Order already in flight for {symbol}",
            context={"symbol": symbol},
        )
        self.symbol = symbol
