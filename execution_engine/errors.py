"""
Execution Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Error classification for exchange and execution failures.

ERROR CATEGORIES:
1. Validation Errors - Exchange refused the request contents
2. Exchange Errors - Exchange rejected/failed
3. Network / Timeout Errors - Communication failures
4. Rate Limit Errors - Throttled by the exchange
5. Authentication Errors - Credential problems (never retried)
6. Internal Errors - System errors

RETRYABLE vs NON-RETRYABLE:
- Retryable: Transient errors that may succeed on retry
- Non-retryable: Permanent errors that will fail again

============================================================
"""

from enum import Enum
from typing import Dict, Iterable, Set
from dataclasses import dataclass

from core.exceptions import (
    AuthenticationError,
    ExchangeError,
    ExchangeUnavailableError,
    RateLimitError,
)


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    VALIDATION = "VALIDATION"
    """Request contents refused."""

    EXCHANGE = "EXCHANGE"
    """Exchange rejected or failed."""

    NETWORK = "NETWORK"
    """Network/communication error."""

    TIMEOUT = "TIMEOUT"
    """Request timed out."""

    RATE_LIMIT = "RATE_LIMIT"
    """Rate limit exceeded."""

    AUTHENTICATION = "AUTHENTICATION"
    """Authentication failed."""

    INTERNAL = "INTERNAL"
    """Internal system error."""


class ErrorSeverity(Enum):
    """Error severity levels."""

    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    """Error code."""

    category: ErrorCategory
    """Error category."""

    severity: ErrorSeverity
    """Error severity."""

    is_retryable: bool
    """Whether this error is retryable."""

    description: str
    """Human-readable description."""

    safe_to_resubmit: bool = False
    """Whether an order request failing with this code was certainly not accepted."""


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== VALIDATION ERRORS ==========
    "VAL_INSUFFICIENT_FUNDS": ErrorCodeInfo(
        code="VAL_INSUFFICIENT_FUNDS",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Insufficient funds for order",
    ),
    "VAL_ORDER_MINIMUM": ErrorCodeInfo(
        code="VAL_ORDER_MINIMUM",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Order size below exchange minimum",
    ),
    "VAL_UNKNOWN_PAIR": ErrorCodeInfo(
        code="VAL_UNKNOWN_PAIR",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Unknown asset pair",
    ),
    "VAL_INVALID_ARGUMENTS": ErrorCodeInfo(
        code="VAL_INVALID_ARGUMENTS",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Request arguments rejected",
    ),

    # ========== EXCHANGE ERRORS ==========
    "EXC_ORDER_NOT_FOUND": ErrorCodeInfo(
        code="EXC_ORDER_NOT_FOUND",
        category=ErrorCategory.EXCHANGE,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Order not found on exchange",
    ),
    "EXC_POST_ONLY_REJECTED": ErrorCodeInfo(
        code="EXC_POST_ONLY_REJECTED",
        category=ErrorCategory.EXCHANGE,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Post-only order would have taken liquidity",
    ),
    "EXC_SERVICE_UNAVAILABLE": ErrorCodeInfo(
        code="EXC_SERVICE_UNAVAILABLE",
        category=ErrorCategory.EXCHANGE,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Exchange busy or in maintenance",
        safe_to_resubmit=True,
    ),
    "EXC_UNKNOWN_ERROR": ErrorCodeInfo(
        code="EXC_UNKNOWN_ERROR",
        category=ErrorCategory.EXCHANGE,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        description="Unknown exchange error",
    ),

    # ========== NETWORK / TIMEOUT ERRORS ==========
    "NET_CONNECTION_FAILED": ErrorCodeInfo(
        code="NET_CONNECTION_FAILED",
        category=ErrorCategory.NETWORK,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        description="Failed to connect to exchange",
        safe_to_resubmit=True,
    ),
    "NET_BAD_RESPONSE": ErrorCodeInfo(
        code="NET_BAD_RESPONSE",
        category=ErrorCategory.NETWORK,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Malformed or non-JSON response",
    ),
    "TMO_READ": ErrorCodeInfo(
        code="TMO_READ",
        category=ErrorCategory.TIMEOUT,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Read timeout",
    ),
    "TMO_ORDER_CONFIRMATION": ErrorCodeInfo(
        code="TMO_ORDER_CONFIRMATION",
        category=ErrorCategory.TIMEOUT,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Order confirmation timeout - state unknown",
    ),

    # ========== RATE LIMIT ERRORS ==========
    "RTE_API_LIMIT": ErrorCodeInfo(
        code="RTE_API_LIMIT",
        category=ErrorCategory.RATE_LIMIT,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="API rate limit exceeded",
        safe_to_resubmit=True,
    ),
    "RTE_ORDER_LIMIT": ErrorCodeInfo(
        code="RTE_ORDER_LIMIT",
        category=ErrorCategory.RATE_LIMIT,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Order rate limit exceeded",
        safe_to_resubmit=True,
    ),

    # ========== AUTHENTICATION ERRORS ==========
    "AUT_INVALID_KEY": ErrorCodeInfo(
        code="AUT_INVALID_KEY",
        category=ErrorCategory.AUTHENTICATION,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="API key is invalid",
    ),
    "AUT_INVALID_SIGNATURE": ErrorCodeInfo(
        code="AUT_INVALID_SIGNATURE",
        category=ErrorCategory.AUTHENTICATION,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Request signature rejected",
    ),
    "AUT_INVALID_NONCE": ErrorCodeInfo(
        code="AUT_INVALID_NONCE",
        category=ErrorCategory.AUTHENTICATION,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Nonce not increasing or outside window",
    ),
    "AUT_PERMISSION_DENIED": ErrorCodeInfo(
        code="AUT_PERMISSION_DENIED",
        category=ErrorCategory.AUTHENTICATION,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Permission denied for operation",
    ),
    "AUT_MISSING_CREDENTIALS": ErrorCodeInfo(
        code="AUT_MISSING_CREDENTIALS",
        category=ErrorCategory.AUTHENTICATION,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="API key or secret not configured",
    ),

    # ========== INTERNAL ERRORS ==========
    "INT_UNEXPECTED_ERROR": ErrorCodeInfo(
        code="INT_UNEXPECTED_ERROR",
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Unexpected internal error",
    ),
}


# ============================================================
# EXCHANGE ERROR CODE MAPPING
# ============================================================

# Kraken error string (prefix match, case-insensitive) to internal code
KRAKEN_ERROR_MAPPING: Dict[str, str] = {
    "eapi:invalid key": "AUT_INVALID_KEY",
    "eapi:invalid signature": "AUT_INVALID_SIGNATURE",
    "eapi:invalid nonce": "AUT_INVALID_NONCE",
    "egeneral:permission denied": "AUT_PERMISSION_DENIED",
    "eapi:rate limit exceeded": "RTE_API_LIMIT",
    "egeneral:too many requests": "RTE_API_LIMIT",
    "eorder:rate limit exceeded": "RTE_ORDER_LIMIT",
    "eservice:unavailable": "EXC_SERVICE_UNAVAILABLE",
    "eservice:busy": "EXC_SERVICE_UNAVAILABLE",
    "eservice:market in cancel_only mode": "EXC_SERVICE_UNAVAILABLE",
    "eorder:insufficient funds": "VAL_INSUFFICIENT_FUNDS",
    "eorder:order minimum not met": "VAL_ORDER_MINIMUM",
    "equery:unknown asset pair": "VAL_UNKNOWN_PAIR",
    "egeneral:invalid arguments": "VAL_INVALID_ARGUMENTS",
    "eorder:unknown order": "EXC_ORDER_NOT_FOUND",
    "eorder:post only order": "EXC_POST_ONLY_REJECTED",
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Args:
        code: Error code

    Returns:
        ErrorCodeInfo or default unknown error
    """
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description=f"Unknown error: {code}",
    ))


def map_kraken_error(messages: Iterable[str]) -> str:
    """
    Map a Kraken `error` array to one internal error code.

    Authentication codes win over anything else in the array.

    Args:
        messages: Kraken error strings, e.g. ["EAPI:Invalid nonce"]

    Returns:
        Internal error code
    """
    codes = []
    for message in messages:
        lowered = message.strip().lower()
        for prefix, code in KRAKEN_ERROR_MAPPING.items():
            if lowered.startswith(prefix):
                codes.append(code)
                break
        else:
            codes.append("EXC_UNKNOWN_ERROR")

    if not codes:
        return "EXC_UNKNOWN_ERROR"

    for code in codes:
        if get_error_info(code).category == ErrorCategory.AUTHENTICATION:
            return code
    return codes[0]


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable


def build_exchange_error(message: str, code: str) -> ExchangeError:
    """
    Build the exception kind matching an internal error code.

    Authentication codes become AuthenticationError so callers can
    tell credential problems apart from transient faults.
    """
    info = get_error_info(code)
    if info.category == ErrorCategory.AUTHENTICATION:
        return AuthenticationError(message, code=code)
    if info.category == ErrorCategory.RATE_LIMIT:
        return RateLimitError(message, code=code)
    if code == "EXC_SERVICE_UNAVAILABLE":
        return ExchangeUnavailableError(message, code=code)
    return ExchangeError(message, code=code, is_retryable=info.is_retryable)


# ============================================================
# RETRYABLE ERROR SETS
# ============================================================

RETRYABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_retryable
}

RESUBMITTABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.safe_to_resubmit
}

AUTHENTICATION_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items()
    if info.category == ErrorCategory.AUTHENTICATION
}
