"""
Execution Engine - Retry Policy.

============================================================
PURPOSE
============================================================
Bounded exponential backoff around exchange calls.

RULES:
- Authentication errors are raised immediately
- Only retryable codes are retried (or an explicit code set)
- Delay grows by backoff_multiplier up to max_delay_seconds

============================================================
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set, TypeVar

from core.exceptions import AuthenticationError, ExchangeError

from .config import RetryConfig


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Retry exchange operations that fail with transient errors."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def _should_retry(self, error: ExchangeError, retry_codes: Optional[Set[str]]) -> bool:
        if isinstance(error, AuthenticationError):
            return False
        if retry_codes is not None:
            return error.code in retry_codes
        return error.is_retryable

    async def call(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        retry_codes: Optional[Set[str]] = None,
    ) -> T:
        """
        Run func, retrying on transient exchange errors.

        Args:
            operation: Name used in log lines
            func: Zero-argument coroutine factory
            retry_codes: Restrict retries to these codes

        Raises:
            ExchangeError: Last error once retries are exhausted
        """
        delay = self._config.initial_delay_seconds

        for attempt in range(self._config.max_retries + 1):
            try:
                return await func()
            except ExchangeError as e:
                if not self._should_retry(e, retry_codes) or attempt >= self._config.max_retries:
                    raise

                logger.warning(
                    f"{operation} failed "
                    f"(attempt {attempt + 1}/{self._config.max_retries + 1}): "
                    f"{e.code} {e}. Retrying in {delay:.1f}s..."
                )
                await self._sleep(delay)
                delay = min(
                    delay * self._config.backoff_multiplier,
                    self._config.max_delay_seconds,
                )

        # Unreachable: the last attempt either returns or raises
        raise ExchangeError(f"{operation} exhausted retries", code="INT_UNEXPECTED_ERROR")
