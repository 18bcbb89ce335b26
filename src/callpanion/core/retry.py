"""Retry utilities with exponential backoff.

Provider calls (push gateways, token endpoints) get at most a few
attempts; only transport-level failures are retried.

Usage:
    from callpanion.core.retry import retry_async, PROVIDER_RETRY_CONFIG

    response = await retry_async(client.post, url, json=body, config=PROVIDER_RETRY_CONFIG)
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from callpanion.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 0.5  # seconds
    max_delay: float = 5.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.1  # 10% jitter
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,)
    non_retryable_exceptions: tuple[type[Exception], ...] = ()

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt with exponential backoff and jitter.

        Args:
            attempt: Current attempt number (1-based)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay,
        )

        jitter_range = delay * self.jitter
        delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Check if exception should trigger retry.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number

        Returns:
            True if should retry
        """
        if attempt >= self.max_attempts:
            return False

        if isinstance(exception, self.non_retryable_exceptions):
            return False

        return isinstance(exception, self.retryable_exceptions)


# Provider HTTP calls: transport failures only, never HTTP status errors
PROVIDER_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=4.0,
    retryable_exceptions=(httpx.TransportError,),
)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: RetryConfig | None = None,
    **kwargs: Any,
) -> T:
    """Execute async function with retry.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        config: Retry configuration
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        The last exception once attempts are used up or it is not retryable
    """
    config = config or PROVIDER_RETRY_CONFIG
    attempt = 0

    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e, attempt):
                raise

            delay = config.calculate_delay(attempt)
            log.warning(
                "Retrying provider call",
                func=getattr(func, "__name__", repr(func)),
                attempt=attempt,
                max_attempts=config.max_attempts,
                error_type=type(e).__name__,
                delay=round(delay, 2),
            )
            await asyncio.sleep(delay)

