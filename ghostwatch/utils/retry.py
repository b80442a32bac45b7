"""
Retry utilities for resilient provider calls.

Call helpers for automatic retry with exponential backoff. Only failures
accepted by the configured predicate are retried; anything else
propagates on the first attempt.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, Sequence, Type, TypeVar

from ..domain.errors import ProviderTransient

logger = logging.getLogger(__name__)

# Type variable for generic return types
T = TypeVar("T")

# Provider signature of a transient server-side failure
TRANSIENT_ERROR_CODE = -500
TRANSIENT_ERROR_MARKER = "no workers running"


def is_transient_provider_error(exc: BaseException) -> bool:
    """True for the provider's "no workers running" failure (code -500)."""
    if isinstance(exc, ProviderTransient):
        return True
    code = getattr(exc, "code", None)
    if code != TRANSIENT_ERROR_CODE:
        return False
    message = getattr(exc, "message", None) or str(exc)
    normalized = message.replace("_", " ").lower()
    return TRANSIENT_ERROR_MARKER in normalized


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        jitter_max: float = 0.5,
        exceptions: Sequence[Type[BaseException]] = (Exception,),
        retry_if: Optional[Callable[[BaseException], bool]] = None,
        on_retry: Optional[Callable[[BaseException, int], None]] = None,
    ):
        """
        Initialize retry configuration.

        Args:
            max_attempts: Maximum number of attempts (including first try)
            base_delay: Initial delay between retries in seconds
            max_delay: Maximum delay between retries in seconds
            exponential_base: Base for exponential backoff (delay * base^attempt)
            jitter: Whether to add random jitter to delays
            jitter_max: Maximum jitter as fraction of delay (0.0 to 1.0)
            exceptions: Exception types considered at all
            retry_if: Predicate narrowing which caught exceptions are retried
            on_retry: Optional callback called on each retry with (exception, attempt)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.jitter_max = jitter_max
        self.exceptions = tuple(exceptions)
        self.retry_if = retry_if
        self.on_retry = on_retry

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for a given attempt number.

        Args:
            attempt: The attempt number (0-indexed)

        Returns:
            Delay in seconds with optional jitter
        """
        delay = self.base_delay * (self.exponential_base**attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay += delay * random.uniform(0, self.jitter_max)

        return delay

    def should_retry(self, exc: BaseException) -> bool:
        if not isinstance(exc, self.exceptions):
            return False
        return self.retry_if is None or self.retry_if(exc)


async def _call_with_retry(
    config: RetryConfig,
    func: Callable[..., Awaitable[T]],
    args: tuple,
    kwargs: dict,
) -> T:
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e):
                raise
            if attempt >= config.max_attempts - 1:
                logger.error(
                    "All %d attempts failed for %s: %s: %s",
                    config.max_attempts,
                    name,
                    type(e).__name__,
                    e,
                )
                raise

            delay = config.calculate_delay(attempt)
            logger.warning(
                "Retry %d/%d for %s: %s: %s. Waiting %.2fs",
                attempt + 1,
                config.max_attempts,
                name,
                type(e).__name__,
                e,
                delay,
            )
            if config.on_retry:
                config.on_retry(e, attempt + 1)
            await asyncio.sleep(delay)

    # max_attempts >= 1 guarantees the loop returns or raises
    raise RuntimeError(f"Retry failed for {name}")


async def with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    exceptions: Sequence[Type[BaseException]] = (Exception,),
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Optional[Callable[[BaseException, int], None]] = None,
    jitter: bool = True,
    **kwargs: Any,
) -> T:
    """
    Execute an async function with retry logic.

    Usage:
        result = await with_retry(fetch_data, peer, max_attempts=3)
    """
    config = RetryConfig(
        max_attempts=max_attempts,
        base_delay=base_delay,
        exceptions=exceptions,
        retry_if=retry_if,
        on_retry=on_retry,
        jitter=jitter,
    )
    return await _call_with_retry(config, func, args, kwargs)


async def with_provider_retry(
    func: Callable[[], Awaitable[T]],
    attempts: int = 5,
    base_delay: float = 1.0,
) -> T:
    """Run *func* retrying only the provider's transient failure.

    Delays double from *base_delay* with no jitter and no cap beyond the
    attempt count: 1s, 2s, 4s, 8s for the defaults.
    """
    config = RetryConfig(
        max_attempts=attempts,
        base_delay=base_delay,
        max_delay=float("inf"),
        exponential_base=2.0,
        jitter=False,
        retry_if=is_transient_provider_error,
    )
    return await _call_with_retry(config, func, (), {})
