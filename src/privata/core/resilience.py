"""Retry with backoff and fail-closed timeouts."""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from privata.exceptions import OperationTimedOut, StoreUnavailable

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    StoreUnavailable,
    ConnectionError,
    TimeoutError,
    OSError,
)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: TRANSIENT_ERRORS
    )


class RetryWithBackoff:
    """Retry async operations with exponential backoff and jitter.

    Only exceptions listed in ``retryable_exceptions`` are retried; anything
    else propagates on the first failure.
    """

    def __init__(self, config: RetryConfig | None = None):
        self.config = config or RetryConfig()

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a retry attempt with jitter."""
        delay = self.config.initial_delay * (self.config.exponential_base ** (attempt - 1))
        delay = min(delay, self.config.max_delay)
        return delay + delay * self.config.jitter * random.random()

    def is_retryable(self, exception: Exception) -> bool:
        return isinstance(exception, self.config.retryable_exceptions)

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        on_attempt: Callable[[int], None] | None = None,
        **kwargs: Any,
    ) -> T:
        """Execute an async function with retry logic.

        Args:
            func: Async function to execute
            on_attempt: Called with the attempt number before each try
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            The last exception once retries are exhausted, or the first
            non-retryable one.
        """
        attempt = 0
        while True:
            attempt += 1
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if not self.is_retryable(e):
                    raise

                if attempt > self.config.max_retries:
                    logger.error(
                        "All retries exhausted",
                        attempts=attempt,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise

                delay = self.calculate_delay(attempt)
                logger.warning(
                    "Retrying after failure",
                    attempt=attempt,
                    max_retries=self.config.max_retries,
                    delay=round(delay, 3),
                    error=str(e),
                )
                await asyncio.sleep(delay)


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout: float | None,
    operation: str,
) -> T:
    """Await with a deadline. Expiry raises ``OperationTimedOut``.

    Callers treat the timeout as a denial; the cancelled operation is
    responsible for rolling back anything it had staged.
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning("Operation timed out", operation=operation, timeout=timeout)
        raise OperationTimedOut(operation, timeout) from e
