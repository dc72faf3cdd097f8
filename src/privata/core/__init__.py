"""Core building blocks shared by engine components."""

from privata.core.resilience import (
    TRANSIENT_ERRORS,
    RetryConfig,
    RetryWithBackoff,
    run_with_timeout,
)

__all__ = [
    "TRANSIENT_ERRORS",
    "RetryConfig",
    "RetryWithBackoff",
    "run_with_timeout",
]
