"""
Retry Utilities for decision provider calls

Provides error classification and exponential backoff used by the
decision engine's provider-level retry loop.

Key Components:
- ErrorType: Classifies errors as transient or permanent
- classify_error: Determines error type from exception
- calculate_backoff_delay: Computes exponential backoff with optional jitter
"""

import logging
import random
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"  # Temporary errors - should retry
    PERMANENT = "permanent"  # Permanent errors - should stop immediately
    UNKNOWN = "unknown"  # Unknown errors - treat as transient


# Patterns for error classification
_TRANSIENT_PATTERNS = (
    # Network errors
    "connection",
    "timeout",
    "timed out",
    "network",
    "socket",
    "refused",
    "reset",
    "unreachable",
    # Rate limiting
    "rate limit",
    "ratelimit",
    "too many requests",
    "throttl",
    "429",
    # Temporary service issues
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "overloaded",
    "503",
    "502",
    "504",
)

_PERMANENT_PATTERNS = (
    # Authentication/Authorization
    "unauthorized",
    "forbidden",
    "authentication",
    "invalid api key",
    "api key is required",
    "access denied",
    "401",
    "403",
    # Invalid requests
    "invalidrequest",
    "bad request",
    "model not found",
    "400",
    "404",
    # Configuration errors
    "missing required",
    "not configured",
)


def classify_error(error: Exception) -> ErrorType:
    """
    Classify an exception as transient or permanent.

    Transient errors are temporary failures that may succeed on retry:
    - Network issues (connection reset, timeout)
    - Rate limiting
    - Provider temporarily unavailable

    Permanent errors will never succeed regardless of retries:
    - Authentication failures
    - Invalid requests / unknown model
    - Missing configuration

    Args:
        error: The exception to classify

    Returns:
        ErrorType indicating whether to retry or stop
    """
    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    for pattern in _PERMANENT_PATTERNS:
        if pattern in error_str or pattern in error_type:
            return ErrorType.PERMANENT

    for pattern in _TRANSIENT_PATTERNS:
        if pattern in error_str or pattern in error_type:
            return ErrorType.TRANSIENT

    return ErrorType.UNKNOWN


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = False,
) -> float:
    """
    Calculate exponential backoff delay with optional jitter.

    Without jitter the schedule is deterministic: base, 2*base, 4*base, ...
    With jitter the full-jitter strategy is used: random(0, delay).

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay cap in seconds
        jitter: Whether to add randomization

    Returns:
        Delay in seconds before next retry
    """
    delay = min(base_delay * (2**attempt), max_delay)

    if jitter:
        delay = random.uniform(0, delay)

    return delay
