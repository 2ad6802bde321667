"""Retry utilities for registry calls with exponential backoff"""

import logging
import random
import subprocess
import time
from enum import Enum
from functools import wraps
from typing import Callable, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

NETWORK_INDICATORS = (
    "connection",
    "timeout",
    "timed out",
    "network",
    "dns",
    "resolve",
    "refused",
    "unreachable",
    "reset",
    "broken pipe",
    "no route to host",
    "temporary failure",
)


class RetryableErrorType(Enum):
    """Types of errors that should trigger retries"""

    NETWORK = "network"  # Connection errors, timeouts
    TEMPORARY = "temporary"  # 5xx errors, rate limiting
    PERMANENT = "permanent"  # 4xx errors (except rate limiting), auth failures, bad payloads


def _status_code(error: Exception) -> Optional[int]:
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None)


def is_retryable_error(error: Exception, error_message: str = "") -> Tuple[bool, RetryableErrorType]:
    """Determine if an error is retryable and what type it is

    Args:
        error: The exception that occurred
        error_message: Optional error message string (e.g. subprocess stderr)

    Returns:
        Tuple of (is_retryable, error_type)
    """
    status = _status_code(error)
    if status is not None:
        if status == 429 or status >= 500:
            return True, RetryableErrorType.TEMPORARY
        return False, RetryableErrorType.PERMANENT

    if isinstance(error, ValueError):
        # JSON decoding and other payload problems will not fix themselves
        return False, RetryableErrorType.PERMANENT

    if isinstance(error, subprocess.TimeoutExpired):
        return True, RetryableErrorType.NETWORK

    if isinstance(error, subprocess.CalledProcessError):
        # str() of the error is the command line, whose references can contain any digits
        combined = (error_message or "").lower()
    else:
        combined = f"{error} {error_message}".lower()

    # Auth and missing-manifest errors first: skopeo stderr for these often
    # also mentions the connection it was using
    if "401" in combined or "403" in combined or "unauthorized" in combined or "forbidden" in combined:
        return False, RetryableErrorType.PERMANENT
    if "manifest unknown" in combined or "name unknown" in combined or "404" in combined or "not found" in combined:
        return False, RetryableErrorType.PERMANENT

    if "429" in combined or "rate limit" in combined or "too many requests" in combined:
        return True, RetryableErrorType.TEMPORARY
    if any(code in combined for code in ("500", "502", "503", "504")):
        return True, RetryableErrorType.TEMPORARY

    if any(indicator in combined for indicator in NETWORK_INDICATORS):
        return True, RetryableErrorType.NETWORK

    # Non-zero exit of a subprocess without a recognisable cause
    if getattr(error, "returncode", 0):
        return True, RetryableErrorType.TEMPORARY

    return False, RetryableErrorType.PERMANENT


def backoff_delay(attempt: int, initial_delay: float, max_delay: float,
                  exponential_base: float, jitter: bool) -> float:
    """Delay before retry number ``attempt + 1``"""
    delay = min(initial_delay * (exponential_base**attempt), max_delay)
    if jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay = max(0.1, delay + random.uniform(-jitter_amount, jitter_amount))
    return delay


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_errors: Optional[List[RetryableErrorType]] = None,
) -> Callable:
    """Decorator for retrying functions with exponential backoff

    Only transient failures are retried. The last error is re-raised once the
    attempts are exhausted, so callers always see either a result or the
    original exception.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay in seconds before first retry (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)
        exponential_base: Base for exponential backoff (default: 2.0)
        jitter: Add random jitter to prevent thundering herd (default: True)
        retryable_errors: List of error types to retry (None = network and temporary)

    Returns:
        Decorator function
    """
    if retryable_errors is None:
        retryable_errors = [RetryableErrorType.NETWORK, RetryableErrorType.TEMPORARY]

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_retries + 1):
                try:
                    result = func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(f"{func.__name__} succeeded on attempt {attempt + 1}")
                    return result

                except Exception as e:
                    error_message = getattr(e, "stderr", None) or ""
                    is_retryable, error_type = is_retryable_error(e, error_message)

                    if not is_retryable or error_type not in retryable_errors:
                        logger.debug(f"{func.__name__} failed with non-retryable error ({error_type.value}): {e}")
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"{func.__name__} failed after {max_retries + 1} attempts. "
                            f"Last error ({error_type.value}): {e}"
                        )
                        raise

                    delay = backoff_delay(attempt, initial_delay, max_delay, exponential_base, jitter)
                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt + 1}/{max_retries + 1} "
                        f"({error_type.value} error: {e}). "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)

            raise RuntimeError(f"{func.__name__} exhausted retries without a result")

        return wrapper

    return decorator
