"""
Retry decorators with exponential backoff and jitter.

The weather provider transport retries on connection failures, timeouts,
server errors (5xx) and throttling (429). DynamoDB cache calls retry on
throttling and server-side error codes.
"""

import asyncio
import functools
import logging
import random
import time
from typing import Any, Callable, Optional, Tuple, Type

import aiohttp
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

RETRYABLE_HTTP_STATUS = (429,)

NON_RETRYABLE_DYNAMODB_CODES = (
    "AccessDenied",
    "AccessDeniedException",
    "InvalidParameterValue",
    "ValidationException",
    "ResourceNotFound",
    "ResourceNotFoundException",
    "ItemNotFound",
)

RETRYABLE_DYNAMODB_CODES = (
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "InternalServerError",
)

API_RETRYABLE_EXCEPTIONS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)


class RetryError(Exception):
    """Raised once every attempt failed; keeps the last failure."""

    def __init__(self, message: str, last_exception: Exception):
        self.message = message
        self.last_exception = last_exception
        super().__init__(f"{message}: {last_exception}")


class RetryConfig:
    """Attempt count and backoff shape for one retried operation."""

    def __init__(  # pylint: disable=too-many-arguments,R0917
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        max_delay: float = 60.0,
        jitter: bool = True,
        jitter_range: float = 0.1,
    ):
        """
        Args:
            max_attempts: Total calls allowed, the first one included
            base_delay: Seconds to wait after the first failure
            backoff_multiplier: Growth factor of the wait per failure
            max_delay: Upper bound of a single wait, before jitter
            jitter: Spread waits randomly around the computed value
            jitter_range: Spread as a fraction of the wait (0.1 = ±10%)
        """
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.backoff_multiplier = backoff_multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.jitter_range = jitter_range


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after the given 1-based failed attempt."""
    delay = min(
        config.base_delay * config.backoff_multiplier ** (attempt - 1),
        config.max_delay,
    )
    if config.jitter:
        spread = delay * config.jitter_range
        delay = max(0, delay + random.uniform(-spread, spread))
    return delay


def should_retry_exception(
    exception: Exception, retryable_exceptions: Tuple[Type[Exception], ...]
) -> bool:
    """
    Decide whether a failure is worth another attempt.

    HTTP answers are retried for 5xx and 429 only. DynamoDB client errors are
    retried for throttling and server-side codes.
    """
    if not isinstance(exception, retryable_exceptions):
        return False

    if isinstance(exception, aiohttp.ClientResponseError):
        if 400 <= exception.status < 500:
            return exception.status in RETRYABLE_HTTP_STATUS
        return True

    if isinstance(exception, ClientError):
        error_code = exception.response.get("Error", {}).get("Code", "")
        if error_code in NON_RETRYABLE_DYNAMODB_CODES:
            return False
        return error_code in RETRYABLE_DYNAMODB_CODES or error_code.startswith("5")

    return True


def _backoff_after(
    func: Callable, attempt: int, config: RetryConfig, exc: Exception
) -> Optional[float]:
    """Log a failed attempt; return the wait before the next one, or None if spent."""
    logger.warning(
        "Attempt %d/%d of %s failed: %s",
        attempt,
        config.max_attempts,
        func.__name__,
        exc,
    )
    if attempt < config.max_attempts:
        return calculate_delay(attempt, config)
    return None


def _exhausted(func: Callable, config: RetryConfig, exc: Exception) -> RetryError:
    logger.error("%s failed after %d attempts", func.__name__, config.max_attempts)
    return RetryError(f"{func.__name__} failed after {config.max_attempts} attempts", exc)


def api_retry(config: RetryConfig) -> Callable:
    """
    Retry decorator for weather provider coroutines.

    Retries on network errors, timeouts, server errors (5xx) and 429.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            attempt = 1
            while True:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:  # pylint: disable=broad-exception-caught
                    if not should_retry_exception(e, API_RETRYABLE_EXCEPTIONS):
                        raise
                    delay = _backoff_after(func, attempt, config, e)
                    if delay is None:
                        raise _exhausted(func, config, e) from e
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue

                if attempt > 1:
                    logger.info("%s succeeded on attempt %d", func.__name__, attempt)
                return result

        return wrapper

    return decorator


def dynamodb_retry(config: RetryConfig) -> Callable:
    """
    Retry decorator for blocking DynamoDB calls.

    Retries on throttling, provisioned throughput exceeded and server errors.
    Callers run the decorated function in a worker thread.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except ClientError as e:
                    if not should_retry_exception(e, (ClientError,)):
                        raise
                    delay = _backoff_after(func, attempt, config, e)
                    if delay is None:
                        raise _exhausted(func, config, e) from e
                    time.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
