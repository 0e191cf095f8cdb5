# backend/vasa/utils/retry.py
"""
Retry Utility with Exponential Backoff

Used for vendor HTTP calls (Mem0, ElevenLabs):
- Exponential backoff with jitter
- Rate limit (429) handling with Retry-After header support
- Non-retryable errors fail immediately
"""

import asyncio
from functools import wraps
from typing import Callable, Tuple, Type, Optional, Any
import random

import httpx

from vasa.utils.logger import logger


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Optional[Exception] = None, attempts: int = 0):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


class RateLimitError(Exception):
    """Raised when API returns 429 rate limit response."""

    def __init__(self, retry_after: float = 60.0, message: str = "Rate limited"):
        super().__init__(message)
        self.retry_after = retry_after


RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)


def async_retry(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Async retry decorator with exponential backoff.

    Usage:
        @async_retry(max_attempts=3, initial_delay=1.0, operation_name="mem0_add")
        async def add(...):
            ...
    """
    if retryable_exceptions is None:
        retryable_exceptions = RETRYABLE_EXCEPTIONS

    def decorator(func: Callable) -> Callable:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            last_exception: Optional[Exception] = None
            current_delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)

                except RateLimitError as e:
                    last_exception = e
                    wait_time = min(e.retry_after, max_delay)

                    if attempt < max_attempts:
                        logger.warning(
                            f"[{op_name}] Rate limited (attempt {attempt}/{max_attempts}). "
                            f"Waiting {wait_time:.1f}s before retry..."
                        )
                        await asyncio.sleep(wait_time)
                    else:
                        logger.error(f"[{op_name}] Rate limited after {max_attempts} attempts")

                except retryable_exceptions as e:
                    last_exception = e

                    if attempt < max_attempts:
                        delay = current_delay
                        if jitter:
                            delay = delay * (0.5 + random.random())
                        delay = min(delay, max_delay)

                        logger.warning(
                            f"[{op_name}] Attempt {attempt}/{max_attempts} failed: {type(e).__name__}: {e}. "
                            f"Retrying in {delay:.1f}s..."
                        )
                        await asyncio.sleep(delay)
                        current_delay *= backoff_factor
                    else:
                        logger.error(
                            f"[{op_name}] Failed after {max_attempts} attempts: {type(e).__name__}: {e}"
                        )

                except Exception as e:
                    logger.error(f"[{op_name}] Non-retryable error: {type(e).__name__}: {e}")
                    raise

            raise RetryError(
                f"[{op_name}] Failed after {max_attempts} attempts",
                last_exception=last_exception,
                attempts=max_attempts,
            )

        return wrapper

    return decorator


def check_rate_limit_response(response: httpx.Response) -> None:
    """
    Raise RateLimitError on a 429 so async_retry can honour Retry-After.

    Usage:
        response = await client.post(url, ...)
        check_rate_limit_response(response)
    """
    if response.status_code != 429:
        return

    retry_after = 60.0
    header = response.headers.get("Retry-After", "")
    if header:
        try:
            retry_after = float(header)
        except ValueError:
            pass
    raise RateLimitError(retry_after=retry_after, message="API rate limit exceeded")


def mem0_retry() -> Callable:
    """Retry configuration for the Mem0 REST API."""
    return async_retry(
        max_attempts=3,
        initial_delay=1.0,
        max_delay=15.0,
        backoff_factor=2.0,
        operation_name="mem0",
    )
