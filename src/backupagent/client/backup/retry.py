"""Retry logic with bounded exponential backoff.

This module provides:
- retry_with_backoff: Run a callable, retrying failures per a RetryPolicy
- is_transient_error: Whether a catalog or volume error may succeed on retry

Every coordinator retries its catalog and volume calls through this
function so they share one policy. Only transient errors are retried;
a 401, a 404 or an expired presigned URL fails on the first attempt.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from backupagent.client.api import CatalogError, CatalogTransportError
from backupagent.client.volume import VolumeError, VolumeTransportError
from backupagent.core.config import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_POLICY = RetryPolicy()

# HTTP statuses worth retrying: timeouts, throttling and server errors
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


def is_transient_error(error: Exception) -> bool:
    """Check whether an error may go away on retry.

    Transport failures (no response), throttling and 5xx responses are
    transient. Any other catalog or volume error is permanent, as is any
    error that is not a catalog, volume or connection error.
    """
    if isinstance(error, (CatalogTransportError, VolumeTransportError)):
        return True
    if isinstance(error, (CatalogError, VolumeError)):
        status = error.status_code
        return status is not None and (status >= 500 or status in RETRYABLE_STATUS_CODES)
    return isinstance(error, (ConnectionError, TimeoutError))


def retry_with_backoff(
    func: Callable[[], T],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    description: str = "operation",
    cancel_check: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    retry_if: Callable[[Exception], bool] | None = None,
) -> T:
    """Execute a function with exponential backoff retry.

    Args:
        func: Function to execute.
        policy: Retry count and backoff schedule.
        retryable_exceptions: Tuple of exception types to retry on.
        description: Label used in log messages.
        cancel_check: Optional function; when it returns True no further
            retry is attempted and the last error is raised.
        sleep: Sleep function (replaced in tests).
        retry_if: Optional predicate narrowing retryable_exceptions;
            errors it rejects are raised without retrying.

    Returns:
        Result of the function.

    Raises:
        The last exception if all retries fail.
    """
    delays = policy.delays()
    attempts = len(delays) + 1

    for attempt, delay in enumerate([*delays, None], start=1):
        try:
            return func()
        except retryable_exceptions as e:
            if retry_if is not None and not retry_if(e):
                logger.error(f"{description}: failed with a permanent error: {e}")
                raise
            if delay is None or (cancel_check is not None and cancel_check()):
                logger.error(f"{description}: giving up after {attempt} attempts: {e}")
                raise

            logger.warning(
                f"{description}: attempt {attempt}/{attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            sleep(delay)

    raise RuntimeError("Unexpected retry loop exit")
