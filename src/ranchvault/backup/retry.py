"""
Bounded retry with exponential backoff.

Store reads and blob transfers can fail transiently (a locked database, a
dropped connection, a 503). Those failures are retried a bounded number of
times; anything else propagates on the first attempt.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from ranchvault.config.settings import RetryConfig
from ranchvault.storage.blob_store import BlobTransferError
from ranchvault.storage.record_store import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    TransientStoreError,
    BlobTransferError,
    ConnectionError,
    TimeoutError,
)


def backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number attempt + 1 (attempt counts from 0)."""
    return float(min(config.base_delay * (2**attempt), config.max_delay))


def with_retry(
    func: Callable[..., T],
    *args: Any,
    config: RetryConfig | None = None,
    max_retries: int | None = None,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """
    Execute a function with retry logic and exponential backoff.

    Retries on transient errors but not on permanent failures.

    Args:
        func: The function to execute.
        *args: Positional arguments to pass to the function.
        config: Backoff settings. Defaults to RetryConfig().
        max_retries: Override config.max_retries.
        description: What is being attempted, for log messages.
        sleep: Sleep function, replaceable in tests.
        **kwargs: Keyword arguments to pass to the function.

    Returns:
        The return value of the function.

    Raises:
        The last exception if all retries are exhausted.
    """
    config = config or RetryConfig()
    retries = max_retries if max_retries is not None else config.max_retries

    for attempt in range(retries + 1):
        try:
            return func(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            if attempt >= retries:
                raise
            delay = backoff_delay(attempt, config)
            logger.warning(
                f"{description} failed, retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{retries}): {e}"
            )
            sleep(delay)

    # range() always runs at least once, so this is unreachable
    raise RuntimeError(f"{description} did not run")
