"""Exponential backoff with jitter for source-system calls.

Retries on transient HTTP errors (429, 500, 502, 503, 504) and transport
errors (connect, read timeouts). Respects Retry-After headers. Logs each
retry attempt.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP status codes that trigger a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def call_with_backoff(
    fn: Callable[[], T],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: float = 0.3,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "request",
) -> T:
    """Call ``fn`` and retry transient failures.

    Non-retryable status errors and the final failure are re-raised as-is.

    Args:
        fn: Zero-argument callable performing one HTTP call.
        max_retries: Retry attempts after the first call.
        base_delay: Initial delay in seconds.
        max_delay: Cap on any single delay, Retry-After included.
        jitter: Fraction of the delay randomized in either direction.
        sleep: Sleep function (tests pass a no-op).
        label: Name used in retry log lines.
    """
    for attempt in range(max_retries + 1):
        try:
            return fn()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status not in RETRYABLE_STATUS_CODES or attempt == max_retries:
                raise
            delay = compute_delay(attempt, base_delay, max_delay, jitter, e.response)
            logger.warning(
                "Retry %d/%d for %s (HTTP %d), waiting %.1fs",
                attempt + 1,
                max_retries,
                label,
                status,
                delay,
            )
        except httpx.TransportError as e:
            if attempt == max_retries:
                raise
            delay = compute_delay(attempt, base_delay, max_delay, jitter)
            logger.warning(
                "Retry %d/%d for %s (transport error: %s), waiting %.1fs",
                attempt + 1,
                max_retries,
                label,
                type(e).__name__,
                delay,
            )
        sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    response: httpx.Response | None = None,
) -> float:
    """Exponential backoff + jitter, or Retry-After when the server sent one."""
    if response is not None:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(float(retry_after), max_delay)
            except ValueError:
                pass

    delay = min(base_delay * (2**attempt), max_delay)
    jitter_amount = delay * jitter
    delay += random.uniform(-jitter_amount, jitter_amount)
    return max(0.1, delay)
