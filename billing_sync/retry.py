"""Exponential backoff with jitter for billing provider calls.

Retries on transient HTTP errors (429, 500, 502, 503, 504) and transport
errors.  Respects Retry-After headers.  Logs each retry attempt.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def retry_with_backoff(
    max_retries: int = 2,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    jitter: float = 0.3,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable:
    """Decorator: retry a provider call with exponential backoff + jitter.

    Delays stay short: these calls run inside a webhook delivery that the
    provider times out.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay cap in seconds.
        jitter: Jitter factor (0.0-1.0).
        sleep: Sleep function (tests pass a recorder).
    """

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return fn(*args, **kwargs)
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    if status not in RETRYABLE_STATUS_CODES or attempt >= max_retries:
                        raise
                    delay = compute_delay(attempt, base_delay, max_delay, jitter, e.response)
                    reason = f"HTTP {status}"
                except httpx.TransportError as e:
                    if attempt >= max_retries:
                        raise
                    delay = compute_delay(attempt, base_delay, max_delay, jitter)
                    reason = f"transport error: {type(e).__name__}"
                attempt += 1
                logger.warning(
                    "Retry %d/%d for %s (%s), waiting %.1fs",
                    attempt,
                    max_retries,
                    fn.__name__,
                    reason,
                    delay,
                )
                sleep(delay)

        return wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    response: httpx.Response | None = None,
) -> float:
    """Delay for ``attempt``: Retry-After if present, else base * 2^attempt +/- jitter."""
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
    return max(0.05, delay)
