#!filepath: src/ontario_obits_app/utils/backoff.py
from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Optional


def call_with_exponential_backoff(
    fn: Callable[[], Any],
    *,
    max_retries: int = 2,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    jitter: float = 0.0,
    retry_after_seconds: Optional[float] = None,
    is_retryable: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, float, Exception], None]] = None,
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Run `fn` with exponential backoff.

    The delay before retry number `n` (counting from zero) is
    `base_delay * 2**n`, capped at `max_delay`.

    Args:
        fn: Zero-argument callable.
        max_retries: Retries after the first attempt.
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay in seconds.
        jitter: Multiplicative random spread, 0 disables it.
        retry_after_seconds: Lower bound when the remote side asked to wait.
        is_retryable: Predicate deciding whether an error deserves a retry.
        on_retry: Callback invoked before sleeping.
        logger: When given and `on_retry` is None, retries log a warning.
        sleep: Sleep function, injectable for tests.

    Returns:
        Whatever `fn` returns.

    Raises:
        Exception: The last error once retries are exhausted, or the first
            non-retryable one.
    """
    if on_retry is None and logger is not None:

        def _default_on_retry(attempt: int, delay: float, exc: Exception) -> None:
            logger.warning(f"Retrying, attempt={attempt}, delay={delay:.1f}s, err={exc}")

        on_retry = _default_on_retry

    attempt = 0
    while True:
        try:
            return fn()
        except Exception as exc:
            if is_retryable is not None and not is_retryable(exc):
                raise
            if attempt >= max_retries:
                raise

            delay = min(float(max_delay), float(base_delay) * (2.0**attempt))
            if float(jitter) > 0.0:
                delay *= 1.0 + random.uniform(-float(jitter), float(jitter))
            if retry_after_seconds is not None:
                delay = max(delay, float(retry_after_seconds))

            attempt += 1
            if on_retry is not None:
                on_retry(attempt, float(delay), exc)
            sleep(max(0.0, float(delay)))
