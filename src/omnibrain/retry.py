"""Bounded exponential-backoff retry for document store calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from .errors import RETRYABLE_CODES, error_code

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 3
BASE_DELAY = 0.5  # seconds


def with_retry(
    label: str,
    fn: Callable[[], T],
    *,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn*, retrying transient backend failures.

    A failure is retried only when its classification code is in
    :data:`~omnibrain.errors.RETRYABLE_CODES` and fewer than *max_retries*
    retries have been made.  The wait before retry ``n`` (0-based) is
    ``base_delay * 2 ** n``, i.e. 0.5 s, 1 s and 2 s with the defaults.

    Args:
        label: Operation name used in log messages.
        fn: Zero-argument callable performing the operation.
        max_retries: Maximum number of retries (attempts minus one).
        base_delay: Delay before the first retry, in seconds.
        sleep: Function used to wait between attempts.

    Returns:
        Whatever *fn* returns.

    Raises:
        Exception: The last error raised by *fn*, unchanged, when it is not
            retryable or the retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as exc:
            code = error_code(exc)
            if code not in RETRYABLE_CODES or attempt >= max_retries:
                raise
            delay = base_delay * (2**attempt)
            attempt += 1
            logger.warning(
                "Retryable error in %s (attempt %d/%d, code=%s), retrying in %.1fs: %s",
                label,
                attempt,
                max_retries,
                code,
                delay,
                exc,
            )
            sleep(delay)
