"""
Caller-side retry policy for transient storage / ledger failures
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from .errors import IdentitySystemError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    operation: str,
    max_attempts: int = 3,
    backoff_seconds: float = 0.5,
    before_retry: Optional[Callable[[IdentitySystemError], Optional[T]]] = None,
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """
    Run ``fn`` and retry on errors flagged ``retryable``

    Non-retryable errors propagate on the first failure. The delay doubles
    after each failed attempt.

    Args:
        fn: Unit of work
        operation: Name used in log records
        max_attempts: Total attempts including the first
        backoff_seconds: Delay before the first retry
        before_retry: Called with the error before each retry. If it returns
            something other than None, that value is returned instead of
            retrying (used to check whether a submitted write already landed).
        sleep: Injectable for tests

    Returns:
        Result of ``fn`` (or of ``before_retry``)
    """
    delay = backoff_seconds
    attempt = 1
    while True:
        try:
            return fn()
        except IdentitySystemError as e:
            if not e.retryable or attempt >= max_attempts:
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                operation, attempt, max_attempts, e.message, delay
            )
            if before_retry is not None:
                settled = before_retry(e)
                if settled is not None:
                    logger.info("%s already applied; not resubmitting", operation)
                    return settled
            sleep(delay)
            delay *= 2
            attempt += 1
