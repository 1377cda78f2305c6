"""Retry with exponential backoff for transient registry failures."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *func* until it succeeds or *attempts* are exhausted.

    Only exceptions in *retry_on* are retried; anything else propagates on
    the first occurrence. The last retryable exception is re-raised once
    the attempts run out.
    """
    name = description or getattr(func, "__name__", "call")
    current_delay = delay
    for attempt in range(1, max(attempts, 1) + 1):
        try:
            return func()
        except retry_on as exc:
            if attempt >= attempts:
                logger.error("All %d attempts failed for %s: %s", attempts, name, exc)
                raise
            logger.warning(
                "Attempt %d/%d for %s failed: %s. Retrying in %.2fs",
                attempt,
                attempts,
                name,
                exc,
                current_delay,
            )
            sleep(current_delay)
            current_delay *= backoff
    raise AssertionError("unreachable")
