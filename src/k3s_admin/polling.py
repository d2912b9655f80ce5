"""Bounded wait-with-poll helpers."""

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class SystemClock:
    """Wall clock used outside of tests."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float = 5,
    clock=None,
    description: str = "condition",
) -> bool:
    """Poll ``predicate`` until it returns True or ``timeout`` seconds pass.

    Args:
        predicate: Zero-argument callable checked on each poll
        timeout: Maximum seconds to wait
        interval: Seconds between polls
        clock: Object with ``monotonic()`` and ``sleep()``; defaults to SystemClock
        description: Used in debug logging

    Returns:
        True if the predicate became true in time, False on timeout
    """
    clock = clock or SystemClock()
    deadline = clock.monotonic() + timeout
    while True:
        if predicate():
            return True
        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            logger.debug(f"Timed out after {timeout}s waiting for {description}")
            return False
        logger.debug(f"Waiting for {description} ({int(remaining)}s left)")
        clock.sleep(min(interval, remaining))
