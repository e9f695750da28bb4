"""
flowops/polling.py - Bounded poll-until-ready primitive.

Every wait in the toolkit (rollouts, certificates, grace periods between
checks) goes through `wait_until` so that the limit is always explicit.
"""
import logging
import math
import time
from typing import Callable

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5


def attempts_for(timeout: float, interval: float = DEFAULT_INTERVAL) -> int:
    """Number of checks needed to cover `timeout` seconds at `interval`."""
    if interval <= 0:
        raise ValueError("interval must be positive")
    return max(1, math.ceil(timeout / interval) + 1)


def wait_until(
    check: Callable[[], bool],
    *,
    attempts: int,
    interval: float = DEFAULT_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "condition",
) -> bool:
    """
    Call `check` up to `attempts` times, sleeping `interval` between calls.

    Returns True as soon as `check` returns truthy, False when attempts run out.
    An exception from `check` counts as "not ready yet".
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for attempt in range(1, attempts + 1):
        try:
            if check():
                return True
        except Exception as e:
            log.debug(f"{description}: check {attempt}/{attempts} raised {e}")
        if attempt < attempts:
            sleep(interval)
    log.debug(f"{description}: not satisfied after {attempts} attempts")
    return False
