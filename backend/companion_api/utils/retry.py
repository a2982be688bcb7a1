"""Bounded polling with exponential backoff."""

from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


def poll_until_present(
    probe: Callable[[], Optional[T]],
    *,
    max_attempts: int,
    base_delay: float,
    factor: float = 2.0,
    max_delay: float = 60.0,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[Optional[T], int]:
    """Call `probe` until it returns a value or attempts run out.

    Sleeps `base_delay * factor**n` (capped at `max_delay`) between
    attempts, never after the last one. Exceptions from `probe`
    propagate. Returns `(value_or_None, attempts_used)`.
    """
    delay = base_delay
    for attempt in range(1, max_attempts + 1):
        value = probe()
        if value is not None:
            return value, attempt
        if attempt < max_attempts:
            sleep(min(delay, max_delay))
            delay *= factor
    return None, max_attempts
