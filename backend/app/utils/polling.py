from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class PollOutcome(Generic[T]):
    value: Optional[T]
    attempts: int
    done: bool


def poll_until(
    fetch: Callable[[int], T],
    is_done: Callable[[T], bool],
    max_attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> PollOutcome[T]:
    """Sleep, fetch and check until ``is_done`` or the attempt budget runs out.

    ``fetch`` receives the 1-based attempt number. Exceptions raised by
    ``fetch`` or ``is_done`` are not retried; they end the loop immediately.
    """
    last: Optional[T] = None
    for attempt in range(1, max(0, max_attempts) + 1):
        sleep(interval)
        last = fetch(attempt)
        if is_done(last):
            return PollOutcome(value=last, attempts=attempt, done=True)
    return PollOutcome(value=last, attempts=max(0, max_attempts), done=False)
