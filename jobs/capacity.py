"""
Sliding-window cap on job starts, shared by every worker through Redis.

Each start is a member of a sorted set scored by its start time. A worker
reserves a slot before it blocks on the queue and gives the slot back when
nothing was dequeued, so the cap counts real starts only. A full window
delays dequeue; jobs are never dropped.
"""

import logging
import time
import uuid
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

# Upper bound for a single sleep while waiting for a slot.
MAX_WAIT_STEP = 5.0


def seconds_until_slot(start_times: Iterable[float], now: float, max_starts: int, window_seconds: float) -> float:
    """
    How long until one more start fits in the window. 0 means "start now".

    Only starts inside (now - window, now] count. When the window is full,
    the answer is when the oldest of the newest ``max_starts`` starts expires.
    """
    live = sorted(t for t in start_times if t > now - window_seconds)
    if len(live) < max_starts:
        return 0.0
    oldest_blocking = live[len(live) - max_starts]
    return max(0.0, oldest_blocking + window_seconds - now)


class CapacityWindow:
    """At most ``max_starts`` reservations per rolling ``window_seconds``."""

    def __init__(self, connection, name: str, max_starts: int = 10, window_seconds: float = 60,
                 clock: Callable[[], float] = time.time, sleep: Callable[[float], None] = time.sleep):
        if max_starts < 1:
            raise ValueError("max_starts must be at least 1")
        self.connection = connection
        self.key = f"capacity:{name}"
        self.max_starts = max_starts
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep

    def try_acquire(self, token: str) -> float:
        """Reserve a slot for ``token``. Returns 0 on success, else seconds to wait."""

        def reserve(pipe):
            now = self._clock()
            starts = [score for _, score in pipe.zrange(self.key, 0, -1, withscores=True)]
            wait = seconds_until_slot(starts, now, self.max_starts, self.window_seconds)
            # writes to the watched key only after MULTI
            pipe.multi()
            pipe.zremrangebyscore(self.key, "-inf", now - self.window_seconds)
            if wait == 0:
                pipe.zadd(self.key, {token: now})
            pipe.expire(self.key, int(self.window_seconds) + 1)
            return wait

        return self.connection.transaction(reserve, self.key, value_from_callable=True)

    def acquire(self, token: Optional[str] = None, timeout: Optional[float] = None) -> Optional[str]:
        """
        Block until a slot is reserved. Returns the token, or None if
        ``timeout`` elapsed first.
        """
        token = token or uuid.uuid4().hex
        deadline = None if timeout is None else self._clock() + timeout
        logged = False
        while True:
            wait = self.try_acquire(token)
            if wait == 0:
                return token
            if deadline is not None and self._clock() + wait > deadline:
                return None
            if not logged:
                logger.info(f"⏳ Start limit reached ({self.max_starts}/{self.window_seconds}s), waiting {wait:.1f}s")
                logged = True
            self._sleep(min(wait, MAX_WAIT_STEP))

    def release(self, token: str) -> None:
        """Give back a reservation that did not turn into a job start."""
        self.connection.zrem(self.key, token)

    def touch(self, token: str) -> bool:
        """
        Move a reservation to the actual start time.

        Returns False when the reservation has already aged out of the
        window (or was released), in which case nothing is written.
        """
        return bool(self.connection.zadd(self.key, {token: self._clock()}, xx=True, ch=True))

    def in_use(self) -> int:
        now = self._clock()
        return self.connection.zcount(self.key, f"({now - self.window_seconds}", "+inf")
