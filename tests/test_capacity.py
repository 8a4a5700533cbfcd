"""
Tests for the sliding-window start limit.
"""

import pytest

from jobs.capacity import MAX_WAIT_STEP, CapacityWindow, seconds_until_slot


class ZSetRedis:
    """Just enough of a Redis sorted set for CapacityWindow."""

    def __init__(self):
        self.zsets = {}
        self.expiries = {}

    def _z(self, key):
        return self.zsets.setdefault(key, {})

    def transaction(self, func, *watches, value_from_callable=False):
        return func(self)

    def multi(self):
        pass

    def zremrangebyscore(self, key, low, high):
        z = self._z(key)
        for member in [m for m, s in z.items() if s <= high]:
            del z[member]

    def zrange(self, key, start, end, withscores=False):
        items = sorted(self._z(key).items(), key=lambda kv: kv[1])
        return items if withscores else [m for m, _ in items]

    def zadd(self, key, mapping, xx=False, ch=False):
        z = self._z(key)
        changed = 0
        for member, score in mapping.items():
            if xx and member not in z:
                continue
            if z.get(member) != score:
                changed += 1
            z[member] = score
        return changed

    def zrem(self, key, member):
        self._z(key).pop(member, None)

    def zcount(self, key, low, high):
        low = float(str(low).lstrip("("))
        return sum(1 for s in self._z(key).values() if s > low)

    def expire(self, key, seconds):
        self.expiries[key] = seconds


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def window(clock):
    return CapacityWindow(ZSetRedis(), "sheets", max_starts=10, window_seconds=60, clock=clock, sleep=clock.sleep)


class TestSecondsUntilSlot:
    def test_room_left(self):
        assert seconds_until_slot([], 100, 10, 60) == 0
        assert seconds_until_slot([float(t) for t in range(9)], 10, 10, 60) == 0

    def test_full_window_waits_for_oldest(self):
        starts = [float(t) for t in range(10)]
        assert seconds_until_slot(starts, 30, 10, 60) == 30

    def test_expired_starts_do_not_count(self):
        starts = [0.0] * 5 + [50.0] * 5
        assert seconds_until_slot(starts, 61, 10, 60) == 0

    def test_more_starts_than_limit(self):
        starts = [0.0, 1.0, 2.0, 3.0]
        # with a limit of 2, the start at t=2 has to age out
        assert seconds_until_slot(starts, 10, 2, 60) == 52


class TestCapacityWindow:
    def test_ten_starts_then_wait(self, window):
        for i in range(10):
            assert window.try_acquire(f"t{i}") == 0
        wait = window.try_acquire("t10")
        assert wait == 60
        assert window.in_use() == 10

    def test_window_slides(self, window, clock):
        for i in range(10):
            window.try_acquire(f"t{i}")
        clock.now += 60.5
        assert window.try_acquire("late") == 0

    def test_acquire_sleeps_in_small_steps(self, window, clock):
        for i in range(10):
            window.try_acquire(f"t{i}")

        token = window.acquire("waiting")

        assert token == "waiting"
        assert clock.sleeps
        assert all(s <= MAX_WAIT_STEP for s in clock.sleeps)
        assert sum(clock.sleeps) == pytest.approx(60)

    def test_acquire_timeout(self, window, clock):
        for i in range(10):
            window.try_acquire(f"t{i}")
        assert window.acquire("waiting", timeout=5) is None

    def test_release_frees_a_slot(self, window):
        for i in range(10):
            window.try_acquire(f"t{i}")
        window.release("t3")
        assert window.try_acquire("t10") == 0

    def test_touch_moves_start_time(self, window, clock):
        window.try_acquire("a")
        clock.now += 30
        assert window.touch("a") is True
        assert window.connection.zsets[window.key]["a"] == clock.now

    def test_touch_does_not_resurrect_released_token(self, window):
        window.try_acquire("a")
        window.release("a")
        assert window.touch("a") is False
        assert "a" not in window.connection.zsets[window.key]

    def test_touch_reports_pruned_reservation(self, window, clock):
        window.try_acquire("idle")
        clock.now += 61
        window.try_acquire("other")
        assert window.touch("idle") is False

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            CapacityWindow(ZSetRedis(), "x", max_starts=0)
