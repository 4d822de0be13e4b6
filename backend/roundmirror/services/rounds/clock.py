import time

from .errors import ClockUnavailable


class SystemClock:
    """Wall clock in epoch milliseconds, the unit every server deadline uses."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Clock that only moves when told to. Used by tests and replays."""

    def __init__(self, start_ms: int = 0):
        self._now = int(start_ms)
        self.available = True

    def now_ms(self) -> int:
        if not self.available:
            raise ClockUnavailable('manual clock disabled')
        return self._now

    def set(self, now_ms: int) -> None:
        self._now = int(now_ms)

    def advance(self, delta_ms: int) -> int:
        self._now += int(delta_ms)
        return self._now
