import logging
from typing import Callable, List, Optional

from roundmirror.models import RoundRecord, TimerState
from .errors import ClockUnavailable

log = logging.getLogger(__name__)

SMOOTH_TICK_MS = 100
DIGIT_TICK_MS = 1000

# Countdown urgency thresholds (seconds)
WARNING_AFTER_SEC = 60
DANGER_AFTER_SEC = 30
CRITICAL_AFTER_SEC = 10


def remaining_ms(deadline: Optional[int], now: Optional[int]) -> int:
    if deadline is None or now is None:
        return 0
    return max(0, int(deadline) - int(now))


def urgency_for(ms: int) -> str:
    seconds = ms // 1000
    if ms <= 0:
        return 'expired'
    if seconds <= CRITICAL_AFTER_SEC:
        return 'critical'
    if seconds <= DANGER_AFTER_SEC:
        return 'danger'
    if seconds <= WARNING_AFTER_SEC:
        return 'warning'
    return 'normal'


class TimerEngine:
    """Countdown derived from an absolute deadline, recomputed on every tick.

    The engine never counts down on its own: each tick reads the clock and
    recomputes ``deadline - now``, so late or missed ticks cannot drift.
    A phase change recomputes immediately against the new deadline.
    """

    def __init__(self, clock, tick_ms: int = SMOOTH_TICK_MS):
        self.clock = clock
        self.tick_ms = tick_ms
        self._phase: Optional[str] = None
        self._deadline: Optional[int] = None
        self._stopped = False
        self._listeners: List[Callable[[TimerState], None]] = []
        self._state = TimerState(phase=None, deadline=None, remaining_ms=0, urgency='expired')

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def stopped(self) -> bool:
        return self._stopped

    def on_change(self, listener: Callable[[TimerState], None]) -> None:
        self._listeners.append(listener)

    def update(self, record: Optional[RoundRecord]) -> TimerState:
        if record is None:
            return self.set_deadline(None, None)
        return self.set_deadline(record.phase, record.deadlines.get(record.phase))

    def set_deadline(self, phase: Optional[str], deadline: Optional[int]) -> TimerState:
        changed = phase != self._phase or deadline != self._deadline
        self._phase = phase
        self._deadline = deadline
        if changed:
            log.debug(f"[timer-set] phase={phase} deadline={deadline}")
        return self.tick()

    def tick(self, now: Optional[int] = None) -> TimerState:
        if self._stopped:
            return self._state
        if now is None:
            try:
                now = self.clock.now_ms()
            except ClockUnavailable:
                now = None
        ms = remaining_ms(self._deadline, now)
        state = TimerState(phase=self._phase, deadline=self._deadline, remaining_ms=ms, urgency=urgency_for(ms))
        previous, self._state = self._state, state
        if state != previous:
            for listener in list(self._listeners):
                listener(state)
        return state

    def stop(self) -> None:
        self._stopped = True
        self._listeners.clear()
        self._state = TimerState(phase=self._phase, deadline=self._deadline, remaining_ms=0, urgency='expired')
