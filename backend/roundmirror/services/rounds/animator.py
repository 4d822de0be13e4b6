from typing import Callable, Optional

from roundmirror.models import AnimatedValue
from .errors import ClockUnavailable

PRICE_INTERPOLATION_MS = 150


def ease_out_cubic(t: float) -> float:
    return 1 - (1 - t) ** 3


def linear(t: float) -> float:
    return t


def lerp(start: float, end: float, t: float) -> float:
    return start + (end - start) * t


class PriceAnimator:
    """Eases a displayed number toward the latest authoritative sample.

    Purely cosmetic. ``observe`` records a sample; ``frame`` returns the value
    to draw at a given instant. A sample arriving mid-animation restarts the
    easing from whatever is currently displayed. A zero sample after a real
    price is ignored.
    """

    def __init__(self, clock, duration_ms: int = PRICE_INTERPOLATION_MS,
                 easing: Callable[[float], float] = ease_out_cubic, reduced_motion: bool = False):
        self.clock = clock
        self.duration_ms = max(0, int(duration_ms))
        self.easing = easing
        self.reduced_motion = reduced_motion
        self._displayed: Optional[float] = None
        self._target: Optional[float] = None
        self._start_value: Optional[float] = None
        self._start_ms: Optional[int] = None

    def _now(self, now: Optional[int]) -> Optional[int]:
        if now is not None:
            return now
        try:
            return self.clock.now_ms()
        except ClockUnavailable:
            return None

    @property
    def animating(self) -> bool:
        return self._start_ms is not None

    @property
    def value(self) -> AnimatedValue:
        return AnimatedValue(displayed=self._displayed, target=self._target,
                             start_value=self._start_value, animation_start=self._start_ms)

    def observe(self, target: float, now: Optional[int] = None) -> None:
        target = float(target)
        if self._target is not None and target == self._target:
            return
        if target == 0 and self._target:
            # zero means no data once a real price is showing
            return
        now = self._now(now)
        if self._target is None or self.reduced_motion or self.duration_ms == 0 or now is None:
            self._snap(target)
            return
        self._start_value = self.frame(now)
        self._target = target
        self._start_ms = now

    def frame(self, now: Optional[int] = None) -> Optional[float]:
        if self._start_ms is None:
            return self._displayed
        now = self._now(now)
        if now is None:
            self._snap(self._target)
            return self._displayed
        progress = min(max((now - self._start_ms) / self.duration_ms, 0.0), 1.0)
        if progress >= 1.0:
            self._snap(self._target)
        else:
            self._displayed = lerp(self._start_value, self._target, self.easing(progress))
        return self._displayed

    def _snap(self, target: float) -> None:
        self._displayed = target
        self._target = target
        self._start_value = None
        self._start_ms = None

    def reset(self) -> None:
        self._displayed = None
        self._target = None
        self._start_value = None
        self._start_ms = None
