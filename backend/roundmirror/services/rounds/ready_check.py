import logging
from enum import Enum
from typing import Callable, Optional

from .errors import ActionConflict, ClockUnavailable, ReadyCheckExpired

log = logging.getLogger(__name__)


class ReadyCheckStatus(str, Enum):
    PENDING = 'pending'
    READY = 'ready'
    NOT_READY = 'not_ready'
    INVALIDATED = 'invalidated'


class ReadyCheck:
    """Timed ready/not-ready handshake for one scheduled match.

    The server announces an absolute ``expires_at``. Exactly one response may
    be sent before it; after it the participant is locally ``not_ready`` and
    nothing more is transmitted. The server stays the final arbiter.
    """

    def __init__(self, match_id: str, expires_at: int, clock, send: Callable[[bool], None]):
        self.match_id = match_id
        self.expires_at = int(expires_at)
        self.clock = clock
        self._send = send
        self.status = ReadyCheckStatus.PENDING
        self.response: Optional[bool] = None
        self.auto_resolved = False

    def _now(self, now: Optional[int]) -> Optional[int]:
        if now is not None:
            return now
        try:
            return self.clock.now_ms()
        except ClockUnavailable:
            return None

    @property
    def deadline(self) -> int:
        return self.expires_at

    @property
    def active(self) -> bool:
        return self.status == ReadyCheckStatus.PENDING

    def expired(self, now: Optional[int] = None) -> bool:
        now = self._now(now)
        # an unreadable clock cannot prove we are still in time
        return now is None or now >= self.expires_at

    def respond(self, ready: bool, now: Optional[int] = None) -> ReadyCheckStatus:
        if self.status == ReadyCheckStatus.INVALIDATED:
            raise ActionConflict('ready check is no longer valid')
        if self.response is not None:
            raise ActionConflict('ready check already answered')
        self.poll(now)
        if self.auto_resolved:
            raise ReadyCheckExpired(f"ready check for match {self.match_id} expired")
        self._send(bool(ready))
        self.response = bool(ready)
        self.status = ReadyCheckStatus.READY if ready else ReadyCheckStatus.NOT_READY
        log.info(f"[ready-check-response] match={self.match_id} ready={self.response}")
        return self.status

    def poll(self, now: Optional[int] = None) -> ReadyCheckStatus:
        if self.status == ReadyCheckStatus.PENDING and self.expired(now):
            self.status = ReadyCheckStatus.NOT_READY
            self.auto_resolved = True
            log.info(f"[ready-check-expired] match={self.match_id} status=not_ready")
        return self.status

    def invalidate(self) -> None:
        if self.status != ReadyCheckStatus.INVALIDATED:
            log.info(f"[ready-check-invalidated] match={self.match_id}")
        self.status = ReadyCheckStatus.INVALIDATED

    def to_dict(self):
        return {
            'match_id': self.match_id,
            'expires_at': self.expires_at,
            'status': self.status.value,
            'response': self.response,
            'auto_resolved': self.auto_resolved,
        }
