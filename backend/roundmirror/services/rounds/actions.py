import logging
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from roundmirror.models import ACTION_KINDS, ActionStatus, PendingAction
from .errors import ActionConflict, ActionRejected, ClockUnavailable

log = logging.getLogger(__name__)

ACTION_TIMEOUT_MS = 10000
ERROR_DISPLAY_MS = 5000

# transport(kind, round_id, user, payload, action_id); raising rejects the action
Transport = Callable[[str, str, str, Dict[str, Any], str], None]


class OptimisticActionManager:
    """Single-flight tracking of user actions against the current round.

    At most one non-idle action exists per (user, round). A second submit
    while the first is still ``submitting`` fails synchronously with
    :class:`ActionConflict` and never reaches the transport. Nothing is ever
    retried: a rejected action needs a fresh submit from the user.
    """

    def __init__(self, transport: Transport, clock, timeout_ms: int = ACTION_TIMEOUT_MS,
                 error_display_ms: int = ERROR_DISPLAY_MS, topic: Optional[str] = None):
        self.transport = transport
        self.clock = clock
        self.timeout_ms = timeout_ms
        self.error_display_ms = error_display_ms
        self.topic = topic
        self.round_id: Optional[str] = None
        self._pending: Dict[Tuple[str, str], PendingAction] = {}

    def _now(self) -> Optional[int]:
        try:
            return self.clock.now_ms()
        except ClockUnavailable:
            return None

    # ---- round binding ----

    def bind_round(self, round_id: Optional[str]) -> None:
        if round_id == self.round_id:
            return
        previous, self.round_id = self.round_id, round_id
        if previous is not None:
            self.retire(previous)

    def retire(self, round_id: str) -> None:
        """Force every action tied to ``round_id`` back to idle."""
        for key in [k for k in self._pending if k[1] == round_id]:
            action = self._pending.pop(key)
            log.info(f"[action-reset] topic={self.topic} user={action.user} kind={action.kind} "
                     f"round={round_id} status={action.status.value}")

    def reset(self) -> None:
        for action in self._pending.values():
            log.info(f"[action-reset] topic={self.topic} user={action.user} kind={action.kind} "
                     f"round={action.round_id} status={action.status.value}")
        self._pending.clear()

    # ---- queries ----

    def current(self, user: str) -> Optional[PendingAction]:
        if self.round_id is None:
            return None
        return self._pending.get((user, self.round_id))

    def status(self, user: str) -> ActionStatus:
        action = self.current(user)
        return action.status if action else ActionStatus.IDLE

    def outstanding(self):
        return [a for a in self._pending.values() if a.outstanding]

    # ---- lifecycle ----

    def submit(self, user: str, kind: str, payload: Optional[Dict[str, Any]] = None) -> PendingAction:
        if kind not in ACTION_KINDS:
            raise ValueError(f"unknown action kind '{kind}'")
        if not user:
            raise ActionConflict('a wallet is required to act')
        if self.round_id is None:
            raise ActionConflict('no active round')
        existing = self._pending.get((user, self.round_id))
        if existing is not None and existing.outstanding:
            raise ActionConflict(f"a {existing.kind} is already being submitted for this round")

        action = PendingAction(
            action_id=uuid.uuid4().hex,
            user=user,
            round_id=self.round_id,
            kind=kind,
            payload=dict(payload or {}),
            submitted_at=self._now(),
        )
        self._pending[(user, self.round_id)] = action
        log.info(f"[action-submit] topic={self.topic} user={user} kind={kind} round={action.round_id} id={action.action_id}")
        try:
            self.transport(kind, action.round_id, user, dict(action.payload), action.action_id)
        except ActionRejected as exc:
            log.warning(f"[action-transport-failed] topic={self.topic} id={action.action_id} error={exc.reason}")
            self._reject(action, exc.reason)
        return action

    def resolve(self, ok: bool, action_id: Optional[str] = None, kind: Optional[str] = None,
                round_id: Optional[str] = None, user: Optional[str] = None,
                error: Optional[str] = None, result: Optional[Dict[str, Any]] = None) -> Optional[PendingAction]:
        """Apply a correlated server response. Responses matching nothing are ignored."""
        action = self._match(action_id, kind, round_id, user)
        if action is None:
            log.debug(f"[action-ack-ignored] topic={self.topic} id={action_id} kind={kind} round={round_id}")
            return None
        if ok:
            action.status = ActionStatus.CONFIRMED
            action.result = result
            action.resolved_at = self._now()
            log.info(f"[action-confirmed] topic={self.topic} user={action.user} kind={action.kind} id={action.action_id}")
        else:
            self._reject(action, error or 'rejected')
        return action

    def _match(self, action_id, kind, round_id, user) -> Optional[PendingAction]:
        if action_id is not None:
            for action in self._pending.values():
                if action.action_id == action_id:
                    return action if action.outstanding else None
            return None
        if round_id is not None and round_id != self.round_id:
            return None
        candidates = [
            a for a in self._pending.values()
            if a.outstanding and a.round_id == self.round_id
            and (kind is None or a.kind == kind)
            and (user is None or a.user == user)
        ]
        if len(candidates) == 1:
            return candidates[0]
        return None

    def _reject(self, action: PendingAction, reason: str) -> None:
        action.status = ActionStatus.REJECTED
        action.error = reason
        action.resolved_at = self._now()
        log.info(f"[action-rejected] topic={self.topic} user={action.user} kind={action.kind} reason={reason}")

    def acknowledge(self, user: str) -> bool:
        """The view has shown the confirmation; drop the confirmed action."""
        action = self.current(user)
        if action is None or action.status != ActionStatus.CONFIRMED:
            return False
        del self._pending[(user, action.round_id)]
        return True

    def tick(self, now: Optional[int] = None) -> bool:
        """Time out stuck submissions and expire shown errors. True when anything changed."""
        now = self._now() if now is None else now
        if now is None:
            return False
        changed = False
        for key, action in list(self._pending.items()):
            if action.outstanding and action.submitted_at is not None and now - action.submitted_at >= self.timeout_ms:
                self._reject(action, 'timeout')
                changed = True
            elif (action.status == ActionStatus.REJECTED and action.resolved_at is not None
                  and now - action.resolved_at >= self.error_display_ms):
                del self._pending[key]
                changed = True
        return changed
