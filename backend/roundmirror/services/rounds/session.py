import logging
import threading
from typing import Any, Callable, Dict, Optional

from roundmirror.models import ActionStatus, PendingAction, RoundRecord
from .actions import OptimisticActionManager
from .animator import PriceAnimator
from .errors import ActionConflict, ActionRejected, ClockUnavailable
from .events import ActionResult, PriceSample, ReadyCheckOpened, RoundEvent, decode
from .modes import parse_topic
from .odds import OddsQuote, display_odds, estimate_odds
from .ready_check import ReadyCheck, ReadyCheckStatus
from .reconciler import RESYNC_QUEUE_MAX, StateReconciler
from .timer import DIGIT_TICK_MS, SMOOTH_TICK_MS, TimerEngine

log = logging.getLogger(__name__)

# send(event_name, data); raises ActionRejected when the channel cannot carry it
Send = Callable[[str, Dict[str, Any]], None]

READY_RESPONSE = 'ready_response'


class TopicSession:
    """Everything the view layer needs for one topic, behind one lock.

    Channel callbacks, the tick loop and HTTP handlers all land here from
    different threads; every public method takes the session lock, so the
    engine objects underneath only ever see one caller at a time.
    """

    def __init__(self, topic: str, clock, send: Send, config: Optional[Dict[str, Any]] = None,
                 on_update: Optional[Callable[[str], None]] = None):
        cfg = config or {}
        self.topic = topic
        self.mode, self.key = parse_topic(topic)
        self.clock = clock
        self._send = send
        self._on_update = on_update
        self._lock = threading.RLock()
        self._closed = False

        self.reconciler = StateReconciler(self.mode, clock, stale_after_ms=cfg.get('STALE_AFTER_MS', 15000),
                                          topic=topic, queue_max=cfg.get('RESYNC_QUEUE_MAX', RESYNC_QUEUE_MAX))
        self.timer = TimerEngine(clock, tick_ms=cfg.get('TICK_INTERVAL_MS', SMOOTH_TICK_MS))
        self.ready_timer = TimerEngine(clock, tick_ms=cfg.get('DIGIT_TICK_INTERVAL_MS', DIGIT_TICK_MS))
        self.actions = OptimisticActionManager(
            self._transport, clock,
            timeout_ms=cfg.get('ACTION_TIMEOUT_MS', 10000),
            error_display_ms=cfg.get('ACTION_ERROR_DISPLAY_MS', 5000),
            topic=topic,
        )
        self._interpolation_ms = cfg.get('PRICE_INTERPOLATION_MS', 150)
        self._reduced_motion = bool(cfg.get('REDUCED_MOTION', False))
        self.animators: Dict[str, PriceAnimator] = {}
        self._ready_window: Optional[ReadyCheckOpened] = None
        self._ready_checks: Dict[str, ReadyCheck] = {}
        self._last_tick_key = None

        self.reconciler.subscribe(self._on_record)
        self.reconciler.on_retire(self._on_retire)

    # ---- wiring ----

    def _now(self) -> Optional[int]:
        try:
            return self.clock.now_ms()
        except ClockUnavailable:
            return None

    def _notify(self) -> None:
        if self._on_update is not None and not self._closed:
            self._on_update(self.topic)

    def _on_record(self, record: RoundRecord) -> None:
        self.timer.update(record)
        self.actions.bind_round(record.round_id)
        if self._ready_window is not None and (
                record.phase == 'cancelled' or record.round_id != self._ready_window.match_id):
            self._drop_ready_check()

    def _on_retire(self, old_round_id: str, new_round_id: str) -> None:
        self.actions.retire(old_round_id)
        if self._ready_window is not None and self._ready_window.match_id == old_round_id:
            self._drop_ready_check()
        for animator in self.animators.values():
            animator.reset()

    def _drop_ready_check(self) -> None:
        for check in self._ready_checks.values():
            check.invalidate()
        self._ready_checks.clear()
        self._ready_window = None
        self.ready_timer.set_deadline(None, None)

    def _transport(self, kind: str, round_id: str, user: str, payload: Dict[str, Any], action_id: str) -> None:
        event, data = self.mode.build_action(kind, self.key, round_id, user, payload, action_id)
        self._send(event, data)

    def _animator(self, series: str) -> PriceAnimator:
        animator = self.animators.get(series)
        if animator is None:
            animator = PriceAnimator(self.clock, duration_ms=self._interpolation_ms,
                                     reduced_motion=self._reduced_motion)
            self.animators[series] = animator
        return animator

    # ---- inbound ----

    def begin_resync(self) -> None:
        with self._lock:
            self.reconciler.begin_resync()

    def apply_snapshot(self, record: RoundRecord) -> None:
        with self._lock:
            if self.reconciler.apply_snapshot(record):
                self._seed_prices(record)
                self._notify()

    def mark_stale(self) -> None:
        with self._lock:
            self.reconciler.mark_stale()
            self._notify()

    def handle_message(self, name: str, data: Any) -> None:
        """Route one raw channel message through the decoder into the engine."""
        with self._lock:
            if self._closed:
                return
            changed = False
            for message in decode(self.mode, self.key, name, data):
                if isinstance(message, RoundEvent):
                    changed = self.reconciler.apply_event(message) or changed
                elif isinstance(message, ActionResult):
                    changed = self._apply_ack(message) or changed
                elif isinstance(message, PriceSample):
                    self._animator(message.series).observe(message.value)
                    changed = True
                elif isinstance(message, ReadyCheckOpened):
                    self._open_ready_check(message)
                    changed = True
            if changed:
                self._notify()

    def _seed_prices(self, record: RoundRecord) -> None:
        start = record.price_anchors.get('start')
        if start is not None and 'price' not in self.animators and self.mode.price_feeds:
            self._animator('price').observe(start)

    def _apply_ack(self, ack: ActionResult) -> bool:
        action = self.actions.resolve(ack.ok, action_id=ack.action_id, kind=ack.kind, round_id=ack.round_id,
                                      user=ack.user, error=ack.error, result=ack.result)
        return action is not None

    def _open_ready_check(self, opened: ReadyCheckOpened) -> None:
        if self.reconciler.round_id not in (None, opened.match_id):
            log.debug(f"[ready-check-ignored] topic={self.topic} match={opened.match_id}")
            return
        if self._ready_window is not None and self._ready_window.expires_at == opened.expires_at:
            return
        self._drop_ready_check()
        self._ready_window = opened
        self.ready_timer.set_deadline('ready_check', opened.expires_at)
        log.info(f"[ready-check-open] topic={self.topic} match={opened.match_id} expires_at={opened.expires_at}")

    # ---- outbound ----

    def submit(self, user: str, kind: str, payload: Optional[Dict[str, Any]] = None) -> PendingAction:
        if kind not in self.mode.action_events:
            raise ValueError(f"{self.mode.name} does not support action '{kind}'")
        if kind == READY_RESPONSE:
            # only ReadyCheck.respond may send it, once and before expiry
            raise ValueError("ready responses go through the ready check")
        with self._lock:
            action = self.actions.submit(user, kind, payload)
            self._notify()
            return action

    def acknowledge(self, user: str) -> bool:
        with self._lock:
            done = self.actions.acknowledge(user)
            if done:
                self._notify()
            return done

    def ready_check(self, user: str) -> Optional[ReadyCheck]:
        with self._lock:
            if self._ready_window is None:
                return None
            check = self._ready_checks.get(user)
            if check is None:
                window = self._ready_window
                check = ReadyCheck(window.match_id, window.expires_at, self.clock,
                                   send=lambda ready: self._send_ready(user, window.match_id, ready))
                self._ready_checks[user] = check
            return check

    def _send_ready(self, user: str, match_id: str, ready: bool) -> None:
        action = self.actions.submit(user, READY_RESPONSE, {'ready': ready, 'matchId': match_id})
        if action.status == ActionStatus.REJECTED:
            raise ActionRejected(action.error or 'rejected')

    def respond_ready(self, user: str, ready: bool) -> ReadyCheckStatus:
        with self._lock:
            check = self.ready_check(user)
            if check is None:
                raise ActionConflict('no ready check is open')
            status = check.respond(ready)
            self._notify()
            return status

    # ---- derived views ----

    def tick(self, now: Optional[int] = None) -> bool:
        """Advance timers and timeouts. True when the digit-level countdown moved."""
        with self._lock:
            if self._closed:
                return False
            now = self._now() if now is None else now
            state = self.timer.tick(now)
            self.ready_timer.tick(now)
            changed = self.actions.tick(now)
            for check in self._ready_checks.values():
                if check.active and check.poll(now) != ReadyCheckStatus.PENDING:
                    changed = True
            for animator in self.animators.values():
                animator.frame(now)
            if changed:
                self._notify()
            key = (state.phase, state.seconds, state.urgency)
            moved, self._last_tick_key = key != self._last_tick_key, key
            return moved

    def tick_payload(self) -> Dict[str, Any]:
        with self._lock:
            payload = {'topic': self.topic, 'timer': self.timer.state.to_dict()}
            if self._ready_window is not None:
                payload['ready_timer'] = self.ready_timer.state.to_dict()
            return payload

    def odds(self, side: str, amount: float = 0.0, user: Optional[str] = None) -> Optional[OddsQuote]:
        with self._lock:
            record = self.reconciler.record
            now = self._now()
            if record is None or now is None:
                return None
            quote = estimate_odds(record, side, now, amount=amount)
            action = self.actions.current(user) if user else None
            if action is not None and action.kind == 'bet' and action.status == ActionStatus.CONFIRMED:
                return display_odds(quote, action.result)
            return quote

    def view(self, user: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            now = self._now()
            record = self.reconciler.record
            prices = {}
            for series, animator in self.animators.items():
                animator.frame(now)
                prices[series] = animator.value.to_dict()
            out = {
                'topic': self.topic,
                'mode': self.mode.name,
                'round': record.to_dict() if record else None,
                'stale': self.reconciler.is_stale(now),
                'timer': self.timer.state.to_dict(),
                'prices': prices,
                'ready_check': None,
            }
            if self._ready_window is not None:
                if user:
                    check = self.ready_check(user)
                    check.poll(now)
                    out['ready_check'] = check.to_dict()
                else:
                    out['ready_check'] = {'match_id': self._ready_window.match_id,
                                          'expires_at': self._ready_window.expires_at}
                out['ready_timer'] = self.ready_timer.state.to_dict()
            if user:
                action = self.actions.current(user)
                out['action'] = action.to_dict() if action else {'status': ActionStatus.IDLE.value}
                participant = record.participant(user) if record else None
                out['participant'] = participant.to_dict() if participant else None
            return out

    def diagnostics(self) -> Dict[str, Any]:
        with self._lock:
            out = self.reconciler.diagnostics()
            out['stale'] = self.reconciler.is_stale()
            out['outstanding_actions'] = len(self.actions.outstanding())
            out['timer'] = self.timer.state.to_dict()
            out['price_series'] = sorted(self.animators)
            out['ready_check_open'] = self._ready_window is not None
            return out

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.reconciler.close()
            self.actions.reset()
            self._drop_ready_check()
            self.timer.stop()
            self.ready_timer.stop()
            for animator in self.animators.values():
                animator.reset()
            log.info(f"[session-closed] topic={self.topic}")
