import copy
import logging
from collections import Counter, deque
from typing import Callable, Deque, List, Optional, Tuple

from roundmirror.models import RoundRecord
from .errors import ClockUnavailable, StaleEvent
from .events import RoundEvent
from .modes import GameMode

log = logging.getLogger(__name__)

RETIRED_MEMORY = 64
RESYNC_QUEUE_MAX = 1000

RecordListener = Callable[[RoundRecord], None]
RetireListener = Callable[[str, str], None]


class StateReconciler:
    """Owns the canonical RoundRecord for one topic.

    Snapshots replace the record unconditionally. Incremental events are
    merged only when they name the tracked round (or announce a new one) and
    do not move the record backwards in ``(sequence, phase)`` order. While a
    resync is pending, events are queued and replayed after the snapshot.
    The queue keeps at most ``queue_max`` events, dropping the oldest.
    """

    def __init__(self, mode: GameMode, clock, stale_after_ms: int = 15000, topic: Optional[str] = None,
                 queue_max: int = RESYNC_QUEUE_MAX):
        self.mode = mode
        self.clock = clock
        self.topic = topic or mode.name
        self.stale_after_ms = stale_after_ms
        self._record: Optional[RoundRecord] = None
        self._retired: Deque[str] = deque(maxlen=RETIRED_MEMORY)
        self._queue: Deque[RoundEvent] = deque(maxlen=max(1, queue_max))
        self._awaiting_snapshot = False
        self._marked_stale = False
        self._closed = False
        self._last_applied_at: Optional[int] = None
        self._listeners: List[RecordListener] = []
        self._retire_listeners: List[RetireListener] = []
        self.dropped: Counter = Counter()
        self.applied = 0

    # ---- publish/subscribe ----

    def subscribe(self, listener: RecordListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _unsubscribe

    def on_retire(self, listener: RetireListener) -> None:
        self._retire_listeners.append(listener)

    @property
    def record(self) -> Optional[RoundRecord]:
        """Published copy of the canonical record. Mutating it has no effect."""
        return copy.deepcopy(self._record)

    @property
    def round_id(self) -> Optional[str]:
        return self._record.round_id if self._record else None

    @property
    def awaiting_snapshot(self) -> bool:
        return self._awaiting_snapshot

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def queued(self) -> int:
        return len(self._queue)

    # ---- staleness ----

    def mark_stale(self) -> None:
        self._marked_stale = True

    def is_stale(self, now: Optional[int] = None) -> bool:
        if self._awaiting_snapshot or self._marked_stale or self._record is None:
            return True
        if now is None:
            try:
                now = self.clock.now_ms()
            except ClockUnavailable:
                return True
        return self._last_applied_at is None or now - self._last_applied_at > self.stale_after_ms

    # ---- applying ----

    def begin_resync(self) -> None:
        """Queue incoming events until the next snapshot lands."""
        if self._closed:
            return
        self._awaiting_snapshot = True
        log.info(f"[resync-begin] topic={self.topic} round={self.round_id}")

    def apply_snapshot(self, record: RoundRecord) -> bool:
        if self._closed:
            self.dropped['closed'] += 1
            return False
        old = self._record
        self._record = copy.deepcopy(record)
        self._touch()
        if old is not None and old.round_id != record.round_id:
            self._retire(old.round_id, record.round_id)
        log.info(f"[snapshot] topic={self.topic} round={record.round_id} phase={record.phase} seq={record.sequence}")
        self._publish()
        if self._awaiting_snapshot:
            self._awaiting_snapshot = False
            queued = list(self._queue)
            self._queue.clear()
            if queued:
                log.info(f"[resync-replay] topic={self.topic} events={len(queued)}")
            for event in queued:
                self._apply(event)
        return True

    def apply_event(self, event: RoundEvent) -> bool:
        if self._closed:
            self.dropped['closed'] += 1
            return False
        if self._awaiting_snapshot:
            if len(self._queue) == self._queue.maxlen:
                # deque drops the oldest
                self.dropped['queue_overflow'] += 1
            self._queue.append(event)
            return False
        return self._apply(event)

    def _apply(self, event: RoundEvent) -> bool:
        try:
            self._check(event)
        except StaleEvent as exc:
            self.dropped[exc.reason] += 1
            log.debug(f"[event-drop] topic={self.topic} type={event.type} reason={exc.reason} "
                      f"round={event.round_id} phase={event.phase}")
            return False

        current = self._record
        if event.created and (current is None or event.round_id != current.round_id):
            fresh = RoundRecord(round_id=event.round_id, phase=event.phase or self.mode.phases[0],
                                sequence=event.sequence or 0)
            self._merge(fresh, event)
            self._record = fresh
            self._touch()
            if current is not None:
                self._retire(current.round_id, fresh.round_id)
            log.info(f"[round-created] topic={self.topic} round={fresh.round_id} phase={fresh.phase}")
        else:
            self._merge(current, event)
            self._touch()
        self._publish()
        return True

    def _check(self, event: RoundEvent) -> None:
        current = self._record
        if event.round_id is not None and event.round_id in self._retired:
            raise StaleEvent('retired_round', event.round_id, event.phase)
        if event.created:
            if event.round_id is None:
                raise StaleEvent('foreign_round', event.round_id, event.phase)
            if current is None or event.round_id != current.round_id:
                return
        if current is None:
            raise StaleEvent('foreign_round', event.round_id, event.phase)
        if event.round_id is not None and event.round_id != current.round_id:
            raise StaleEvent('foreign_round', event.round_id, event.phase)
        if event.phase is not None and not self.mode.knows(event.phase):
            raise StaleEvent('unknown_phase', event.round_id, event.phase)
        if self._progress(event) < self._progress_of(current):
            raise StaleEvent('stale_phase', event.round_id, event.phase)
        if self.mode.is_terminal(current.phase) and event.phase is not None and not self.mode.is_terminal(event.phase):
            raise StaleEvent('stale_phase', event.round_id, event.phase)

    def _progress_of(self, record: RoundRecord) -> Tuple[int, int]:
        return record.sequence, self.mode.rank(record.phase)

    def _progress(self, event: RoundEvent) -> Tuple[int, int]:
        current = self._record
        sequence = current.sequence if event.sequence is None else event.sequence
        phase = current.phase if event.phase is None else event.phase
        return sequence, self.mode.rank(phase)

    def _merge(self, record: RoundRecord, event: RoundEvent) -> None:
        if event.phase is not None:
            record.phase = event.phase
        if event.sequence is not None:
            record.sequence = event.sequence
        patch = event.patch
        for name in ('deadlines', 'pools', 'price_anchors', 'extra'):
            if name in patch:
                getattr(record, name).update(copy.deepcopy(patch[name]))
        if 'participants' in patch:
            record.participants = copy.deepcopy(patch['participants'])
        if 'result' in patch:
            record.result = copy.deepcopy(patch['result'])
        for participant in event.upserts:
            record.upsert_participant(participant)
        for wallet in event.removals:
            record.remove_participant(wallet)

    def _retire(self, old_round_id: str, new_round_id: str) -> None:
        self._retired.append(old_round_id)
        log.info(f"[round-retired] topic={self.topic} round={old_round_id} replaced_by={new_round_id}")
        for listener in list(self._retire_listeners):
            listener(old_round_id, new_round_id)

    def _touch(self) -> None:
        self.applied += 1
        self._marked_stale = False
        try:
            self._last_applied_at = self.clock.now_ms()
        except ClockUnavailable:
            self._last_applied_at = None

    def _publish(self) -> None:
        for listener in list(self._listeners):
            listener(copy.deepcopy(self._record))

    def close(self) -> None:
        self._closed = True
        self._awaiting_snapshot = False
        self._queue.clear()
        self._listeners.clear()
        self._retire_listeners.clear()
        log.info(f"[reconciler-closed] topic={self.topic} round={self.round_id}")

    def diagnostics(self):
        return {
            'topic': self.topic,
            'round_id': self.round_id,
            'applied': self.applied,
            'dropped': dict(self.dropped),
            'queued': len(self._queue),
            'awaiting_snapshot': self._awaiting_snapshot,
            'retired': list(self._retired),
        }
