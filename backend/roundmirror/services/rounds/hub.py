import threading
from collections import Counter
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from roundmirror import socketio
from roundmirror.channel import PushChannel
from roundmirror.snapshots import SnapshotClient
from .clock import SystemClock
from .errors import ChannelDisconnect, SnapshotFetchFailure
from .events import channel_event_names
from .modes import parse_topic
from .session import TopicSession

PRICE_SUBSCRIBE_EVENT = 'subscribe_prices'
HTTP_HOLDER = 'http'
AUTO_HOLDER = 'auto'


def backoff_delays(base_ms: int, max_ms: int) -> Iterator[int]:
    """500, 1000, 2000, ... capped at ``max_ms``."""
    delay = base_ms
    while True:
        yield delay
        delay = min(delay * 2, max_ms)


def topic_room(topic: str) -> str:
    return f"topic:{topic}"


class RoundHub:
    """Owns one TopicSession per subscribed topic and the shared push channel.

    - Subscriptions are reference counted per holder (HTTP, a socket, the
      auto-subscribe list); the last release tears the session down and
      releases the backend subscription
    - Every (re)connect of the channel resubscribes and resyncs all topics
    - Snapshot fetches retry with exponential backoff; meanwhile the topic is
      flagged stale and incoming events queue behind the pending snapshot
    - In TESTING no background task is started and resyncs run inline, once
    """

    def __init__(self):
        self.app = None
        self.clock = None
        self.channel: Optional[PushChannel] = None
        self.snapshots: Optional[SnapshotClient] = None
        self.sessions: Dict[str, TopicSession] = {}
        self._holders: Dict[str, Counter] = {}
        self._wire_refs: Counter = Counter()
        self._unhook: Dict[str, List[Callable[[], None]]] = {}
        self._resync_gen: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._ticking = False

    @property
    def testing(self) -> bool:
        return bool(self.app and self.app.config.get('TESTING'))

    def init_app(self, app, channel=None, snapshots=None, clock=None) -> None:
        if self.app is not None:
            self.shutdown()
        cfg = app.config
        self.app = app
        self.clock = clock or SystemClock()
        self.snapshots = snapshots or SnapshotClient(
            cfg['BACKEND_URL'],
            timeout=cfg.get('SNAPSHOT_TIMEOUT_SEC', 5),
            token=cfg.get('BACKEND_TOKEN'),
        )
        self.channel = channel or PushChannel(
            cfg['BACKEND_URL'],
            token=cfg.get('BACKEND_TOKEN'),
            reconnection_attempts=cfg.get('CHANNEL_RECONNECT_ATTEMPTS', 5),
            reconnection_delay=cfg.get('CHANNEL_RECONNECT_DELAY_SEC', 1),
        )
        self.channel.on_connect(self.resync_all)
        self.channel.on_disconnect(self._on_channel_lost)
        app.extensions['roundmirror'] = self

        for topic in cfg.get('AUTO_SUBSCRIBE_TOPICS') or []:
            self.subscribe(topic, holder=AUTO_HOLDER)

        if not self.testing:
            socketio.start_background_task(self._connect_loop)
            self.start_ticking()

    # ---- topics ----

    def get(self, topic: str) -> Optional[TopicSession]:
        return self.sessions.get(topic)

    def holds(self, topic: str, holder: str = HTTP_HOLDER) -> bool:
        with self._lock:
            return self._holders.get(topic, Counter())[holder] > 0

    def refs(self, topic: str) -> int:
        with self._lock:
            return sum(self._holders.get(topic, Counter()).values())

    def subscribe(self, topic: str, holder: str = HTTP_HOLDER) -> TopicSession:
        mode, key = parse_topic(topic)
        with self._lock:
            self._holders.setdefault(topic, Counter())[holder] += 1
            session = self.sessions.get(topic)
            if session is not None:
                return session
            session = TopicSession(topic, self.clock, send=self.channel.emit, config=self.app.config,
                                   on_update=self._publish)
            self.sessions[topic] = session
            self._unhook[topic] = [self.channel.on(name, session.handle_message)
                                   for name in channel_event_names(mode)]
            for wire in self._wire_calls(session):
                self._wire_refs[wire] += 1
        self.app.logger.info(f"[topic-subscribed] topic={topic} mode={mode.name} key={key} holder={holder}")
        self._activate(session)
        return session

    def unsubscribe(self, topic: str, holder: str = HTTP_HOLDER) -> bool:
        """Drop one reference ``holder`` took. True when the topic was torn down.

        A holder can only release references it took itself.
        """
        with self._lock:
            held = self._holders.get(topic)
            if not held or held[holder] <= 0:
                return False
            held[holder] -= 1
            if held[holder] <= 0:
                del held[holder]
            if held:
                return False
            session, released = self._detach(topic)
        self._teardown(session, released)
        return True

    def _detach(self, topic: str) -> Tuple[TopicSession, List[Tuple]]:
        # caller holds self._lock
        self._holders.pop(topic, None)
        session = self.sessions.pop(topic)
        for off in self._unhook.pop(topic, []):
            off()
        self._resync_gen.pop(topic, None)
        released = []
        for wire in self._wire_calls(session):
            self._wire_refs[wire] -= 1
            if self._wire_refs[wire] <= 0:
                del self._wire_refs[wire]
                released.append(wire)
        return session, released

    def _teardown(self, session: TopicSession, released: List[Tuple]) -> None:
        mode = session.mode
        if released and mode.unsubscribe_event:
            self.channel.subscribe(mode.unsubscribe_event, mode.subscribe_args(session.key))
        session.close()
        self.app.logger.info(f"[topic-unsubscribed] topic={session.topic}")

    def _wire_calls(self, session: TopicSession) -> List[Tuple]:
        mode = session.mode
        return [(mode.subscribe_event, tuple(mode.subscribe_args(session.key)))]

    def _activate(self, session: TopicSession) -> None:
        # queue events from the moment the backend subscription is (re)sent
        session.begin_resync()
        mode = session.mode
        self.channel.subscribe(mode.subscribe_event, mode.subscribe_args(session.key))
        symbols = [symbol for _, symbol in mode.price_symbols(session.key)]
        if symbols:
            self.channel.subscribe(PRICE_SUBSCRIBE_EVENT, [symbols])
        self.resync(session.topic)

    # ---- resync ----

    def resync(self, topic: str) -> Optional[bool]:
        session = self.sessions.get(topic)
        if session is None:
            return None
        session.begin_resync()
        with self._lock:
            gen = self._resync_gen[topic] = self._resync_gen.get(topic, 0) + 1
        if self.testing:
            return self._resync_worker(topic, gen, attempts=1)
        socketio.start_background_task(self._resync_worker, topic, gen)
        return None

    def _resync_worker(self, topic: str, gen: int, attempts: Optional[int] = None) -> bool:
        cfg = self.app.config
        delays = backoff_delays(cfg.get('SNAPSHOT_RETRY_BASE_MS', 500), cfg.get('SNAPSHOT_RETRY_MAX_MS', 10000))
        tried = 0
        while True:
            session = self.sessions.get(topic)
            if session is None or session.closed or self._resync_gen.get(topic) != gen:
                return False
            tried += 1
            try:
                record = self.snapshots.fetch(session.mode, session.key)
            except SnapshotFetchFailure as exc:
                delay = next(delays)
                session.mark_stale()
                self.app.logger.warning(
                    f"[snapshot-failed] topic={topic} attempt={tried} retry_in={delay}ms error={exc}"
                )
                if attempts is not None and tried >= attempts:
                    return False
                socketio.sleep(delay / 1000)
                continue
            if self._resync_gen.get(topic) != gen:
                # a newer resync owns the topic now
                return False
            session.apply_snapshot(record)
            self.app.logger.info(f"[resync-done] topic={topic} round={record.round_id} attempts={tried}")
            return True

    def resync_all(self) -> None:
        with self._lock:
            sessions = list(self.sessions.values())
        for session in sessions:
            self._activate(session)

    def _on_channel_lost(self) -> None:
        with self._lock:
            sessions = list(self.sessions.values())
        for session in sessions:
            session.mark_stale()

    def _connect_loop(self) -> None:
        cfg = self.app.config
        delays = backoff_delays(cfg.get('SNAPSHOT_RETRY_BASE_MS', 500), cfg.get('SNAPSHOT_RETRY_MAX_MS', 10000))
        while self.app is not None and not self.channel.connected:
            try:
                self.channel.connect()
            except ChannelDisconnect as exc:
                delay = next(delays)
                self.app.logger.warning(f"[channel-connect-failed] retry_in={delay}ms error={exc}")
                socketio.sleep(delay / 1000)

    # ---- view fan-out ----

    def _publish(self, topic: str) -> None:
        session = self.sessions.get(topic)
        if session is None:
            return
        socketio.emit('round_state', session.view(), to=topic_room(topic), namespace='/ws')

    def tick_all(self, now: Optional[int] = None) -> List[str]:
        moved = []
        for topic, session in list(self.sessions.items()):
            if session.tick(now):
                moved.append(topic)
                socketio.emit('round_tick', session.tick_payload(), to=topic_room(topic), namespace='/ws')
        return moved

    def start_ticking(self) -> None:
        if self._ticking:
            return
        self._ticking = True
        interval = self.app.config.get('TICK_INTERVAL_MS', 100) / 1000

        def _loop():
            while self._ticking:
                self.tick_all()
                socketio.sleep(interval)

        socketio.start_background_task(_loop)
        self.app.logger.info(f"[tick-loop-started] interval={interval}s")

    def diagnostics(self):
        return {
            'connected': bool(self.channel and self.channel.connected),
            'topics': {topic: self.refs(topic) for topic in self.sessions},
        }

    def shutdown(self) -> None:
        self._ticking = False
        for topic in list(self.sessions):
            with self._lock:
                if topic not in self.sessions:
                    continue
                session, released = self._detach(topic)
            self._teardown(session, released)
        if self.channel is not None:
            self.channel.disconnect()
        self.app = None


hub = RoundHub()
