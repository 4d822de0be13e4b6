import os
import sys
import pytest

# Ensure the backend root (containing the `roundmirror` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from roundmirror import create_app, socketio
from roundmirror.models import RoundRecord
from roundmirror.services.rounds.clock import ManualClock
from roundmirror.services.rounds.errors import ActionRejected, SnapshotFetchFailure

T0 = 1_700_000_000_000


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    BACKEND_URL = 'http://backend.test'
    BACKEND_TOKEN = None
    SNAPSHOT_TIMEOUT_SEC = 1
    SNAPSHOT_RETRY_BASE_MS = 500
    SNAPSHOT_RETRY_MAX_MS = 10000
    TICK_INTERVAL_MS = 100
    DIGIT_TICK_INTERVAL_MS = 1000
    PRICE_INTERPOLATION_MS = 150
    REDUCED_MOTION = False
    ACTION_TIMEOUT_MS = 10000
    ACTION_ERROR_DISPLAY_MS = 5000
    STALE_AFTER_MS = 15000
    RESYNC_QUEUE_MAX = 1000
    AUTO_SUBSCRIBE_TOPICS = []


class FakeChannel:
    """In-memory stand-in for PushChannel."""

    def __init__(self):
        self.connected = True
        self.sent = []
        self.subscriptions = []
        self._listeners = {}
        self._connect_listeners = []
        self._disconnect_listeners = []

    def on(self, name, listener):
        self._listeners.setdefault(name, []).append(listener)

        def _off():
            if listener in self._listeners.get(name, []):
                self._listeners[name].remove(listener)
        return _off

    def on_connect(self, listener):
        self._connect_listeners.append(listener)

    def on_disconnect(self, listener):
        self._disconnect_listeners.append(listener)

    def emit(self, name, data=None):
        if not self.connected:
            raise ActionRejected('channel disconnected')
        self.sent.append((name, data))

    def subscribe(self, event, args):
        self.subscriptions.append((event, list(args)))
        return self.connected

    def disconnect(self):
        self.connected = False

    # test helpers
    def push(self, name, data):
        for listener in list(self._listeners.get(name, [])):
            listener(name, data)

    def listener_count(self, name):
        return len(self._listeners.get(name, []))

    def drop(self):
        self.connected = False
        for listener in list(self._disconnect_listeners):
            listener()

    def restore(self):
        self.connected = True
        for listener in list(self._connect_listeners):
            listener()


class FakeSnapshots:
    """Snapshot source keyed by topic; a missing topic fails like a dead backend."""

    def __init__(self):
        self.records = {}
        self.calls = []

    def put(self, topic, payload):
        self.records[topic] = RoundRecord.from_payload(payload)

    def fail(self, topic):
        self.records.pop(topic, None)

    def fetch(self, mode, key):
        topic = mode.name if key is None else f"{mode.name}:{key}"
        self.calls.append(topic)
        record = self.records.get(topic)
        if record is None:
            raise SnapshotFetchFailure(f"no snapshot for {topic}")
        return record


@pytest.fixture()
def clock():
    return ManualClock(T0)


@pytest.fixture()
def fake_channel():
    return FakeChannel()


@pytest.fixture()
def fake_snapshots():
    return FakeSnapshots()


@pytest.fixture()
def flask_app(fake_channel, fake_snapshots, clock):
    application = create_app(TestConfig, channel=fake_channel, snapshots=fake_snapshots, clock=clock)
    with application.app_context():
        yield application
    from roundmirror.services.rounds.hub import hub
    hub.shutdown()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass
