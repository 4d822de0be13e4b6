import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError, SocketIOError

from roundmirror.services.rounds.errors import ActionRejected, ChannelDisconnect

log = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]


class PushChannel:
    """Socket.IO connection to the backend that owns the rounds.

    Raw messages are fanned out to listeners by event name. The channel keeps
    no round state: after any reconnect the connect listeners are told, and
    they are expected to resubscribe and resync every topic.
    """

    def __init__(self, url: str, token: Optional[str] = None, reconnection_attempts: int = 5,
                 reconnection_delay: float = 1, client: Optional[socketio.Client] = None):
        self.url = url
        self.token = token
        self.client = client or socketio.Client(
            reconnection=True,
            reconnection_attempts=reconnection_attempts,
            reconnection_delay=reconnection_delay,
        )
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._connect_listeners: List[Callable[[], None]] = []
        self._disconnect_listeners: List[Callable[[], None]] = []
        self._lock = threading.Lock()
        self.connects = 0

        self.client.on('connect', self._on_connect)
        self.client.on('disconnect', self._on_disconnect)
        self.client.on('*', self._dispatch)

    @property
    def connected(self) -> bool:
        return bool(self.client.connected)

    def connect(self) -> None:
        auth = {'token': self.token} if self.token else None
        try:
            self.client.connect(self.url, auth=auth)
        except SocketIOConnectionError as exc:
            raise ChannelDisconnect(f"could not reach {self.url}: {exc}") from exc

    def disconnect(self) -> None:
        if self.client.connected:
            self.client.disconnect()

    # ---- listeners ----

    def on(self, name: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners[name].append(listener)

        def _off():
            with self._lock:
                if listener in self._listeners.get(name, []):
                    self._listeners[name].remove(listener)
        return _off

    def on_connect(self, listener: Callable[[], None]) -> None:
        self._connect_listeners.append(listener)

    def on_disconnect(self, listener: Callable[[], None]) -> None:
        self._disconnect_listeners.append(listener)

    def _on_connect(self):
        self.connects += 1
        log.info(f"[channel-connected] url={self.url} count={self.connects}")
        for listener in list(self._connect_listeners):
            listener()

    def _on_disconnect(self, *args):
        log.warning(f"[channel-disconnected] url={self.url} reason={args[0] if args else None}")
        for listener in list(self._disconnect_listeners):
            listener()

    def _dispatch(self, name, *args):
        data = args[0] if args else None
        with self._lock:
            listeners = list(self._listeners.get(name, []))
        for listener in listeners:
            listener(name, data)

    # ---- outbound ----

    def emit(self, name: str, data: Optional[Dict[str, Any]] = None) -> None:
        if not self.client.connected:
            raise ActionRejected('channel disconnected')
        try:
            self.client.emit(name, data)
        except SocketIOError as exc:
            raise ActionRejected(f"channel error: {exc}") from exc

    def subscribe(self, event: str, args: List[Any]) -> bool:
        """Send a subscribe/unsubscribe call. Skipped while disconnected."""
        if not self.client.connected:
            log.info(f"[channel-subscribe-deferred] event={event} args={args}")
            return False
        try:
            self.client.emit(event, tuple(args) if args else None)
        except SocketIOError as exc:
            log.warning(f"[channel-subscribe-failed] event={event} error={exc}")
            return False
        return True
