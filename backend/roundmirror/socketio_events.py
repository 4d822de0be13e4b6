from flask_socketio import join_room, leave_room, emit
from flask import current_app, request
from roundmirror import socketio
from roundmirror.services.rounds.errors import UnknownTopic
from roundmirror.services.rounds.hub import hub, topic_room
from typing import Dict, Set


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_disconnect(*args):
    # Release every topic this socket was holding
    holder = _holder()
    for topic in _sid_topics.pop(_get_sid(), set()):
        hub.unsubscribe(topic, holder=holder)


def handle_join_topic(data):
    topic = (data or {}).get('topic')
    wallet = (data or {}).get('wallet')
    if not topic:
        emit('error', {'message': 'topic is required'})
        return
    held = _sid_topics.setdefault(_get_sid(), set())
    try:
        session = hub.get(topic) if topic in held else None
        if session is None:
            session = hub.subscribe(topic, holder=_holder())
    except UnknownTopic as exc:
        emit('error', {'message': str(exc)})
        return
    held.add(topic)
    room = topic_room(topic)
    join_room(room)
    current_app.logger.info(f"[join-topic] sid={_get_sid()} topic={topic}")
    emit('joined', {'room': room})
    # Current view straight away; later changes arrive through the room
    emit('round_state', session.view(user=wallet))


def handle_leave_topic(data):
    topic = (data or {}).get('topic')
    if not topic:
        emit('error', {'message': 'topic is required'})
        return
    room = topic_room(topic)
    leave_room(room)
    emit('left', {'room': room})
    held = _sid_topics.get(_get_sid(), set())
    if topic in held:
        held.discard(topic)
        hub.unsubscribe(topic, holder=_holder())


def handle_ping(data):
    emit('pong', data or {})

# ---- Per-socket topic bookkeeping ----

_sid_topics: Dict[str, Set[str]] = {}

def _get_sid() -> str:
    # type: ignore: request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _holder() -> str:
    return f"sid:{_get_sid()}"


def register_socketio_handlers(testing: bool = False) -> None:
    """Wire the view-client surface onto '/ws'.

    Clients send join_topic {topic, wallet?} and leave_topic {topic}; each
    socket holds its own topic references, released on leave or disconnect.
    Views arrive as round_state and round_tick in room topic:<topic>. With
    testing=True the same handlers are mirrored on '/'.
    """
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('disconnect', handle_disconnect, namespace='/ws')
    socketio.on_event('join_topic', handle_join_topic, namespace='/ws')
    socketio.on_event('leave_topic', handle_leave_topic, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        # Test-only mirror on default namespace
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('disconnect', handle_disconnect, namespace='/')
        socketio.on_event('join_topic', handle_join_topic, namespace='/')
        socketio.on_event('leave_topic', handle_leave_topic, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')

