from flask_socketio import join_room, leave_room, emit
from bingo.services.game.broadcast import room_topic


def _room_id(data):
    try:
        return int((data or {}).get('room_id'))
    except (TypeError, ValueError):
        return None


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_join_room(data):
    """Subscribe this socket to a bingo room's event topic."""
    room_id = _room_id(data)
    if room_id is None:
        emit('error', {'message': 'room_id is required'})
        return
    topic = room_topic(room_id)
    join_room(topic)
    emit('joined', {'room': topic})


def handle_leave_room(data):
    room_id = _room_id(data)
    if room_id is None:
        emit('error', {'message': 'room_id is required'})
        return
    topic = room_topic(room_id)
    leave_room(topic)
    emit('left', {'room': topic})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    from bingo import socketio

    namespaces = ['/ws', '/'] if testing else ['/ws']
    for namespace in namespaces:
        socketio.on_event('connect', handle_connect, namespace=namespace)
        socketio.on_event('join_room', handle_join_room, namespace=namespace)
        socketio.on_event('leave_room', handle_leave_room, namespace=namespace)
        socketio.on_event('ping', handle_ping, namespace=namespace)
