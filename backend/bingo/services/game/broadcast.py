"""Best-effort room event publishing over Socket.IO.

Clients re-fetch authoritative state on every event, so payloads are hints
and a failed publish never undoes the mutation that triggered it.
"""

from flask import current_app

from bingo import socketio

NAMESPACE = '/ws'


def room_topic(room_id) -> str:
    return f"room:{room_id}"


def publish(room_id, event: str, payload: dict) -> bool:
    try:
        socketio.emit(event, payload, to=room_topic(room_id), namespace=NAMESPACE)
    except Exception:
        current_app.logger.exception(f"[broadcast-failed] room={room_id} event={event}")
        return False
    return True
