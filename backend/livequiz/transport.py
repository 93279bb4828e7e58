from typing import Any, Optional

NAMESPACE = '/ws'


class SocketIOEmitter:
    """Outbound side of the socket transport.

    Services address either a room name (``game-<pin>``) or a single
    connection id; Socket.IO treats both as rooms.
    """

    def __init__(self, socketio, namespace: str = NAMESPACE):
        self.socketio = socketio
        self.namespace = namespace

    def emit(self, event: str, payload: Any = None, to: Optional[str] = None) -> None:
        self.socketio.emit(event, payload, to=to, namespace=self.namespace)

    def enter_room(self, sid: str, room: str) -> None:
        self.socketio.server.enter_room(sid, room, namespace=self.namespace)

    def leave_room(self, sid: str, room: str) -> None:
        self.socketio.server.leave_room(sid, room, namespace=self.namespace)
