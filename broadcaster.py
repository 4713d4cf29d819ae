"""
Room based fan-out on top of Flask-SocketIO.

Every conversation maps to exactly one room and every user has a personal
room for list-level signals. Each socket also sits in a room named after its
login session so a logout can close exactly that session's sockets. Events are pushed in the order they are issued;
nothing is queued or replayed for clients that are offline at emit time.
"""

import logging

logger = logging.getLogger(__name__)


def room_for_conversation(conversation_id: int) -> str:
    return f"conversation:{int(conversation_id)}"


def room_for_user(user_id: int) -> str:
    return f"user:{int(user_id)}"


def room_for_session(session_key: str) -> str:
    return f"session:{session_key}"


class RealtimeBroadcaster:
    def __init__(self, socketio, namespace: str = "/"):
        self.socketio = socketio
        self.namespace = namespace

    def join_room(self, connection_id: str, conversation_id: int):
        self.socketio.server.enter_room(
            connection_id, room_for_conversation(conversation_id), namespace=self.namespace
        )

    def leave_room(self, connection_id: str, conversation_id: int):
        self.socketio.server.leave_room(
            connection_id, room_for_conversation(conversation_id), namespace=self.namespace
        )

    def join_user_room(self, connection_id: str, user_id: int):
        self.socketio.server.enter_room(
            connection_id, room_for_user(user_id), namespace=self.namespace
        )

    def join_session_room(self, connection_id: str, session_key: str):
        self.socketio.server.enter_room(
            connection_id, room_for_session(session_key), namespace=self.namespace
        )

    def _participants(self, room: str) -> list:
        return [sid for sid, _ in self.socketio.server.manager.get_participants(self.namespace, room)]

    def evict_user(self, user_id: int, conversation_id: int):
        """Take every socket of a user out of a conversation room."""
        room = room_for_conversation(conversation_id)
        for sid in self._participants(room_for_user(user_id)):
            self.socketio.server.leave_room(sid, room, namespace=self.namespace)

    def close_conversation(self, conversation_id: int):
        self.socketio.close_room(room_for_conversation(conversation_id), namespace=self.namespace)

    def _disconnect_room(self, room: str) -> int:
        sids = self._participants(room)
        for sid in sids:
            self.socketio.server.disconnect(sid, namespace=self.namespace)
        return len(sids)

    def disconnect_user(self, user_id: int) -> int:
        return self._disconnect_room(room_for_user(user_id))

    def disconnect_session(self, session_key: str) -> int:
        return self._disconnect_room(room_for_session(session_key))

    def broadcast(self, conversation_id: int, event: str, payload, skip: str = None):
        self.socketio.emit(
            event, payload, to=room_for_conversation(conversation_id),
            skip_sid=skip, namespace=self.namespace,
        )

    def broadcast_global(self, event: str, payload):
        self.socketio.emit(event, payload, namespace=self.namespace)

    def notify_users(self, user_ids, event: str, payload):
        for uid in set(user_ids):
            self.socketio.emit(event, payload, to=room_for_user(uid), namespace=self.namespace)

    def send_to(self, connection_id: str, event: str, payload):
        self.socketio.emit(event, payload, to=connection_id, namespace=self.namespace)
