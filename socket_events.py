"""
Socket.IO event handlers.

A socket is accepted only when the handshake carries a live session cookie.
Every handler re-resolves the session as well. Logging out closes the
sockets opened under that session, and deleting an account closes all of the
user's sockets. Message writes are refused while maintenance mode is on.
Failures never escape a handler: they go back to the sender as an `error`
event and as the acknowledgement.
"""

import logging

from flask import current_app, request, session

from chat_db import get_db, transaction, utcnow
from chat_errors import ChatError, InvalidInput, Unauthenticated
from chat_services import require_writable
from conversations import KINDS, parse_id
from presence import ACTIVITY_EVENTS, BACK_ONLINE_EVENT
from session_gate import current_user_id, session_key
from uploads import remove_upload

logger = logging.getLogger(__name__)

# client event -> activity kind
ACTIVITY_BY_EVENT = {event: kind for kind, event in ACTIVITY_EVENTS.items()}
HISTORY_EVENT = "chat-history"


def _payload(data) -> dict:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidInput("event payload must be an object")
    return data


def register_socket_events(socketio, app):
    svc = app.extensions["novachat"]

    @socketio.on("connect")
    def on_connect(auth=None):
        try:
            user_id = current_user_id()
        except Unauthenticated:
            logger.info("Rejected socket %s without a valid session", request.sid)
            return False
        svc.broadcaster.join_user_room(request.sid, user_id)
        svc.broadcaster.join_session_room(request.sid, session_key(session["token"]))
        logger.debug("Socket %s connected for user %s", request.sid, user_id)

    @socketio.on("disconnect")
    def on_disconnect(reason=None):
        gone = svc.presence.disconnect(request.sid)
        if gone is None:
            return
        user_id, seen = gone
        with transaction(get_db()) as cur:
            cur.execute("UPDATE users SET last_seen=? WHERE id=?", (seen.isoformat(), user_id))
        svc.broadcast_stats()

    @socketio.on("user-online")
    def on_user_online(data=None):
        user_id = current_user_id()
        announced = svc.presence.announce(user_id, request.sid)
        if announced:
            with transaction(get_db()) as cur:
                cur.execute("UPDATE users SET last_seen=? WHERE id=?", (utcnow(), user_id))
            svc.broadcast_stats()
        return {
            "ok": True,
            "tracked": svc.presence.connection_for(user_id) == request.sid,
            "online": svc.presence.online_user_ids(),
        }

    @socketio.on("join-chat")
    def on_join_chat(data=None):
        data = _payload(data)
        user_id = current_user_id()
        conv = svc.gateway.get_conversation(data.get("conversationId"), user_id)
        svc.broadcaster.join_room(request.sid, conv["id"])
        history = svc.gateway.list_messages(conv["id"], user_id, limit=data.get("limit"))
        svc.broadcaster.send_to(request.sid, HISTORY_EVENT, {
            "conversationId": conv["id"],
            "messages": history,
        })
        return {"ok": True, "conversation": conv}

    @socketio.on("leave-chat")
    def on_leave_chat(data=None):
        data = _payload(data)
        current_user_id()
        conv_id = parse_id(data.get("conversationId"), "conversation id")
        svc.broadcaster.leave_room(request.sid, conv_id)
        return {"ok": True}

    def _activity_handler(kind):
        def handler(data=None):
            data = _payload(data)
            user_id = current_user_id()
            conv_id = None
            if data.get("conversationId") not in (None, ""):
                conv_id = svc.gateway.require_member(data["conversationId"], user_id)["id"]
            tracked = svc.presence.mark_activity(user_id, kind, conv_id)
            return {"ok": True, "tracked": tracked}
        handler.__name__ = f"on_{kind.replace('-', '_')}"
        return handler

    for event, kind in ACTIVITY_BY_EVENT.items():
        socketio.on_event(event, _activity_handler(kind))

    @socketio.on(BACK_ONLINE_EVENT)
    def on_back_online(data=None):
        user_id = current_user_id()
        return {"ok": True, "changed": svc.presence.back_online(user_id)}

    def _message_handlers(kind):
        def new_message(data=None):
            data = _payload(data)
            require_writable()
            message = svc.gateway.send_message(
                data.get("conversationId"), current_user_id(),
                text=data.get("text"),
                sticker=data.get("sticker"),
                reply_to_id=data.get("replyToId"),
                kind=kind,
            )
            return {"ok": True, "message": message}

        def edit_message(data=None):
            data = _payload(data)
            require_writable()
            message = svc.gateway.edit_message(
                data.get("conversationId"), data.get("messageId"), current_user_id(),
                data.get("text"), kind,
            )
            return {"ok": True, "message": message}

        def delete_message(data=None):
            data = _payload(data)
            require_writable()
            result = svc.gateway.delete_message(
                data.get("conversationId"), data.get("messageId"), current_user_id(), kind
            )
            if result["attachment"]:
                remove_upload(current_app.config["UPLOAD_FOLDER"], result["attachment"])
            return {"ok": True, "messageId": result["messageId"]}

        return {
            "new-message": new_message,
            "edit-message": edit_message,
            "delete-message": delete_message,
        }

    for kind, spec in KINDS.items():
        for name, handler in _message_handlers(kind).items():
            socketio.on_event(spec.event(name), handler)

    @socketio.on("get-stats")
    def on_get_stats(data=None):
        current_user_id()
        return {"ok": True, **svc.gateway.stats()}

    @socketio.on_error_default
    def on_socket_error(e):
        event = getattr(request, "event", None) or {}
        name = event.get("message")
        if isinstance(e, ChatError):
            status, message = e.status, e.message
            logger.info("Socket event %s failed: %s", name, message)
        else:
            status, message = 500, "Internal server error"
            logger.exception("Unhandled error in socket event %s", name)
        svc.broadcaster.send_to(request.sid, "error", {"event": name, "error": message, "status": status})
        return {"ok": False, "error": message, "status": status}
