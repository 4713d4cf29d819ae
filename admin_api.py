"""
Admin namespace (/admin/*).

Guarded by a shared secret, sent either as the X-Admin-Secret header or once
through POST /admin/login, which marks the browser session. The namespace is
closed entirely while ADMIN_SECRET is empty. Deletions go through the same
gateway paths as owner deletions, so members see the same realtime events.
"""

import hmac
import logging
from functools import wraps

from flask import current_app, jsonify, request, session

from chat_db import DEFAULT_SETTINGS, all_settings, get_db, set_setting
from chat_errors import Forbidden, InvalidInput, NotFound, Unauthenticated
from chat_services import current_services, request_data
from conversations import parse_id
from uploads import remove_upload

logger = logging.getLogger(__name__)

ADMIN_PAGE_MAX = 500
SESSION_FLAG = "is_admin"


def _secret_matches(candidate) -> bool:
    secret = current_app.config.get("ADMIN_SECRET") or ""
    if not secret or not candidate:
        return False
    return hmac.compare_digest(str(candidate).encode("utf-8"), secret.encode("utf-8"))


def admin_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not current_app.config.get("ADMIN_SECRET"):
            raise Forbidden("Admin interface disabled")
        if session.get(SESSION_FLAG) or _secret_matches(request.headers.get("X-Admin-Secret")):
            return f(*args, **kwargs)
        raise Unauthenticated("admin authentication required")
    return decorated


def _page_args():
    try:
        limit = int(request.args.get("limit") or 100)
        offset = int(request.args.get("offset") or 0)
    except ValueError:
        raise InvalidInput("invalid paging parameters") from None
    return max(1, min(limit, ADMIN_PAGE_MAX)), max(0, offset)


def admin_login():
    if not current_app.config.get("ADMIN_SECRET"):
        raise Forbidden("Admin interface disabled")
    data = request_data()
    if not _secret_matches(data.get("secret")):
        logger.warning("Rejected admin login from %s", request.remote_addr)
        raise Unauthenticated("invalid admin secret")
    session[SESSION_FLAG] = True
    logger.warning("Admin session opened from %s", request.remote_addr)
    return jsonify({"ok": True})


def admin_logout():
    session.pop(SESSION_FLAG, None)
    return jsonify({"ok": True})


@admin_required
def admin_stats():
    svc = current_services()
    stats = svc.gateway.stats()
    stats["onlineUserIds"] = svc.presence.online_user_ids()
    return jsonify({"ok": True, "stats": stats})


@admin_required
def admin_users():
    limit, offset = _page_args()
    q = (request.args.get("q") or "").strip()
    sql = "SELECT id, username, display_name, avatar, last_seen, created_at FROM users"
    params = []
    if q:
        sql += " WHERE username LIKE ?"
        params.append(f"%{q}%")
    sql += " ORDER BY id LIMIT ? OFFSET ?"
    rows = get_db().execute(sql, params + [limit, offset]).fetchall()
    gateway = current_services().gateway
    users = []
    for r in rows:
        u = gateway.user_public(r)
        u["createdAt"] = r["created_at"]
        users.append(u)
    return jsonify({"ok": True, "users": users})


@admin_required
def admin_delete_user(user_id):
    uid = parse_id(user_id, "user id")
    exists = get_db().execute("SELECT 1 FROM users WHERE id=?", (uid,)).fetchone()
    if not exists:
        raise NotFound("User not found")
    current_services().delete_user(uid, current_app.config["UPLOAD_FOLDER"])
    logger.warning("Admin deleted user id=%s", uid)
    return jsonify({"ok": True, "userId": uid})


@admin_required
def admin_conversations():
    limit, offset = _page_args()
    kind = request.args.get("kind")
    sql = """
        SELECT c.id, c.kind, c.title, c.handle, c.owner_id, c.created_at,
               (SELECT COUNT(*) FROM memberships m WHERE m.conversation_id = c.id) AS member_count,
               (SELECT COUNT(*) FROM messages x WHERE x.conversation_id = c.id) AS message_count
        FROM conversations c
    """
    params = []
    if kind:
        sql += " WHERE c.kind = ?"
        params.append(kind)
    sql += " ORDER BY c.id LIMIT ? OFFSET ?"
    rows = get_db().execute(sql, params + [limit, offset]).fetchall()
    return jsonify({"ok": True, "conversations": [
        {
            "id": r["id"],
            "kind": r["kind"],
            "title": r["title"],
            "handle": r["handle"],
            "ownerId": r["owner_id"],
            "memberCount": r["member_count"],
            "messageCount": r["message_count"],
            "createdAt": r["created_at"],
        }
        for r in rows
    ]})


@admin_required
def admin_delete_conversation(conversation_id):
    result = current_services().gateway.force_delete_conversation(conversation_id)
    for name in result["attachments"]:
        remove_upload(current_app.config["UPLOAD_FOLDER"], name)
    logger.warning("Admin deleted conversation id=%s", result["conversationId"])
    return jsonify({"ok": True, "conversationId": result["conversationId"]})


@admin_required
def admin_delete_message(message_id):
    result = current_services().gateway.force_delete_message(message_id)
    if result["attachment"]:
        remove_upload(current_app.config["UPLOAD_FOLDER"], result["attachment"])
    logger.warning("Admin deleted message id=%s in conversation %s",
                   result["messageId"], result["conversationId"])
    return jsonify({"ok": True, "messageId": result["messageId"]})


@admin_required
def admin_settings():
    db = get_db()
    if request.method == "POST":
        data = request_data()
        unknown = [k for k in data if k not in DEFAULT_SETTINGS]
        if unknown:
            raise InvalidInput(f"unknown setting {unknown[0]!r}")
        for key, value in data.items():
            set_setting(db, key, "1" if str(value).lower() in ("1", "true", "yes", "on") else "0")
            logger.warning("Admin set %s=%s", key, value)
    return jsonify({"ok": True, "settings": all_settings(db)})


def register_admin_routes(a):
    a.add_url_rule("/admin/login", "admin_login", admin_login, methods=["POST"])
    a.add_url_rule("/admin/logout", "admin_logout", admin_logout, methods=["POST"])
    a.add_url_rule("/admin/stats", "admin_stats", admin_stats, methods=["GET"])
    a.add_url_rule("/admin/users", "admin_users", admin_users, methods=["GET"])
    a.add_url_rule("/admin/users/<user_id>", "admin_delete_user", admin_delete_user, methods=["DELETE"])
    a.add_url_rule("/admin/conversations", "admin_conversations", admin_conversations, methods=["GET"])
    a.add_url_rule("/admin/conversations/<conversation_id>", "admin_delete_conversation",
                   admin_delete_conversation, methods=["DELETE"])
    a.add_url_rule("/admin/messages/<message_id>", "admin_delete_message", admin_delete_message,
                   methods=["DELETE"])
    a.add_url_rule("/admin/settings", "admin_settings", admin_settings, methods=["GET", "POST"])
