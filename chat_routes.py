"""
HTTP surface for direct chats, group channels and broadcast channels.

The three kinds share one set of view functions; each URL rule carries the
kind in its defaults and the gateway applies that kind's policy.
"""

import logging
import os

from flask import current_app, g, jsonify, request, send_from_directory
from werkzeug.utils import secure_filename

from chat_errors import InvalidInput, NotFound
from chat_services import current_services, request_data
from conversations import KINDS
from session_gate import login_required
from uploads import remove_upload, save_upload

logger = logging.getLogger(__name__)

URL_PREFIXES = {
    "chat": "/chats",
    "nexphere": "/nexphere",
    "nexus": "/nexus",
}


def _gateway():
    return current_services().gateway


# ---------------------------------------------------------------- shared by every kind

@login_required
def list_conversations(kind):
    return jsonify({"ok": True, "conversations": _gateway().list_conversations(g.user_id, kind)})


@login_required
def get_conversation(kind, cid):
    return jsonify({"ok": True, "conversation": _gateway().get_conversation(cid, g.user_id, kind)})


@login_required
def delete_conversation(kind, cid):
    result = _gateway().delete_conversation(cid, g.user_id, kind)
    for name in result["attachments"]:
        remove_upload(current_app.config["UPLOAD_FOLDER"], name)
    return jsonify({"ok": True, "conversationId": result["conversationId"]})


@login_required
def list_messages(kind, cid):
    messages = _gateway().list_messages(
        cid, g.user_id,
        limit=request.args.get("limit"),
        offset=request.args.get("offset"),
        before_id=request.args.get("beforeId"),
        kind=kind,
    )
    return jsonify({"ok": True, "messages": messages})


@login_required
def send_message(kind, cid):
    data = request_data()
    message = _gateway().send_message(
        cid, g.user_id,
        text=data.get("text"),
        sticker=data.get("sticker"),
        reply_to_id=data.get("replyToId"),
        kind=kind,
    )
    return jsonify({"ok": True, "message": message}), 201


@login_required
def edit_message(kind, cid, mid):
    data = request_data()
    message = _gateway().edit_message(cid, mid, g.user_id, data.get("text"), kind)
    return jsonify({"ok": True, "message": message})


@login_required
def delete_message(kind, cid, mid):
    result = _gateway().delete_message(cid, mid, g.user_id, kind)
    if result["attachment"]:
        remove_upload(current_app.config["UPLOAD_FOLDER"], result["attachment"])
    return jsonify({"ok": True, "messageId": result["messageId"]})


@login_required
def upload_attachment(kind, cid):
    gateway = _gateway()
    # membership is checked before anything touches the disk
    gateway.require_member(cid, g.user_id, kind)
    cfg = current_app.config
    attachment = save_upload(
        request.files.get("file"),
        cfg["UPLOAD_FOLDER"],
        allowed_exts=set(cfg["ALLOWED_UPLOAD_EXTS"]),
        max_bytes=cfg["MAX_CONTENT_LENGTH"],
    )
    try:
        message = gateway.send_message(
            cid, g.user_id,
            text=request.form.get("text"),
            attachment=attachment,
            reply_to_id=request.form.get("replyToId"),
            kind=kind,
        )
    except Exception:
        remove_upload(cfg["UPLOAD_FOLDER"], attachment["path"])
        raise
    return jsonify({"ok": True, "message": message}), 201


@login_required
def toggle_reaction(kind, cid, mid):
    data = request_data()
    result = _gateway().toggle_reaction(cid, mid, g.user_id, data.get("emoji"), kind)
    return jsonify({"ok": True, **result})


# ---------------------------------------------------------------- direct chats

@login_required
def chats_new():
    data = request_data()
    conv, created = _gateway().get_or_create_direct_by_username(g.user_id, data.get("username"))
    return jsonify({"ok": True, "conversation": conv, "created": created}), 201 if created else 200


@login_required
def chats_get_or_create():
    data = request_data()
    if data.get("userId") in (None, ""):
        raise InvalidInput("userId required")
    conv, created = _gateway().get_or_create_direct(g.user_id, data.get("userId"))
    return jsonify({"ok": True, "conversation": conv, "created": created}), 201 if created else 200


# ---------------------------------------------------------------- channels

@login_required
def create_channel(kind):
    data = request_data()
    conv = _gateway().create_channel(
        kind, data.get("title"), data.get("handle"), g.user_id, data.get("description")
    )
    return jsonify({"ok": True, "conversation": conv}), 201


@login_required
def find_channel(kind, handle):
    return jsonify({"ok": True, "channel": _gateway().find_channel(kind, handle)})


@login_required
def update_channel(kind, cid):
    data = request_data()
    conv = _gateway().update_channel(
        cid, g.user_id,
        title=data.get("title"),
        description=data.get("description"),
        handle=data.get("handle"),
        kind=kind,
    )
    return jsonify({"ok": True, "conversation": conv})


@login_required
def join_channel(kind, cid):
    return jsonify({"ok": True, "conversation": _gateway().join(cid, g.user_id, kind)})


@login_required
def leave_channel(kind, cid):
    _gateway().leave(cid, g.user_id, kind)
    return jsonify({"ok": True})


@login_required
def list_members(kind, cid):
    return jsonify({"ok": True, "members": _gateway().list_members(cid, g.user_id, kind)})


@login_required
def add_member(kind, cid):
    data = request_data()
    if data.get("userId") in (None, ""):
        raise InvalidInput("userId required")
    member = _gateway().add_member(cid, g.user_id, data.get("userId"), kind)
    return jsonify({"ok": True, "member": member}), 201


@login_required
def remove_member(kind, cid, uid):
    _gateway().remove_member(cid, g.user_id, uid, kind)
    return jsonify({"ok": True})


@login_required
def set_member_role(kind, cid, uid):
    data = request_data()
    result = _gateway().set_role(cid, g.user_id, uid, data.get("role"), kind)
    return jsonify({"ok": True, **result})


@login_required
def list_pins(kind, cid):
    return jsonify({"ok": True, "messages": _gateway().list_pins(cid, g.user_id, kind)})


@login_required
def toggle_pin(kind, cid, mid):
    return jsonify({"ok": True, **_gateway().toggle_pin(cid, mid, g.user_id, kind)})


@login_required
def create_invite(kind, cid):
    return jsonify({"ok": True, **_gateway().create_invite(cid, g.user_id, kind)}), 201


@login_required
def join_by_invite(code):
    return jsonify({"ok": True, "conversation": _gateway().join_by_invite(code, g.user_id)})


# ---------------------------------------------------------------- blocks

@login_required
def api_block_user(user_id):
    return jsonify({"ok": True, **current_services().blocks.block(g.user_id, user_id)})


@login_required
def api_unblock_user(user_id):
    return jsonify({"ok": True, **current_services().blocks.unblock(g.user_id, user_id)})


@login_required
def api_block_status(user_id):
    return jsonify({"ok": True, **current_services().blocks.status(g.user_id, user_id)})


@login_required
def api_blocked_users():
    return jsonify({"ok": True, "users": current_services().blocks.list_blocked(g.user_id)})


# ---------------------------------------------------------------- uploads

@login_required
def serve_upload(filename):
    name = secure_filename(filename)
    if not name or name != filename:
        raise NotFound("File not found")
    folder = current_app.config["UPLOAD_FOLDER"]
    if not _gateway().attachment_visible_to(name, g.user_id):
        raise NotFound("File not found")
    if not os.path.isfile(os.path.join(folder, name)):
        raise NotFound("File not found")
    return send_from_directory(os.path.abspath(folder), name)


def register_chat_routes(a):
    for kind, prefix in URL_PREFIXES.items():
        spec = KINDS[kind]
        d = {"kind": kind}
        ep = kind
        a.add_url_rule(f"{prefix}/list", f"{ep}_list", list_conversations, defaults=d, methods=["GET"])
        a.add_url_rule(f"{prefix}/<cid>", f"{ep}_get", get_conversation, defaults=d, methods=["GET"])
        a.add_url_rule(f"{prefix}/<cid>", f"{ep}_delete", delete_conversation, defaults=d, methods=["DELETE"])
        a.add_url_rule(f"{prefix}/<cid>/messages", f"{ep}_messages", list_messages, defaults=d, methods=["GET"])
        a.add_url_rule(f"{prefix}/<cid>/messages", f"{ep}_send", send_message, defaults=d, methods=["POST"])
        a.add_url_rule(f"{prefix}/<cid>/messages/<mid>", f"{ep}_edit", edit_message, defaults=d, methods=["PATCH"])
        a.add_url_rule(f"{prefix}/<cid>/messages/<mid>", f"{ep}_delete_message", delete_message, defaults=d, methods=["DELETE"])
        a.add_url_rule(f"{prefix}/<cid>/messages/<mid>/reactions", f"{ep}_react", toggle_reaction, defaults=d, methods=["POST"])
        a.add_url_rule(f"{prefix}/<cid>/upload", f"{ep}_upload", upload_attachment, defaults=d, methods=["POST"])
        if not spec.is_channel:
            continue
        a.add_url_rule(f"{prefix}/create", f"{ep}_create", create_channel, defaults=d, methods=["POST"])
        a.add_url_rule(f"{prefix}/by-handle/<handle>", f"{ep}_by_handle", find_channel, defaults=d, methods=["GET"])
        a.add_url_rule(f"{prefix}/<cid>", f"{ep}_update", update_channel, defaults=d, methods=["PATCH"])
        a.add_url_rule(f"{prefix}/<cid>/join", f"{ep}_join", join_channel, defaults=d, methods=["POST"])
        a.add_url_rule(f"{prefix}/<cid>/leave", f"{ep}_leave", leave_channel, defaults=d, methods=["POST"])
        a.add_url_rule(f"{prefix}/<cid>/members", f"{ep}_members", list_members, defaults=d, methods=["GET"])
        a.add_url_rule(f"{prefix}/<cid>/members", f"{ep}_add_member", add_member, defaults=d, methods=["POST"])
        a.add_url_rule(f"{prefix}/<cid>/members/<uid>", f"{ep}_remove_member", remove_member, defaults=d, methods=["DELETE"])
        a.add_url_rule(f"{prefix}/<cid>/members/<uid>/role", f"{ep}_set_role", set_member_role, defaults=d, methods=["PATCH"])
        a.add_url_rule(f"{prefix}/<cid>/pins", f"{ep}_pins", list_pins, defaults=d, methods=["GET"])
        a.add_url_rule(f"{prefix}/<cid>/messages/<mid>/pin", f"{ep}_pin", toggle_pin, defaults=d, methods=["POST"])
        if spec.invites:
            a.add_url_rule(f"{prefix}/<cid>/invites", f"{ep}_invite", create_invite, defaults=d, methods=["POST"])

    # broadcast channels are followed rather than joined
    a.add_url_rule("/nexus/<cid>/subscribe", "nexus_subscribe", join_channel, defaults={"kind": "nexus"}, methods=["POST"])
    a.add_url_rule("/nexus/<cid>/unsubscribe", "nexus_unsubscribe", leave_channel, defaults={"kind": "nexus"}, methods=["POST"])
    a.add_url_rule("/nexphere/join/<code>", "nexphere_join_invite", join_by_invite, methods=["POST"])

    a.add_url_rule("/chats/new", "chats_new", chats_new, methods=["POST"])
    a.add_url_rule("/chats/get-or-create", "chats_get_or_create", chats_get_or_create, methods=["POST"])

    a.add_url_rule("/api/block-user/<user_id>", "api_block_user", api_block_user, methods=["POST"])
    a.add_url_rule("/api/unblock-user/<user_id>", "api_unblock_user", api_unblock_user, methods=["POST"])
    a.add_url_rule("/api/block-status/<user_id>", "api_block_status", api_block_status, methods=["GET"])
    a.add_url_rule("/api/blocked-users", "api_blocked_users", api_blocked_users, methods=["GET"])

    a.add_url_rule("/uploads/<path:filename>", "serve_upload", serve_upload, methods=["GET"])
