"""
Conversation gateway: membership store, message store and the access checks
that sit in front of them.

Direct chats, group channels ("nexphere") and broadcast channels ("nexus") are
one abstraction. They differ only in the policies recorded on their
ConversationKind: who may post, who may moderate, whether pins and invites
exist, and which event prefix their room uses.

Every read or write on a conversation starts with a membership check and
fails with Forbidden when the caller is not a member, whether or not the
conversation exists. Writes are committed before anything is broadcast.
"""

import logging
import re
import secrets
import sqlite3
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass

from chat_db import transaction, utcnow
from chat_errors import Conflict, Forbidden, InvalidInput, NotFound
from formatting import render_markdown, snippet

logger = logging.getLogger(__name__)

ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
MODERATOR_ROLES = {ROLE_OWNER, ROLE_ADMIN}

HANDLE_MIN = 5
HANDLE_MAX = 30
HANDLE_RE = re.compile(r"^[a-z0-9_-]+$")
STICKER_RE = re.compile(r"^[A-Za-z0-9_\-:.]{1,64}$")
TITLE_MAX = 64
DESCRIPTION_MAX = 500
EMOJI_MAX = 16
DELETED_AUTHOR = "Deleted account"


@dataclass(frozen=True)
class ConversationKind:
    name: str
    event_prefix: str
    member_role: str
    is_channel: bool
    members_post: bool
    invites: bool

    def event(self, name: str) -> str:
        return f"{self.event_prefix}:{name}"


KINDS = {
    "chat": ConversationKind("chat", "chat", "member", False, True, False),
    "nexphere": ConversationKind("nexphere", "nexphere", "member", True, True, True),
    "nexus": ConversationKind("nexus", "nexfery", "subscriber", True, False, False),
}
CHANNEL_KINDS = tuple(k for k, v in KINDS.items() if v.is_channel)


def channel_kind(kind: str) -> ConversationKind:
    spec = KINDS.get(kind)
    if spec is None or not spec.is_channel:
        raise InvalidInput(f"unknown channel kind {kind!r}")
    return spec


def normalize_handle(raw: str) -> str:
    handle = (raw or "").strip().lstrip("@").lower()
    if not (HANDLE_MIN <= len(handle) <= HANDLE_MAX):
        raise InvalidInput(f"Handle must be {HANDLE_MIN}-{HANDLE_MAX} characters")
    if not HANDLE_RE.match(handle) or not re.search(r"[a-z]", handle):
        raise InvalidInput(
            "Handle may use letters, digits, '_' and '-' and must contain a letter"
        )
    return handle


def parse_id(value, what: str = "id") -> int:
    try:
        ident = int(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"invalid {what}") from None
    if ident <= 0:
        raise InvalidInput(f"invalid {what}")
    return ident


MESSAGE_SELECT = """
    SELECT m.*,
           u.username AS author_username, u.display_name AS author_display_name,
           u.avatar AS author_avatar,
           r.text AS reply_text, r.sticker AS reply_sticker,
           r.attachment_name AS reply_attachment, ru.username AS reply_username,
           p.pinned_at AS pinned_at
    FROM messages m
    LEFT JOIN users u ON u.id = m.author_id
    LEFT JOIN messages r ON r.id = m.reply_to_id
    LEFT JOIN users ru ON ru.id = r.author_id
    LEFT JOIN pinned_messages p ON p.message_id = m.id
"""


def _author_name(row) -> str:
    if row["kind"] == "system":
        return "System"
    return row["author_username"] or DELETED_AUTHOR


def message_dict(row, reactions=None) -> dict:
    attachment = None
    if row["attachment_path"]:
        attachment = {
            "url": f"/uploads/{row['attachment_path']}",
            "name": row["attachment_name"],
            "mime": row["attachment_mime"],
            "size": row["attachment_size"],
        }
    reply = None
    if row["reply_to_id"]:
        reply = {
            "id": row["reply_to_id"],
            "author": row["reply_username"] or DELETED_AUTHOR,
            "snippet": snippet(row["reply_text"]) or row["reply_sticker"] or row["reply_attachment"],
        }
    return {
        "id": row["id"],
        "conversationId": row["conversation_id"],
        "kind": row["kind"],
        "authorId": row["author_id"],
        "author": _author_name(row),
        "authorName": row["author_display_name"] or _author_name(row),
        "authorAvatar": row["author_avatar"],
        "text": row["text"],
        "html": render_markdown(row["text"]) if row["text"] else None,
        "sticker": row["sticker"],
        "attachment": attachment,
        "replyToId": row["reply_to_id"],
        "replyTo": reply,
        "createdAt": row["created_at"],
        "editedAt": row["edited_at"],
        "edited": bool(row["edited_at"]),
        "pinned": bool(row["pinned_at"]),
        "reactions": reactions or [],
    }


class ConversationGateway:
    def __init__(self, get_db, broadcaster, presence=None, default_page: int = 50,
                 max_page: int = 200, max_chars: int = 4000):
        self._get_db = get_db
        self._broadcaster = broadcaster
        self._presence = presence
        self.default_page = default_page
        self.max_page = max_page
        self.max_chars = max_chars
        self._order_locks = defaultdict(threading.Lock)
        self._order_guard = threading.Lock()

    @contextmanager
    def _ordered(self, conversation_id: int):
        """Serialize commit+broadcast per conversation so events leave in commit order."""
        with self._order_guard:
            lock = self._order_locks[conversation_id]
        with lock:
            yield

    # ------------------------------------------------------------------ membership

    def is_member(self, conversation_id: int, user_id: int) -> bool:
        return self.member_role(conversation_id, user_id) is not None

    def member_role(self, conversation_id: int, user_id: int):
        row = self._get_db().execute(
            "SELECT role FROM memberships WHERE conversation_id=? AND user_id=?",
            (conversation_id, user_id),
        ).fetchone()
        return row["role"] if row else None

    def member_ids(self, conversation_id: int) -> list:
        rows = self._get_db().execute(
            "SELECT user_id FROM memberships WHERE conversation_id=?", (conversation_id,)
        ).fetchall()
        return [r["user_id"] for r in rows]

    def require_member(self, conversation_id, user_id: int, kind: str = None):
        """Return the conversation row (with my_role) or raise Forbidden.

        Missing conversations and conversations without membership rows are
        indistinguishable from ones the caller simply is not part of.
        """
        cid = parse_id(conversation_id, "conversation id")
        row = self._get_db().execute(
            """
            SELECT c.*, m.role AS my_role
            FROM conversations c
            JOIN memberships m ON m.conversation_id = c.id AND m.user_id = ?
            WHERE c.id = ?
            """,
            (user_id, cid),
        ).fetchone()
        if row is None:
            raise Forbidden("You are not a member of this conversation")
        if kind is not None and row["kind"] != kind:
            raise NotFound("Conversation not found")
        return row

    def _user_row(self, user_id):
        return self._get_db().execute(
            "SELECT id, username, display_name, avatar, bio, last_seen FROM users WHERE id=?",
            (user_id,),
        ).fetchone()

    def user_profile(self, user_id: int) -> dict:
        row = self._get_db().execute(
            "SELECT id, username, display_name, avatar, bio, last_seen, created_at FROM users WHERE id=?",
            (user_id,),
        ).fetchone()
        if row is None:
            raise NotFound("User not found")
        d = self.user_public(row)
        d["bio"] = row["bio"]
        d["createdAt"] = row["created_at"]
        return d

    def user_public(self, row) -> dict:
        status = self._presence.status(row["id"]) if self._presence else "offline"
        last_seen = None
        if self._presence and self._presence.last_seen(row["id"]):
            last_seen = self._presence.last_seen(row["id"]).isoformat()
        return {
            "id": row["id"],
            "username": row["username"],
            "displayName": row["display_name"] or row["username"],
            "avatar": row["avatar"],
            "status": status,
            "lastSeen": last_seen or row["last_seen"],
        }

    def _blocked_either(self, a: int, b: int) -> bool:
        row = self._get_db().execute(
            """
            SELECT 1 FROM blocks
            WHERE (blocker_id=? AND blocked_id=?) OR (blocker_id=? AND blocked_id=?)
            LIMIT 1
            """,
            (a, b, b, a),
        ).fetchone()
        return row is not None

    def _notify_members(self, conversation_id: int, reason: str, user_ids=None, **extra):
        ids = user_ids if user_ids is not None else self.member_ids(conversation_id)
        payload = {"conversationId": conversation_id, "reason": reason}
        payload.update(extra)
        self._broadcaster.notify_users(ids, "chats:updated", payload)

    # ------------------------------------------------------------------ conversations

    def direct_conversation_id(self, user_a: int, user_b: int):
        lo, hi = sorted((user_a, user_b))
        row = self._get_db().execute(
            "SELECT id FROM conversations WHERE pair_key=?", (f"{lo}:{hi}",)
        ).fetchone()
        return row["id"] if row else None

    def get_or_create_direct(self, user_a: int, user_b) -> tuple:
        """Return (conversation, created). At most one direct chat exists per user pair."""
        user_b = parse_id(user_b, "user id")
        if user_a == user_b:
            raise Conflict("You cannot start a chat with yourself")
        if self._user_row(user_b) is None:
            raise NotFound("User not found")
        existing = self.direct_conversation_id(user_a, user_b)
        if existing:
            return self.get_conversation(existing, user_a), False
        lo, hi = sorted((user_a, user_b))
        db = self._get_db()
        now = utcnow()
        try:
            with transaction(db) as cur:
                cur.execute(
                    "INSERT INTO conversations (kind, pair_key, created_at) VALUES ('chat', ?, ?)",
                    (f"{lo}:{hi}", now),
                )
                cid = cur.lastrowid
                cur.executemany(
                    "INSERT INTO memberships (conversation_id, user_id, role, joined_at) VALUES (?, ?, 'member', ?)",
                    [(cid, lo, now), (cid, hi, now)],
                )
        except sqlite3.IntegrityError:
            # another request created the pair first
            existing = self.direct_conversation_id(user_a, user_b)
            if existing is None:
                raise
            return self.get_conversation(existing, user_a), False
        logger.info("Created direct chat %s between %s and %s", cid, lo, hi)
        self._notify_members(cid, "created", [lo, hi])
        return self.get_conversation(cid, user_a), True

    def get_or_create_direct_by_username(self, user_id: int, username: str) -> tuple:
        username = (username or "").strip().lstrip("@")
        if not username:
            raise InvalidInput("username required")
        row = self._get_db().execute(
            "SELECT id FROM users WHERE username=?", (username,)
        ).fetchone()
        if row is None:
            raise NotFound("User not found")
        return self.get_or_create_direct(user_id, row["id"])

    def create_channel(self, kind: str, title: str, handle: str, owner_id: int,
                       description: str = None) -> dict:
        spec = channel_kind(kind)
        title = (title or "").strip()
        if not title or len(title) > TITLE_MAX:
            raise InvalidInput(f"Title must be 1-{TITLE_MAX} characters")
        handle = normalize_handle(handle)
        description = (description or "").strip()[:DESCRIPTION_MAX] or None
        db = self._get_db()
        if db.execute(
            "SELECT 1 FROM conversations WHERE kind=? AND handle=?", (spec.name, handle)
        ).fetchone():
            raise Conflict("Handle already taken")
        now = utcnow()
        try:
            with transaction(db) as cur:
                cur.execute(
                    """
                    INSERT INTO conversations (kind, title, handle, description, owner_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (spec.name, title, handle, description, owner_id, now),
                )
                cid = cur.lastrowid
                cur.execute(
                    "INSERT INTO memberships (conversation_id, user_id, role, joined_at) VALUES (?, ?, ?, ?)",
                    (cid, owner_id, ROLE_OWNER, now),
                )
        except sqlite3.IntegrityError:
            raise Conflict("Handle already taken") from None
        logger.info("User %s created %s %s (@%s)", owner_id, spec.name, cid, handle)
        self._notify_members(cid, "created", [owner_id])
        return self.get_conversation(cid, owner_id)

    def find_channel(self, kind: str, handle: str) -> dict:
        spec = channel_kind(kind)
        handle = (handle or "").strip().lstrip("@").lower()
        row = self._get_db().execute(
            """
            SELECT c.id, c.kind, c.title, c.handle, c.description, c.created_at,
                   (SELECT COUNT(*) FROM memberships m WHERE m.conversation_id = c.id) AS member_count
            FROM conversations c WHERE c.kind=? AND c.handle=?
            """,
            (spec.name, handle),
        ).fetchone()
        if row is None:
            raise NotFound("Channel not found")
        return {
            "id": row["id"],
            "kind": row["kind"],
            "title": row["title"],
            "handle": row["handle"],
            "description": row["description"],
            "memberCount": row["member_count"],
            "createdAt": row["created_at"],
        }

    def get_conversation(self, conversation_id, user_id: int, kind: str = None) -> dict:
        row = self.require_member(conversation_id, user_id, kind)
        return self._conversations_for(user_id, [row])[0]

    def list_conversations(self, user_id: int, kind: str = None) -> list:
        sql = """
            SELECT c.*, m.role AS my_role
            FROM conversations c
            JOIN memberships m ON m.conversation_id = c.id
            WHERE m.user_id = ?
        """
        params = [user_id]
        if kind:
            sql += " AND c.kind = ?"
            params.append(kind)
        rows = self._get_db().execute(sql, params).fetchall()
        out = self._conversations_for(user_id, rows)
        out.sort(
            key=lambda c: (c["lastMessage"] or {}).get("createdAt") or c["createdAt"],
            reverse=True,
        )
        return out

    def _conversations_for(self, user_id: int, rows) -> list:
        if not rows:
            return []
        db = self._get_db()
        ids = [r["id"] for r in rows]
        marks = ",".join("?" * len(ids))
        counts = {
            r["conversation_id"]: r["n"]
            for r in db.execute(
                f"SELECT conversation_id, COUNT(*) AS n FROM memberships WHERE conversation_id IN ({marks}) GROUP BY conversation_id",
                ids,
            )
        }
        last = {}
        for r in db.execute(
            MESSAGE_SELECT + f"""
            WHERE m.id IN (SELECT MAX(id) FROM messages WHERE conversation_id IN ({marks}) GROUP BY conversation_id)
            """,
            ids,
        ):
            last[r["conversation_id"]] = message_dict(r)
        peers = {}
        chat_ids = [r["id"] for r in rows if r["kind"] == "chat"]
        if chat_ids:
            chat_marks = ",".join("?" * len(chat_ids))
            for r in db.execute(
                f"""
                SELECT m.conversation_id, u.id, u.username, u.display_name, u.avatar, u.last_seen
                FROM memberships m JOIN users u ON u.id = m.user_id
                WHERE m.conversation_id IN ({chat_marks}) AND m.user_id != ?
                """,
                chat_ids + [user_id],
            ):
                peers[r["conversation_id"]] = self.user_public(r)
        out = []
        for r in rows:
            spec = KINDS[r["kind"]]
            peer = peers.get(r["id"])
            title = r["title"]
            if spec.name == "chat":
                title = peer["displayName"] if peer else DELETED_AUTHOR
            out.append({
                "id": r["id"],
                "kind": r["kind"],
                "title": title,
                "handle": r["handle"],
                "description": r["description"],
                "ownerId": r["owner_id"],
                "role": r["my_role"],
                "memberCount": counts.get(r["id"], 0),
                "peer": peer,
                "lastMessage": last.get(r["id"]),
                "createdAt": r["created_at"],
            })
        return out

    def update_channel(self, conversation_id, actor_id: int, title: str = None,
                       description: str = None, handle: str = None, kind: str = None) -> dict:
        conv = self.require_member(conversation_id, actor_id, kind)
        spec = KINDS[conv["kind"]]
        if not spec.is_channel:
            raise InvalidInput("Direct chats have no editable metadata")
        if conv["my_role"] not in MODERATOR_ROLES:
            raise Forbidden("Only channel admins can edit the channel")
        fields = {}
        if title is not None:
            title = title.strip()
            if not title or len(title) > TITLE_MAX:
                raise InvalidInput(f"Title must be 1-{TITLE_MAX} characters")
            fields["title"] = title
        if description is not None:
            fields["description"] = description.strip()[:DESCRIPTION_MAX] or None
        if handle is not None:
            new_handle = normalize_handle(handle)
            if new_handle != conv["handle"]:
                taken = self._get_db().execute(
                    "SELECT 1 FROM conversations WHERE kind=? AND handle=? AND id != ?",
                    (spec.name, new_handle, conv["id"]),
                ).fetchone()
                if taken:
                    raise Conflict("Handle already taken")
            fields["handle"] = new_handle
        if fields:
            assignments = ", ".join(f"{k}=?" for k in fields)
            try:
                with self._ordered(conv["id"]):
                    with transaction(self._get_db()) as cur:
                        cur.execute(
                            f"UPDATE conversations SET {assignments} WHERE id=?",
                            list(fields.values()) + [conv["id"]],
                        )
                    updated = self.get_conversation(conv["id"], actor_id)
                    self._broadcaster.broadcast(conv["id"], spec.event("updated"), updated)
            except sqlite3.IntegrityError:
                raise Conflict("Handle already taken") from None
            self._notify_members(conv["id"], "updated")
            return updated
        return self.get_conversation(conv["id"], actor_id)

    def delete_conversation(self, conversation_id, actor_id: int, kind: str = None) -> dict:
        conv = self.require_member(conversation_id, actor_id, kind)
        spec = KINDS[conv["kind"]]
        if spec.is_channel and conv["my_role"] != ROLE_OWNER:
            raise Forbidden("Only the owner can delete the channel")
        return self._delete_conversation_row(conv["id"], spec, actor_id)

    def owned_conversation_ids(self, user_id: int) -> list:
        rows = self._get_db().execute(
            "SELECT id FROM conversations WHERE owner_id=?", (user_id,)
        ).fetchall()
        return [r["id"] for r in rows]

    def force_delete_conversation(self, conversation_id) -> dict:
        cid = parse_id(conversation_id, "conversation id")
        row = self._get_db().execute("SELECT kind FROM conversations WHERE id=?", (cid,)).fetchone()
        if row is None:
            raise NotFound("Conversation not found")
        return self._delete_conversation_row(cid, KINDS[row["kind"]], None)

    def _delete_conversation_row(self, cid: int, spec: ConversationKind, actor_id) -> dict:
        members = self.member_ids(cid)
        attachments = [
            r["attachment_path"]
            for r in self._get_db().execute(
                "SELECT attachment_path FROM messages WHERE conversation_id=? AND attachment_path IS NOT NULL",
                (cid,),
            )
        ]
        with self._ordered(cid):
            with transaction(self._get_db()) as cur:
                cur.execute("DELETE FROM conversations WHERE id=?", (cid,))
            self._broadcaster.broadcast(cid, spec.event("deleted"), {"conversationId": cid})
            self._broadcaster.close_conversation(cid)
        with self._order_guard:
            self._order_locks.pop(cid, None)
        logger.info("Conversation %s (%s) deleted by %s", cid, spec.name, actor_id or "admin")
        self._notify_members(cid, "deleted", members)
        return {"conversationId": cid, "attachments": attachments}

    # ------------------------------------------------------------------ membership changes

    def join(self, conversation_id, user_id: int, kind: str = None) -> dict:
        cid = parse_id(conversation_id, "conversation id")
        row = self._get_db().execute("SELECT kind FROM conversations WHERE id=?", (cid,)).fetchone()
        if row is None or not KINDS[row["kind"]].is_channel or (kind and row["kind"] != kind):
            raise NotFound("Channel not found")
        spec = KINDS[row["kind"]]
        if self.is_member(cid, user_id):
            return self.get_conversation(cid, user_id)
        with self._ordered(cid):
            with transaction(self._get_db()) as cur:
                cur.execute(
                    "INSERT OR IGNORE INTO memberships (conversation_id, user_id, role, joined_at) VALUES (?, ?, ?, ?)",
                    (cid, user_id, spec.member_role, utcnow()),
                )
            self._broadcast_member(cid, spec, "member-joined", user_id)
        logger.info("User %s joined %s %s", user_id, spec.name, cid)
        self._notify_members(cid, "joined", [user_id])
        return self.get_conversation(cid, user_id)

    def leave(self, conversation_id, user_id: int, kind: str = None):
        conv = self.require_member(conversation_id, user_id, kind)
        spec = KINDS[conv["kind"]]
        if not spec.is_channel:
            raise InvalidInput("Direct chats cannot be left; delete the chat instead")
        if conv["my_role"] == ROLE_OWNER:
            if len(self.member_ids(conv["id"])) <= 1:
                raise Conflict("The owner cannot leave a channel they are the only member of")
            raise Conflict("The owner cannot leave the channel")
        self._remove_membership(conv["id"], spec, user_id)

    def add_member(self, conversation_id, actor_id: int, target_id, kind: str = None) -> dict:
        conv = self.require_member(conversation_id, actor_id, kind)
        spec = KINDS[conv["kind"]]
        if not spec.is_channel:
            raise InvalidInput("Direct chats have exactly two members")
        if conv["my_role"] not in MODERATOR_ROLES:
            raise Forbidden("Only channel admins can add members")
        target_id = parse_id(target_id, "user id")
        user = self._user_row(target_id)
        if user is None:
            raise NotFound("User not found")
        if self.is_member(conv["id"], target_id):
            raise Conflict("Already a member")
        with self._ordered(conv["id"]):
            with transaction(self._get_db()) as cur:
                cur.execute(
                    "INSERT INTO memberships (conversation_id, user_id, role, joined_at) VALUES (?, ?, ?, ?)",
                    (conv["id"], target_id, spec.member_role, utcnow()),
                )
            self._broadcast_member(conv["id"], spec, "member-joined", target_id)
        logger.info("User %s added %s to %s %s", actor_id, target_id, spec.name, conv["id"])
        self._notify_members(conv["id"], "joined", [target_id])
        return self.user_public(user)

    def remove_member(self, conversation_id, actor_id: int, target_id, kind: str = None):
        target_id = parse_id(target_id, "user id")
        if target_id == actor_id:
            return self.leave(conversation_id, actor_id, kind)
        conv = self.require_member(conversation_id, actor_id, kind)
        spec = KINDS[conv["kind"]]
        if not spec.is_channel:
            raise InvalidInput("Direct chats have exactly two members")
        if conv["my_role"] not in MODERATOR_ROLES:
            raise Forbidden("Only channel admins can remove members")
        target_role = self.member_role(conv["id"], target_id)
        if target_role is None:
            raise NotFound("Not a member")
        if target_role == ROLE_OWNER:
            raise Conflict("Cannot remove the owner")
        if target_role == ROLE_ADMIN and conv["my_role"] != ROLE_OWNER:
            raise Forbidden("Only the owner can remove admins")
        self._remove_membership(conv["id"], spec, target_id)

    def _remove_membership(self, cid: int, spec: ConversationKind, user_id: int):
        with self._ordered(cid):
            with transaction(self._get_db()) as cur:
                cur.execute(
                    "DELETE FROM memberships WHERE conversation_id=? AND user_id=?", (cid, user_id)
                )
            self._broadcast_member(cid, spec, "member-left", user_id)
            self._broadcaster.evict_user(user_id, cid)
        logger.info("User %s left %s %s", user_id, spec.name, cid)
        self._notify_members(cid, "left", [user_id])

    def _broadcast_member(self, cid: int, spec: ConversationKind, event: str, user_id: int):
        user = self._user_row(user_id)
        self._broadcaster.broadcast(cid, spec.event(event), {
            "conversationId": cid,
            "userId": user_id,
            "username": user["username"] if user else None,
        })

    def set_role(self, conversation_id, actor_id: int, target_id, role: str, kind: str = None) -> dict:
        conv = self.require_member(conversation_id, actor_id, kind)
        spec = KINDS[conv["kind"]]
        if not spec.is_channel:
            raise InvalidInput("Direct chats have no roles")
        if role not in (ROLE_ADMIN, spec.member_role):
            raise InvalidInput(f"role must be '{ROLE_ADMIN}' or '{spec.member_role}'")
        if conv["my_role"] != ROLE_OWNER:
            raise Forbidden("Only the owner can change roles")
        target_id = parse_id(target_id, "user id")
        current = self.member_role(conv["id"], target_id)
        if current is None:
            raise NotFound("Not a member")
        if current == ROLE_OWNER:
            raise Conflict("The owner's role cannot be changed")
        with self._ordered(conv["id"]):
            with transaction(self._get_db()) as cur:
                cur.execute(
                    "UPDATE memberships SET role=? WHERE conversation_id=? AND user_id=?",
                    (role, conv["id"], target_id),
                )
            payload = {"conversationId": conv["id"], "userId": target_id, "role": role}
            self._broadcaster.broadcast(conv["id"], spec.event("updated"), payload)
        return payload

    def list_members(self, conversation_id, user_id: int, kind: str = None) -> list:
        conv = self.require_member(conversation_id, user_id, kind)
        rows = self._get_db().execute(
            """
            SELECT u.id, u.username, u.display_name, u.avatar, u.last_seen, m.role, m.joined_at
            FROM memberships m JOIN users u ON u.id = m.user_id
            WHERE m.conversation_id = ?
            ORDER BY CASE m.role WHEN 'owner' THEN 0 WHEN 'admin' THEN 1 ELSE 2 END, LOWER(u.username)
            """,
            (conv["id"],),
        ).fetchall()
        out = []
        for r in rows:
            d = self.user_public(r)
            d["role"] = r["role"]
            d["joinedAt"] = r["joined_at"]
            out.append(d)
        return out

    def create_invite(self, conversation_id, actor_id: int, kind: str = None) -> dict:
        conv = self.require_member(conversation_id, actor_id, kind)
        spec = KINDS[conv["kind"]]
        if not spec.invites:
            raise InvalidInput("Invites are only available in group channels")
        if conv["my_role"] not in MODERATOR_ROLES:
            raise Forbidden("Only channel admins can create invites")
        code = secrets.token_urlsafe(8)
        with transaction(self._get_db()) as cur:
            cur.execute(
                "INSERT INTO invites (code, conversation_id, created_by, created_at) VALUES (?, ?, ?, ?)",
                (code, conv["id"], actor_id, utcnow()),
            )
        return {"code": code, "conversationId": conv["id"]}

    def join_by_invite(self, code: str, user_id: int) -> dict:
        row = self._get_db().execute(
            "SELECT conversation_id FROM invites WHERE code=?", ((code or "").strip(),)
        ).fetchone()
        if row is None:
            raise NotFound("Invite not found")
        return self.join(row["conversation_id"], user_id)

    # ------------------------------------------------------------------ messages

    def _fetch_message(self, message_id: int):
        db = self._get_db()
        row = db.execute(MESSAGE_SELECT + " WHERE m.id = ?", (message_id,)).fetchone()
        if row is None:
            return None
        return message_dict(row, self._reactions_for([message_id]).get(message_id))

    def _message_row(self, conversation_id: int, message_id):
        mid = parse_id(message_id, "message id")
        row = self._get_db().execute(
            "SELECT * FROM messages WHERE id=? AND conversation_id=?", (mid, conversation_id)
        ).fetchone()
        if row is None:
            raise NotFound("Message not found")
        return row

    def _reactions_for(self, message_ids) -> dict:
        if not message_ids:
            return {}
        marks = ",".join("?" * len(message_ids))
        grouped = defaultdict(dict)
        for r in self._get_db().execute(
            f"SELECT message_id, emoji, user_id FROM reactions WHERE message_id IN ({marks}) ORDER BY created_at, rowid",
            list(message_ids),
        ):
            grouped[r["message_id"]].setdefault(r["emoji"], []).append(r["user_id"])
        return {
            mid: [{"emoji": e, "count": len(u), "userIds": u} for e, u in by_emoji.items()]
            for mid, by_emoji in grouped.items()
        }

    def _clean_text(self, text) -> str:
        text = (text or "").strip()
        if len(text) > self.max_chars:
            raise InvalidInput(f"Message too long (max {self.max_chars} characters)")
        return text

    def send_message(self, conversation_id, author_id: int, text: str = None, sticker: str = None,
                     attachment: dict = None, reply_to_id=None, kind: str = None) -> dict:
        conv = self.require_member(conversation_id, author_id, kind)
        spec = KINDS[conv["kind"]]
        if not spec.members_post and conv["my_role"] not in MODERATOR_ROLES:
            raise Forbidden("Only channel admins can post here")
        text = self._clean_text(text)
        sticker = (sticker or "").strip() or None
        if not text and not sticker and not attachment:
            raise InvalidInput("Message is empty")
        if sticker and not STICKER_RE.match(sticker):
            raise InvalidInput("invalid sticker")
        if spec.name == "chat":
            peer = [u for u in self.member_ids(conv["id"]) if u != author_id]
            if peer and self._blocked_either(author_id, peer[0]):
                raise Forbidden("You cannot message this user")
        reply_id = None
        if reply_to_id not in (None, "", 0):
            try:
                reply_id = self._message_row(conv["id"], reply_to_id)["id"]
            except NotFound:
                raise InvalidInput("Reply target not found in this conversation") from None
        attachment = attachment or {}
        with self._ordered(conv["id"]):
            with transaction(self._get_db()) as cur:
                cur.execute(
                    """
                    INSERT INTO messages (conversation_id, author_id, kind, text, sticker,
                        attachment_path, attachment_name, attachment_mime, attachment_size,
                        reply_to_id, created_at)
                    VALUES (?, ?, 'user', ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (conv["id"], author_id, text or None, sticker,
                     attachment.get("path"), attachment.get("name"), attachment.get("mime"),
                     attachment.get("size"), reply_id, utcnow()),
                )
                mid = cur.lastrowid
            message = self._fetch_message(mid)
            self._broadcaster.broadcast(conv["id"], spec.event("new-message"), message)
        self._notify_members(conv["id"], "message", messageId=mid)
        return message

    def post_system_message(self, conversation_id: int, text: str) -> dict:
        row = self._get_db().execute(
            "SELECT kind FROM conversations WHERE id=?", (conversation_id,)
        ).fetchone()
        if row is None:
            raise NotFound("Conversation not found")
        spec = KINDS[row["kind"]]
        with self._ordered(conversation_id):
            with transaction(self._get_db()) as cur:
                cur.execute(
                    "INSERT INTO messages (conversation_id, author_id, kind, text, created_at) VALUES (?, NULL, 'system', ?, ?)",
                    (conversation_id, text, utcnow()),
                )
                mid = cur.lastrowid
            message = self._fetch_message(mid)
            self._broadcaster.broadcast(conversation_id, spec.event("new-message"), message)
        self._notify_members(conversation_id, "message", messageId=mid)
        return message

    def edit_message(self, conversation_id, message_id, user_id: int, text: str,
                     kind: str = None) -> dict:
        conv = self.require_member(conversation_id, user_id, kind)
        spec = KINDS[conv["kind"]]
        row = self._message_row(conv["id"], message_id)
        if row["kind"] != "user" or row["author_id"] != user_id:
            raise Forbidden("You can only edit your own messages")
        text = self._clean_text(text)
        if not text:
            raise InvalidInput("Message text cannot be empty")
        if text == (row["text"] or ""):
            return self._fetch_message(row["id"])
        with self._ordered(conv["id"]):
            with transaction(self._get_db()) as cur:
                cur.execute(
                    "UPDATE messages SET text=?, edited_at=? WHERE id=?", (text, utcnow(), row["id"])
                )
            message = self._fetch_message(row["id"])
            self._broadcaster.broadcast(conv["id"], spec.event("edit-message"), message)
        return message

    def delete_message(self, conversation_id, message_id, user_id: int, kind: str = None) -> dict:
        conv = self.require_member(conversation_id, user_id, kind)
        spec = KINDS[conv["kind"]]
        row = self._message_row(conv["id"], message_id)
        is_author = row["kind"] == "user" and row["author_id"] == user_id
        is_owner = spec.is_channel and conv["my_role"] == ROLE_OWNER
        if not (is_author or is_owner):
            raise Forbidden("You cannot delete this message")
        return self._delete_message_row(conv["id"], spec, row)

    def force_delete_message(self, message_id) -> dict:
        mid = parse_id(message_id, "message id")
        row = self._get_db().execute("SELECT * FROM messages WHERE id=?", (mid,)).fetchone()
        if row is None:
            raise NotFound("Message not found")
        kind = self._get_db().execute(
            "SELECT kind FROM conversations WHERE id=?", (row["conversation_id"],)
        ).fetchone()["kind"]
        return self._delete_message_row(row["conversation_id"], KINDS[kind], row)

    def _delete_message_row(self, cid: int, spec: ConversationKind, row) -> dict:
        payload = {"conversationId": cid, "messageId": row["id"]}
        with self._ordered(cid):
            with transaction(self._get_db()) as cur:
                cur.execute("DELETE FROM messages WHERE id=?", (row["id"],))
            self._broadcaster.broadcast(cid, spec.event("delete-message"), payload)
        self._notify_members(cid, "message-deleted", messageId=row["id"])
        result = dict(payload)
        result["attachment"] = row["attachment_path"]
        return result

    def _page_limit(self, limit) -> int:
        if limit in (None, ""):
            return self.default_page
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise InvalidInput("invalid limit") from None
        return max(1, min(limit, self.max_page))

    def list_messages(self, conversation_id, user_id: int, limit=None, offset=0,
                      before_id=None, kind: str = None) -> list:
        """Newest page first by offset/limit, returned oldest-first within the page."""
        conv = self.require_member(conversation_id, user_id, kind)
        limit = self._page_limit(limit)
        try:
            offset = max(0, int(offset or 0))
        except (TypeError, ValueError):
            raise InvalidInput("invalid offset") from None
        sql = MESSAGE_SELECT + " WHERE m.conversation_id = ?"
        params = [conv["id"]]
        if before_id not in (None, ""):
            sql += " AND m.id < ?"
            params.append(parse_id(before_id, "message id"))
        sql += " ORDER BY m.id DESC LIMIT ? OFFSET ?"
        params += [limit, offset]
        rows = self._get_db().execute(sql, params).fetchall()
        rows.reverse()
        reactions = self._reactions_for([r["id"] for r in rows])
        return [message_dict(r, reactions.get(r["id"])) for r in rows]

    def toggle_pin(self, conversation_id, message_id, user_id: int, kind: str = None) -> dict:
        conv = self.require_member(conversation_id, user_id, kind)
        spec = KINDS[conv["kind"]]
        if not spec.is_channel:
            raise InvalidInput("Pinning is only available in channels")
        row = self._message_row(conv["id"], message_id)
        if not (row["author_id"] == user_id or conv["my_role"] == ROLE_OWNER):
            raise Forbidden("Only the author or the owner can pin this message")
        db = self._get_db()
        with self._ordered(conv["id"]):
            with transaction(db) as cur:
                cur.execute("DELETE FROM pinned_messages WHERE message_id=?", (row["id"],))
                pinned = cur.rowcount == 0
                if pinned:
                    cur.execute(
                        "INSERT INTO pinned_messages (message_id, conversation_id, pinned_by, pinned_at) VALUES (?, ?, ?, ?)",
                        (row["id"], conv["id"], user_id, utcnow()),
                    )
            payload = {
                "conversationId": conv["id"],
                "messageId": row["id"],
                "pinned": pinned,
                "pinnedBy": user_id,
            }
            self._broadcaster.broadcast(conv["id"], spec.event("pin-message"), payload)
        return payload

    def list_pins(self, conversation_id, user_id: int, kind: str = None) -> list:
        conv = self.require_member(conversation_id, user_id, kind)
        rows = self._get_db().execute(
            MESSAGE_SELECT + " WHERE m.conversation_id = ? AND p.message_id IS NOT NULL ORDER BY p.pinned_at DESC",
            (conv["id"],),
        ).fetchall()
        reactions = self._reactions_for([r["id"] for r in rows])
        return [message_dict(r, reactions.get(r["id"])) for r in rows]

    def toggle_reaction(self, conversation_id, message_id, user_id: int, emoji: str,
                        kind: str = None) -> dict:
        conv = self.require_member(conversation_id, user_id, kind)
        spec = KINDS[conv["kind"]]
        emoji = (emoji or "").strip()
        if not emoji or len(emoji) > EMOJI_MAX:
            raise InvalidInput("invalid reaction")
        row = self._message_row(conv["id"], message_id)
        with self._ordered(conv["id"]):
            with transaction(self._get_db()) as cur:
                cur.execute(
                    "DELETE FROM reactions WHERE message_id=? AND user_id=? AND emoji=?",
                    (row["id"], user_id, emoji),
                )
                if cur.rowcount == 0:
                    cur.execute(
                        "INSERT INTO reactions (message_id, user_id, emoji, created_at) VALUES (?, ?, ?, ?)",
                        (row["id"], user_id, emoji, utcnow()),
                    )
            payload = {
                "conversationId": conv["id"],
                "messageId": row["id"],
                "reactions": self._reactions_for([row["id"]]).get(row["id"], []),
            }
            self._broadcaster.broadcast(conv["id"], spec.event("reaction"), payload)
        return payload

    def attachment_visible_to(self, stored_name: str, user_id: int) -> bool:
        row = self._get_db().execute(
            """
            SELECT 1 FROM messages m
            JOIN memberships mm ON mm.conversation_id = m.conversation_id AND mm.user_id = ?
            WHERE m.attachment_path = ? LIMIT 1
            """,
            (user_id, stored_name),
        ).fetchone()
        return row is not None

    def stats(self) -> dict:
        db = self._get_db()
        by_kind = {k: 0 for k in KINDS}
        for r in db.execute("SELECT kind, COUNT(*) AS n FROM conversations GROUP BY kind"):
            by_kind[r["kind"]] = r["n"]
        return {
            "online": self._presence.count() if self._presence else 0,
            "users": db.execute("SELECT COUNT(*) FROM users").fetchone()[0],
            "conversations": by_kind,
            "messages": db.execute("SELECT COUNT(*) FROM messages").fetchone()[0],
        }
