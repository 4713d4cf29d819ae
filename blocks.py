"""Directed block relationships between users."""

import logging

from chat_db import transaction, utcnow
from chat_errors import Conflict, NotFound
from conversations import parse_id

logger = logging.getLogger(__name__)


class BlockList:
    def __init__(self, get_db, gateway):
        self._get_db = get_db
        self._gateway = gateway

    def _username(self, user_id: int):
        row = self._get_db().execute("SELECT username FROM users WHERE id=?", (user_id,)).fetchone()
        if row is None:
            raise NotFound("User not found")
        return row["username"]

    def is_blocked(self, blocker_id: int, blocked_id: int) -> bool:
        row = self._get_db().execute(
            "SELECT 1 FROM blocks WHERE blocker_id=? AND blocked_id=?", (blocker_id, blocked_id)
        ).fetchone()
        return row is not None

    def block(self, blocker_id: int, blocked_id) -> dict:
        blocked_id = parse_id(blocked_id, "user id")
        if blocker_id == blocked_id:
            raise Conflict("You cannot block yourself")
        target = self._username(blocked_id)
        if self.is_blocked(blocker_id, blocked_id):
            return self.status(blocker_id, blocked_id)
        with transaction(self._get_db()) as cur:
            cur.execute(
                "INSERT OR IGNORE INTO blocks (blocker_id, blocked_id, created_at) VALUES (?, ?, ?)",
                (blocker_id, blocked_id, utcnow()),
            )
        logger.info("User %s blocked %s", blocker_id, blocked_id)
        self._record_in_chat(blocker_id, blocked_id, f"{self._username(blocker_id)} blocked {target}")
        return self.status(blocker_id, blocked_id)

    def unblock(self, blocker_id: int, blocked_id) -> dict:
        blocked_id = parse_id(blocked_id, "user id")
        if blocker_id == blocked_id:
            raise Conflict("You cannot unblock yourself")
        target = self._username(blocked_id)
        with transaction(self._get_db()) as cur:
            cur.execute(
                "DELETE FROM blocks WHERE blocker_id=? AND blocked_id=?", (blocker_id, blocked_id)
            )
            removed = cur.rowcount
        if removed:
            logger.info("User %s unblocked %s", blocker_id, blocked_id)
            self._record_in_chat(blocker_id, blocked_id, f"{self._username(blocker_id)} unblocked {target}")
        return self.status(blocker_id, blocked_id)

    def _record_in_chat(self, a: int, b: int, text: str):
        cid = self._gateway.direct_conversation_id(a, b)
        if cid is not None:
            self._gateway.post_system_message(cid, text)

    def status(self, me: int, other) -> dict:
        other = parse_id(other, "user id")
        self._username(other)
        return {
            "userId": other,
            "blocked": self.is_blocked(me, other),
            "blockedBy": self.is_blocked(other, me),
        }

    def list_blocked(self, me: int) -> list:
        rows = self._get_db().execute(
            """
            SELECT u.id, u.username, u.display_name, b.created_at
            FROM blocks b JOIN users u ON u.id = b.blocked_id
            WHERE b.blocker_id = ?
            ORDER BY LOWER(u.username)
            """,
            (me,),
        ).fetchall()
        return [
            {"id": r["id"], "username": r["username"],
             "displayName": r["display_name"] or r["username"], "blockedAt": r["created_at"]}
            for r in rows
        ]
