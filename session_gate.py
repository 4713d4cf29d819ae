"""
Session gate: registration, credential checks and durable session tokens.

Tokens are handed to the browser inside the signed Flask session cookie; the
database only keeps their SHA-256 digest, so sessions survive a restart while
a leaked database does not leak usable tokens.
"""

import hashlib
import logging
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from functools import wraps

from flask import current_app, g, session
from werkzeug.security import check_password_hash, generate_password_hash

from chat_db import transaction, utcnow
from chat_errors import Conflict, InvalidCredentials, InvalidInput, NotFound, Unauthenticated
from formatting import sanitize_username

logger = logging.getLogger(__name__)

USERNAME_MIN = 3
USERNAME_MAX = 20
PASSWORD_MIN = 6
PASSWORD_MAX = 128
RESERVED_USERNAMES = {"system", "admin"}


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def session_key(token: str) -> str:
    """Stable name for one login session that does not reveal the token."""
    return _digest(token)


class SessionGate:
    def __init__(self, get_db, lifetime: timedelta = timedelta(days=30)):
        self._get_db = get_db
        self.lifetime = lifetime

    def register(self, username: str, password: str, display_name: str = None) -> int:
        raw = (username or "").strip()
        clean = sanitize_username(raw)
        if not raw or not password:
            raise InvalidInput("Provide username and password")
        if clean != raw or not (USERNAME_MIN <= len(clean) <= USERNAME_MAX):
            raise InvalidInput(
                f"Invalid username ({USERNAME_MIN}-{USERNAME_MAX} letters, digits, '.', '_' or '-')"
            )
        if clean.lower() in RESERVED_USERNAMES:
            raise Conflict("Reserved username")
        if not (PASSWORD_MIN <= len(password) <= PASSWORD_MAX):
            raise InvalidInput(f"Password must be {PASSWORD_MIN}-{PASSWORD_MAX} characters")
        display_name = (display_name or "").strip()[:40] or clean
        db = self._get_db()
        if db.execute("SELECT 1 FROM users WHERE username=?", (clean,)).fetchone():
            raise Conflict("Username taken")
        try:
            with transaction(db) as cur:
                cur.execute(
                    "INSERT INTO users (username, password_hash, display_name, created_at) VALUES (?, ?, ?, ?)",
                    (clean, generate_password_hash(password), display_name, utcnow()),
                )
                user_id = cur.lastrowid
        except sqlite3.IntegrityError:
            # a concurrent registration took the name between the check and the insert
            raise Conflict("Username taken") from None
        logger.info("Registered user %s (id=%s)", clean, user_id)
        return user_id

    def authenticate(self, username: str, password: str) -> str:
        db = self._get_db()
        row = db.execute(
            "SELECT id, password_hash FROM users WHERE username=?", ((username or "").strip(),)
        ).fetchone()
        if not row or not check_password_hash(row["password_hash"], password or ""):
            logger.info("Rejected login for %r", username)
            raise InvalidCredentials()
        token = secrets.token_urlsafe(32)
        now = datetime.now(timezone.utc)
        with transaction(db) as cur:
            cur.execute(
                "INSERT INTO sessions (token_hash, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (_digest(token), row["id"], now.isoformat(), (now + self.lifetime).isoformat()),
            )
        logger.info("User id=%s logged in", row["id"])
        return token

    def resolve(self, token: str) -> int:
        if not token:
            raise Unauthenticated()
        db = self._get_db()
        row = db.execute(
            "SELECT user_id, expires_at FROM sessions WHERE token_hash=?", (_digest(token),)
        ).fetchone()
        if not row:
            raise Unauthenticated()
        if datetime.fromisoformat(row["expires_at"]) <= datetime.now(timezone.utc):
            self.invalidate(token)
            raise Unauthenticated("session expired")
        return row["user_id"]

    def invalidate(self, token: str):
        if not token:
            return
        with transaction(self._get_db()) as cur:
            cur.execute("DELETE FROM sessions WHERE token_hash=?", (_digest(token),))

    def invalidate_user(self, user_id: int):
        with transaction(self._get_db()) as cur:
            cur.execute("DELETE FROM sessions WHERE user_id=?", (user_id,))
        logger.info("Dropped all sessions of user id=%s", user_id)

    def verify_password(self, user_id: int, password: str) -> bool:
        row = self._get_db().execute(
            "SELECT password_hash FROM users WHERE id=?", (user_id,)
        ).fetchone()
        return bool(row) and check_password_hash(row["password_hash"], password or "")

    def delete_account(self, user_id: int) -> dict:
        """Remove a user with their sessions, memberships and owned channels.

        Messages they wrote elsewhere stay behind with a null author. Returns the
        co-members to notify and the attachment files of the deleted channels.
        """
        db = self._get_db()
        peers = [
            r["user_id"]
            for r in db.execute(
                """
                SELECT DISTINCT m2.user_id FROM memberships m1
                JOIN memberships m2 ON m2.conversation_id = m1.conversation_id
                WHERE m1.user_id = ? AND m2.user_id != ?
                """,
                (user_id, user_id),
            )
        ]
        attachments = [
            r["attachment_path"]
            for r in db.execute(
                """
                SELECT attachment_path FROM messages
                WHERE attachment_path IS NOT NULL
                  AND conversation_id IN (SELECT id FROM conversations WHERE owner_id = ?)
                """,
                (user_id,),
            )
        ]
        with transaction(db) as cur:
            cur.execute("DELETE FROM users WHERE id=?", (user_id,))
            if cur.rowcount == 0:
                raise NotFound("User not found")
        logger.info("Deleted account id=%s", user_id)
        return {"peers": peers, "attachments": attachments}

    def purge_expired(self) -> int:
        with transaction(self._get_db()) as cur:
            cur.execute("DELETE FROM sessions WHERE expires_at <= ?", (utcnow(),))
            return cur.rowcount


def current_user_id() -> int:
    gate = current_app.extensions["novachat"].gate
    return gate.resolve(session.get("token"))


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        g.user_id = current_user_id()
        return f(*args, **kwargs)
    return decorated
