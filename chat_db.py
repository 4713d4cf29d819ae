"""
Database helpers: one sqlite3 connection per app context, the schema, explicit
transaction boundaries and the app_settings key/value store.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

from flask import current_app, g

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE COLLATE NOCASE,
    password_hash TEXT NOT NULL,
    display_name TEXT,
    avatar TEXT,
    bio TEXT,
    last_seen TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    token_hash TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL CHECK (kind IN ('chat', 'nexus', 'nexphere')),
    title TEXT,
    handle TEXT,
    description TEXT,
    owner_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
    pair_key TEXT UNIQUE,          -- 'lo:hi' user ids, direct chats only
    created_at TEXT NOT NULL,
    UNIQUE (kind, handle)
);

CREATE TABLE IF NOT EXISTS memberships (
    conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    role TEXT NOT NULL DEFAULT 'member',
    joined_at TEXT NOT NULL,
    PRIMARY KEY (conversation_id, user_id)
);
CREATE INDEX IF NOT EXISTS idx_memberships_user ON memberships(user_id);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    author_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    kind TEXT NOT NULL DEFAULT 'user',   -- 'user' or 'system'
    text TEXT,
    sticker TEXT,
    attachment_path TEXT,
    attachment_name TEXT,
    attachment_mime TEXT,
    attachment_size INTEGER,
    reply_to_id INTEGER REFERENCES messages(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL,
    edited_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);
CREATE INDEX IF NOT EXISTS idx_messages_attachment ON messages(attachment_path);

CREATE TABLE IF NOT EXISTS pinned_messages (
    message_id INTEGER PRIMARY KEY REFERENCES messages(id) ON DELETE CASCADE,
    conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    pinned_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
    pinned_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reactions (
    message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    emoji TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (message_id, user_id, emoji)
);

CREATE TABLE IF NOT EXISTS blocks (
    blocker_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    blocked_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    PRIMARY KEY (blocker_id, blocked_id)
);

CREATE TABLE IF NOT EXISTS invites (
    code TEXT PRIMARY KEY,
    conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    created_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS app_settings (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""

DEFAULT_SETTINGS = {
    "REGISTRATION_ENABLED": "1",
    "MAINTENANCE_MODE": "0",
}


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def connect(path: str, timeout: float = 5.0) -> sqlite3.Connection:
    db = sqlite3.connect(path, timeout=timeout, check_same_thread=False)
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA foreign_keys=ON;")
    try:
        db.execute("PRAGMA journal_mode=WAL;")
        db.execute("PRAGMA synchronous=NORMAL;")
    except sqlite3.OperationalError:
        logger.debug("WAL journal not available for %s", path)
    return db


def get_db() -> sqlite3.Connection:
    db = getattr(g, "_database", None)
    if db is None:
        db = g._database = connect(
            current_app.config["DATABASE"], current_app.config["DB_TIMEOUT"]
        )
    return db


def close_connection(exc=None):
    db = g.pop("_database", None)
    if db is not None:
        db.close()


def init_db(db: sqlite3.Connection):
    db.executescript(SCHEMA)
    for key, value in DEFAULT_SETTINGS.items():
        db.execute(
            "INSERT OR IGNORE INTO app_settings(key, value) VALUES(?, ?)", (key, value)
        )
    db.commit()


@contextmanager
def transaction(db: sqlite3.Connection):
    """Yield a cursor; commit when the block finishes, roll back if it raises."""
    cur = db.cursor()
    try:
        yield cur
    except BaseException:
        db.rollback()
        raise
    else:
        db.commit()
    finally:
        cur.close()


def get_setting(db: sqlite3.Connection, key: str, default=None):
    row = db.execute("SELECT value FROM app_settings WHERE key=?", (key,)).fetchone()
    if row is None:
        return default
    return row["value"]


def set_setting(db: sqlite3.Connection, key: str, value):
    with transaction(db) as cur:
        cur.execute(
            "INSERT OR REPLACE INTO app_settings(key, value) VALUES(?, ?)",
            (key, str(value)),
        )


def all_settings(db: sqlite3.Connection) -> dict:
    rows = db.execute("SELECT key, value FROM app_settings ORDER BY key").fetchall()
    return {r["key"]: r["value"] for r in rows}


def bool_setting(db: sqlite3.Connection, key: str) -> bool:
    return str(get_setting(db, key, DEFAULT_SETTINGS.get(key, "0"))) == "1"
