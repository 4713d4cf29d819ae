"""
Presence registry: who is connected right now and what they are doing.

Process-local and rebuilt from zero on restart; clients re-announce when they
reconnect. Each entry carries a version number that is bumped on every
activity change, so a scheduled reversion only fires if nothing newer has
happened since it was scheduled.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from chat_errors import InvalidInput
from formatting import format_last_seen

logger = logging.getLogger(__name__)

ONLINE = "online"
OFFLINE = "offline"

# activity kind -> event broadcast when it starts
ACTIVITY_EVENTS = {
    "typing": "user-typing",
    "recording-voice": "user-recording-voice",
    "sending-photo": "user-sending-photo",
    "sending-video": "user-sending-video",
}
BACK_ONLINE_EVENT = "user-back-online"
STATUS_EVENT = "user-status-changed"

DEFAULT_REVERT_DELAYS = {
    "typing": 3.0,
    "recording-voice": 3.0,
    "sending-photo": 2.0,
    "sending-video": 3.0,
}


def timer_scheduler(delay: float, callback):
    t = threading.Timer(delay, callback)
    t.daemon = True
    t.start()
    return t


@dataclass
class PresenceEntry:
    user_id: int
    connection_id: str
    activity: str = ONLINE
    conversation_id: int = None
    version: int = 0
    since: float = field(default_factory=time.time)


class PresenceRegistry:
    def __init__(self, broadcaster, scheduler=timer_scheduler, delays: dict = None,
                 tz_name: str = "UTC", now=None):
        self._broadcaster = broadcaster
        self._schedule = scheduler
        self.delays = dict(DEFAULT_REVERT_DELAYS)
        self.delays.update(delays or {})
        self.tz_name = tz_name
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._entries: dict[int, PresenceEntry] = {}
        self._last_seen: dict[int, datetime] = {}
        self._lock = threading.RLock()

    def announce(self, user_id: int, connection_id: str) -> bool:
        """Track a connection for user_id. First connection wins; later ones are ignored."""
        with self._lock:
            if user_id in self._entries:
                return False
            self._entries[user_id] = PresenceEntry(user_id, connection_id)
            self._last_seen.pop(user_id, None)
        logger.debug("user %s online via %s", user_id, connection_id)
        self._broadcaster.broadcast_global(STATUS_EVENT, {"userId": user_id, "status": ONLINE})
        return True

    def mark_activity(self, user_id: int, kind: str, conversation_id: int = None) -> bool:
        if kind not in ACTIVITY_EVENTS:
            raise InvalidInput(f"unknown activity {kind!r}")
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return False
            entry.activity = kind
            entry.conversation_id = conversation_id
            entry.version += 1
            entry.since = time.time()
            version = entry.version
        self._emit(ACTIVITY_EVENTS[kind], user_id, conversation_id)
        self._schedule(self.delays[kind], lambda: self._revert(user_id, version))
        return True

    def back_online(self, user_id: int) -> bool:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None or entry.activity == ONLINE:
                return False
            conversation_id = entry.conversation_id
            entry.activity = ONLINE
            entry.conversation_id = None
            entry.version += 1
        self._emit(BACK_ONLINE_EVENT, user_id, conversation_id)
        return True

    def _revert(self, user_id: int, version: int):
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None or entry.version != version or entry.activity == ONLINE:
                return
            conversation_id = entry.conversation_id
            entry.activity = ONLINE
            entry.conversation_id = None
        self._emit(BACK_ONLINE_EVENT, user_id, conversation_id)

    def _emit(self, event: str, user_id: int, conversation_id):
        payload = {"userId": user_id, "conversationId": conversation_id}
        if conversation_id is None:
            self._broadcaster.broadcast_global(event, payload)
        else:
            self._broadcaster.broadcast(conversation_id, event, payload)

    def disconnect(self, connection_id: str):
        """Drop the entry owned by connection_id; returns (user_id, last_seen) or None."""
        with self._lock:
            owner = None
            for uid, entry in self._entries.items():
                if entry.connection_id == connection_id:
                    owner = uid
                    break
            if owner is None:
                return None
            del self._entries[owner]
            seen = self._now()
            self._last_seen[owner] = seen
        logger.debug("user %s offline (%s)", owner, connection_id)
        self._broadcaster.broadcast_global(STATUS_EVENT, {
            "userId": owner,
            "status": OFFLINE,
            "lastSeen": seen.isoformat(),
            "lastSeenText": format_last_seen(seen, self.tz_name),
        })
        return owner, seen

    def status(self, user_id: int) -> str:
        with self._lock:
            entry = self._entries.get(user_id)
            return entry.activity if entry else OFFLINE

    def last_seen(self, user_id: int):
        with self._lock:
            return self._last_seen.get(user_id)

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._entries

    def connection_for(self, user_id: int):
        with self._lock:
            entry = self._entries.get(user_id)
            return entry.connection_id if entry else None

    def online_user_ids(self) -> list:
        with self._lock:
            return sorted(self._entries)

    def count(self) -> int:
        with self._lock:
            return len(self._entries)
