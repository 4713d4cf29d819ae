from datetime import datetime, timezone

import pytest

from chat_errors import InvalidInput
from presence import PresenceRegistry


def test_first_connection_wins(presence, recorder):
    assert presence.announce(1, "sid-a")
    assert not presence.announce(1, "sid-b")
    assert presence.connection_for(1) == "sid-a"
    online = recorder.named("user-status-changed")
    assert len(online) == 1
    assert online[0][3] == {"userId": 1, "status": "online"}


def test_typing_reverts_to_online_exactly_once(presence, recorder, scheduler):
    presence.announce(1, "sid-a")
    assert presence.mark_activity(1, "typing", conversation_id=7)
    assert presence.status(1) == "typing"
    assert recorder.named("user-typing") == [
        ("room", 7, "user-typing", {"userId": 1, "conversationId": 7})
    ]

    scheduler.run_all()
    scheduler.run_all()

    assert presence.status(1) == "online"
    assert recorder.named("user-back-online") == [
        ("room", 7, "user-back-online", {"userId": 1, "conversationId": 7})
    ]


def test_newer_activity_supersedes_pending_reversion(presence, recorder, scheduler):
    presence.announce(1, "sid-a")
    presence.mark_activity(1, "typing", 7)
    presence.mark_activity(1, "recording-voice", 7)

    scheduler.run_next()  # the typing timer is stale now
    assert presence.status(1) == "recording-voice"
    assert recorder.named("user-back-online") == []

    scheduler.run_next()
    assert presence.status(1) == "online"
    assert len(recorder.named("user-back-online")) == 1


def test_revert_windows(presence, scheduler):
    presence.announce(1, "sid-a")
    for kind in ("typing", "recording-voice", "sending-photo", "sending-video"):
        presence.mark_activity(1, kind)
    assert [delay for delay, _ in scheduler.pending] == [3.0, 3.0, 2.0, 3.0]


def test_activity_without_conversation_is_global(presence, recorder):
    presence.announce(1, "sid-a")
    presence.mark_activity(1, "sending-photo")
    assert recorder.named("user-sending-photo") == [
        ("global", None, "user-sending-photo", {"userId": 1, "conversationId": None})
    ]


def test_activity_for_unannounced_user_is_ignored(presence, scheduler, recorder):
    assert not presence.mark_activity(2, "typing", 7)
    assert scheduler.pending == []
    assert recorder.events == []


def test_unknown_activity(presence):
    presence.announce(1, "sid-a")
    with pytest.raises(InvalidInput):
        presence.mark_activity(1, "dancing")


def test_explicit_back_online(presence, recorder, scheduler):
    presence.announce(1, "sid-a")
    presence.mark_activity(1, "typing", 7)
    assert presence.back_online(1)
    assert not presence.back_online(1)
    scheduler.run_all()
    assert len(recorder.named("user-back-online")) == 1


def test_disconnect_records_last_seen(recorder, scheduler):
    seen = datetime(2025, 10, 31, 19, 12, 23, tzinfo=timezone.utc)
    presence = PresenceRegistry(recorder, scheduler=scheduler, now=lambda: seen)
    presence.announce(1, "sid-a")

    assert presence.disconnect("sid-unknown") is None
    assert presence.disconnect("sid-a") == (1, seen)

    assert presence.status(1) == "offline"
    assert not presence.is_online(1)
    assert presence.last_seen(1) == seen
    offline = recorder.named("user-status-changed")[-1][3]
    assert offline["status"] == "offline"
    assert offline["lastSeen"] == seen.isoformat()
    assert offline["lastSeenText"] == "Fri Oct 31 2025 7:12:23 PM"


def test_reversion_after_disconnect_is_a_no_op(presence, recorder, scheduler):
    presence.announce(1, "sid-a")
    presence.mark_activity(1, "typing", 7)
    presence.disconnect("sid-a")
    scheduler.run_all()
    assert recorder.named("user-back-online") == []


def test_reconnect_after_disconnect(presence):
    presence.announce(1, "sid-a")
    presence.disconnect("sid-a")
    assert presence.announce(1, "sid-b")
    assert presence.connection_for(1) == "sid-b"
    assert presence.last_seen(1) is None
    assert presence.online_user_ids() == [1]
    assert presence.count() == 1
