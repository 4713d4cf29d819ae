import pytest

from conftest import ADMIN_SECRET, PASSWORD, received


@pytest.fixture
def connect(socketio, app):
    def _connect(client):
        sock = socketio.test_client(app, flask_test_client=client)
        assert sock.is_connected()
        return sock
    return _connect


@pytest.fixture
def pair(make_user):
    """alice and bob with a direct chat between them."""
    alice = make_user("alice")
    bob = make_user("bob")
    resp = alice.post("/chats/get-or-create", json={"userId": bob.user_id})
    return alice, bob, resp.get_json()["conversation"]["id"]


def test_sockets_without_a_session_are_refused(socketio, app):
    sock = socketio.test_client(app, flask_test_client=app.test_client())
    assert not sock.is_connected()


def test_user_online_first_connection_wins(make_user, connect):
    alice = make_user("alice")
    first = connect(alice)
    second = connect(alice)
    assert first.emit("user-online", callback=True)["tracked"] is True
    ack = second.emit("user-online", callback=True)
    assert ack["tracked"] is False
    assert ack["online"] == [alice.user_id]

    statuses = received(first, "user-status-changed")
    assert statuses == [{"userId": alice.user_id, "status": "online"}]


def test_stats_follow_presence(make_user, connect):
    alice = make_user("alice")
    sock = connect(alice)
    sock.emit("user-online")
    stats = received(sock, "stats-update")
    assert stats[-1]["online"] == 1
    assert stats[-1]["users"] == 1
    assert sock.emit("get-stats", callback=True)["online"] == 1


def test_join_chat_sends_history(pair, connect):
    alice, bob, cid = pair
    alice.post(f"/chats/{cid}/messages", json={"text": "earlier"})
    sock = connect(bob)
    ack = sock.emit("join-chat", {"conversationId": cid}, callback=True)
    assert ack["ok"] is True
    assert ack["conversation"]["id"] == cid
    history = received(sock, "chat-history")
    assert history[0]["conversationId"] == cid
    assert [m["text"] for m in history[0]["messages"]] == ["earlier"]


def test_non_member_cannot_join_the_room(pair, make_user, connect):
    alice, bob, cid = pair
    carol = make_user("carol")
    sock = connect(carol)
    ack = sock.emit("join-chat", {"conversationId": cid}, callback=True)
    assert ack == {"ok": False, "error": "You are not a member of this conversation", "status": 403}
    errors = received(sock, "error")
    assert errors == [{"event": "join-chat", "error": ack["error"], "status": 403}]

    alice.post(f"/chats/{cid}/messages", json={"text": "not for carol"})
    assert received(sock, "chat:new-message") == []


def test_messages_reach_the_room(pair, connect):
    alice, bob, cid = pair
    alice_sock = connect(alice)
    alice_sock.emit("join-chat", {"conversationId": cid})
    alice_sock.get_received()

    bob.post(f"/chats/{cid}/messages", json={"text": "hello alice"})
    events = alice_sock.get_received()
    names = [e["name"] for e in events]
    assert "chat:new-message" in names
    assert "chats:updated" in names
    new = [e["args"][0] for e in events if e["name"] == "chat:new-message"]
    assert new[0]["author"] == "bob"
    assert new[0]["text"] == "hello alice"


def test_messages_can_be_sent_over_the_socket(pair, connect):
    alice, bob, cid = pair
    alice_sock = connect(alice)
    bob_sock = connect(bob)
    alice_sock.emit("join-chat", {"conversationId": cid})
    bob_sock.emit("join-chat", {"conversationId": cid})
    alice_sock.get_received()

    ack = bob_sock.emit("chat:new-message", {"conversationId": cid, "text": "via socket"}, callback=True)
    assert ack["ok"] is True
    mid = ack["message"]["id"]
    assert [m["id"] for m in received(alice_sock, "chat:new-message")] == [mid]

    ack = bob_sock.emit("chat:edit-message", {"conversationId": cid, "messageId": mid, "text": "edited"},
                        callback=True)
    assert ack["message"]["edited"] is True
    ack = alice_sock.emit("chat:delete-message", {"conversationId": cid, "messageId": mid}, callback=True)
    assert ack["status"] == 403

    ack = bob_sock.emit("chat:delete-message", {"conversationId": cid, "messageId": mid}, callback=True)
    assert ack == {"ok": True, "messageId": mid}
    deleted = received(alice_sock, "chat:delete-message")
    assert deleted == [{"conversationId": cid, "messageId": mid}]


def test_wrong_kind_over_the_socket(pair, connect):
    alice, bob, cid = pair
    sock = connect(alice)
    ack = sock.emit("nexfery:new-message", {"conversationId": cid, "text": "x"}, callback=True)
    assert ack["status"] == 404


def test_malformed_payload(pair, connect):
    alice, bob, cid = pair
    sock = connect(alice)
    ack = sock.emit("join-chat", "not an object", callback=True)
    assert ack["ok"] is False
    assert ack["status"] == 400


def test_typing_indicator_and_reversion(pair, connect, scheduler):
    alice, bob, cid = pair
    alice_sock = connect(alice)
    bob_sock = connect(bob)
    alice_sock.emit("user-online")
    for sock in (alice_sock, bob_sock):
        sock.emit("join-chat", {"conversationId": cid})
    bob_sock.get_received()

    ack = alice_sock.emit("user-typing", {"conversationId": cid}, callback=True)
    assert ack == {"ok": True, "tracked": True}
    assert received(bob_sock, "user-typing") == [{"userId": alice.user_id, "conversationId": cid}]

    scheduler.run_all()
    scheduler.run_all()
    assert received(bob_sock, "user-back-online") == [{"userId": alice.user_id, "conversationId": cid}]


def test_activity_in_foreign_conversation_is_forbidden(pair, make_user, connect):
    alice, bob, cid = pair
    carol = make_user("carol")
    sock = connect(carol)
    sock.emit("user-online")
    ack = sock.emit("user-sending-photo", {"conversationId": cid}, callback=True)
    assert ack["status"] == 403


def test_disconnect_broadcasts_last_seen(pair, connect):
    alice, bob, cid = pair
    alice_sock = connect(alice)
    bob_sock = connect(bob)
    alice_sock.emit("user-online")
    bob_sock.get_received()

    alice_sock.disconnect()
    offline = received(bob_sock, "user-status-changed")
    assert offline[0]["userId"] == alice.user_id
    assert offline[0]["status"] == "offline"
    assert offline[0]["lastSeenText"]

    profile = bob.get(f"/api/users/{alice.user_id}").get_json()["user"]
    assert profile["status"] == "offline"
    assert profile["lastSeen"] == offline[0]["lastSeen"]


def test_deleting_an_account_drops_its_presence(pair, connect):
    alice, bob, cid = pair
    alice_sock = connect(alice)
    second_tab = connect(alice)
    bob_sock = connect(bob)
    alice_sock.emit("user-online")
    bob_sock.get_received()

    assert alice.delete("/api/account", json={"password": "hunter22"}).status_code == 200
    events = bob_sock.get_received()
    offline = [e["args"][0] for e in events if e["name"] == "user-status-changed"]
    assert offline[0]["status"] == "offline"
    updated = [e["args"][0] for e in events if e["name"] == "chats:updated"]
    assert {"reason": "account-deleted", "userId": alice.user_id} in updated
    assert not alice_sock.is_connected()
    assert not second_tab.is_connected()


@pytest.fixture
def team(make_user):
    """alice owns the group channel, bob is a member."""
    alice = make_user("alice")
    bob = make_user("bob")
    resp = alice.post("/nexphere/create", json={"title": "Team", "handle": "team-alpha"})
    cid = resp.get_json()["conversation"]["id"]
    assert bob.post(f"/nexphere/{cid}/join").status_code == 200
    return alice, bob, cid


def test_kicked_member_stops_receiving_room_events(team, connect):
    alice, bob, cid = team
    bob_sock = connect(bob)
    bob_sock.emit("join-chat", {"conversationId": cid})

    assert alice.delete(f"/nexphere/{cid}/members/{bob.user_id}").status_code == 200
    left = received(bob_sock, "nexphere:member-left")
    assert left[-1]["userId"] == bob.user_id

    alice.post(f"/nexphere/{cid}/messages", json={"text": "after the kick"})
    assert received(bob_sock, "nexphere:new-message") == []


def test_leaving_stops_room_events(team, connect):
    alice, bob, cid = team
    bob_sock = connect(bob)
    bob_sock.emit("join-chat", {"conversationId": cid})

    assert bob.post(f"/nexphere/{cid}/leave").status_code == 200
    bob_sock.get_received()
    alice.post(f"/nexphere/{cid}/messages", json={"text": "after leaving"})
    assert received(bob_sock, "nexphere:new-message") == []


def test_deleted_channel_room_is_closed(team, connect, socketio):
    alice, bob, cid = team
    bob_sock = connect(bob)
    bob_sock.emit("join-chat", {"conversationId": cid})

    assert alice.delete(f"/nexphere/{cid}").status_code == 200
    assert received(bob_sock, "nexphere:deleted") == [{"conversationId": cid}]
    room = list(socketio.server.manager.get_participants("/", f"conversation:{cid}"))
    assert room == []


def test_socket_writes_are_refused_during_maintenance(pair, connect, app):
    alice, bob, cid = pair
    sock = connect(alice)
    mid = sock.emit("chat:new-message", {"conversationId": cid, "text": "before"}, callback=True)["message"]["id"]

    admin = app.test_client()
    resp = admin.post("/admin/settings", json={"MAINTENANCE_MODE": True},
                      headers={"X-Admin-Secret": ADMIN_SECRET})
    assert resp.status_code == 200

    refused = {"ok": False, "error": "Maintenance mode", "status": 503}
    assert sock.emit("chat:new-message", {"conversationId": cid, "text": "during"}, callback=True) == refused
    assert sock.emit("chat:edit-message", {"conversationId": cid, "messageId": mid, "text": "x"},
                     callback=True) == refused
    assert sock.emit("chat:delete-message", {"conversationId": cid, "messageId": mid},
                     callback=True) == refused
    messages = alice.get(f"/chats/{cid}/messages").get_json()["messages"]
    assert [m["text"] for m in messages] == ["before"]


def test_logout_closes_the_sockets_of_that_session(make_user, connect, app):
    alice = make_user("alice")
    phone = app.test_client()
    assert phone.post("/login", json={"username": "alice", "password": PASSWORD}).status_code == 200
    browser_sock = connect(alice)
    phone_sock = connect(phone)

    assert alice.post("/logout").status_code == 200
    assert not browser_sock.is_connected()
    assert phone_sock.is_connected()
