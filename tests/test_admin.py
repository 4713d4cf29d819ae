import pytest

from novachat import create_app

from conftest import ADMIN_SECRET

HEADERS = {"X-Admin-Secret": ADMIN_SECRET}


@pytest.fixture
def admin(app):
    return app.test_client()


def test_admin_requires_the_secret(admin):
    assert admin.get("/admin/stats").status_code == 401
    assert admin.get("/admin/stats", headers={"X-Admin-Secret": "guess"}).status_code == 401
    assert admin.get("/admin/stats", headers=HEADERS).status_code == 200


def test_admin_login_marks_the_session(admin):
    assert admin.post("/admin/login", json={"secret": "guess"}).status_code == 401
    assert admin.post("/admin/login", json={"secret": ADMIN_SECRET}).status_code == 200
    assert admin.get("/admin/users").status_code == 200
    admin.post("/admin/logout")
    assert admin.get("/admin/users").status_code == 401


def test_admin_disabled_without_secret(tmp_path):
    app = create_app({
        "TESTING": True,
        "DATABASE": str(tmp_path / "noadmin.db"),
        "UPLOAD_FOLDER": str(tmp_path / "up"),
        "ADMIN_SECRET": "",
    })
    client = app.test_client()
    assert client.get("/admin/stats", headers={"X-Admin-Secret": ""}).status_code == 403
    assert client.post("/admin/login", json={"secret": ""}).status_code == 403


def test_admin_listing_and_stats(admin, make_user):
    alice = make_user("alice")
    bob = make_user("bob")
    alice.post("/chats/get-or-create", json={"userId": bob.user_id})
    alice.post("/nexus/create", json={"title": "News", "handle": "daily-news"})

    stats = admin.get("/admin/stats", headers=HEADERS).get_json()["stats"]
    assert stats["users"] == 2
    assert stats["conversations"] == {"chat": 1, "nexus": 1, "nexphere": 0}

    users = admin.get("/admin/users?q=ali", headers=HEADERS).get_json()["users"]
    assert [u["username"] for u in users] == ["alice"]

    convs = admin.get("/admin/conversations?kind=nexus", headers=HEADERS).get_json()["conversations"]
    assert [(c["handle"], c["memberCount"]) for c in convs] == [("daily-news", 1)]


def test_admin_deletes_emit_like_owner_deletes(admin, make_user, socketio, app):
    alice = make_user("alice")
    bob = make_user("bob")
    cid = alice.post("/nexphere/create", json={"title": "Room", "handle": "the-room"}).get_json()["conversation"]["id"]
    bob.post(f"/nexphere/{cid}/join")
    mid = bob.post(f"/nexphere/{cid}/messages", json={"text": "spam"}).get_json()["message"]["id"]

    sock = socketio.test_client(app, flask_test_client=alice)
    sock.emit("join-chat", {"conversationId": cid})
    sock.get_received()

    assert admin.delete(f"/admin/messages/{mid}", headers=HEADERS).status_code == 200
    assert admin.delete(f"/admin/messages/{mid}", headers=HEADERS).status_code == 404
    assert admin.delete(f"/admin/conversations/{cid}", headers=HEADERS).status_code == 200

    names = [e["name"] for e in sock.get_received()]
    assert "nexphere:delete-message" in names
    assert "nexphere:deleted" in names
    assert alice.get(f"/nexphere/{cid}").status_code == 403


def test_admin_deletes_users(admin, make_user, app):
    alice = make_user("alice")
    assert admin.delete(f"/admin/users/{alice.user_id}", headers=HEADERS).status_code == 200
    assert alice.get("/api/me").status_code == 401
    assert admin.delete(f"/admin/users/{alice.user_id}", headers=HEADERS).status_code == 404


def test_admin_settings(admin):
    settings = admin.get("/admin/settings", headers=HEADERS).get_json()["settings"]
    assert settings == {"MAINTENANCE_MODE": "0", "REGISTRATION_ENABLED": "1"}
    resp = admin.post("/admin/settings", json={"REGISTRATION_ENABLED": False}, headers=HEADERS)
    assert resp.get_json()["settings"]["REGISTRATION_ENABLED"] == "0"
    assert admin.post("/admin/settings", json={"NOT_A_SETTING": 1}, headers=HEADERS).status_code == 400
