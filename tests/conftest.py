import pytest

from chat_db import connect, init_db
from conversations import ConversationGateway
from novachat import create_app
from presence import PresenceRegistry
from session_gate import SessionGate

ADMIN_SECRET = "let-me-in"
PASSWORD = "hunter22"


class ManualScheduler:
    """Collects scheduled callbacks; tests decide when they fire."""

    def __init__(self):
        self.pending = []

    def __call__(self, delay, callback):
        self.pending.append((delay, callback))

    def run_next(self):
        _, callback = self.pending.pop(0)
        callback()

    def run_all(self):
        pending, self.pending = self.pending, []
        for _, callback in pending:
            callback()


class RecordingBroadcaster:
    def __init__(self):
        self.events = []
        self.rooms = []

    def join_room(self, connection_id, conversation_id):
        self.rooms.append((connection_id, conversation_id))

    def leave_room(self, connection_id, conversation_id):
        self.rooms.remove((connection_id, conversation_id))

    def join_user_room(self, connection_id, user_id):
        pass

    def evict_user(self, user_id, conversation_id):
        self.events.append(("evict", conversation_id, "evict", user_id))

    def close_conversation(self, conversation_id):
        self.events.append(("close", conversation_id, "close", None))

    def broadcast(self, conversation_id, event, payload, skip=None):
        self.events.append(("room", conversation_id, event, payload))

    def broadcast_global(self, event, payload):
        self.events.append(("global", None, event, payload))

    def notify_users(self, user_ids, event, payload):
        for uid in sorted(set(user_ids)):
            self.events.append(("user", uid, event, payload))

    def send_to(self, connection_id, event, payload):
        self.events.append(("sid", connection_id, event, payload))

    def named(self, event):
        return [e for e in self.events if e[2] == event]

    def clear(self):
        self.events = []


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def recorder():
    return RecordingBroadcaster()


@pytest.fixture
def db(tmp_path):
    conn = connect(str(tmp_path / "unit.db"))
    init_db(conn)
    yield conn
    conn.close()


@pytest.fixture
def presence(recorder, scheduler):
    return PresenceRegistry(recorder, scheduler=scheduler)


@pytest.fixture
def gate(db):
    return SessionGate(lambda: db)


@pytest.fixture
def gateway(db, recorder, presence):
    return ConversationGateway(lambda: db, recorder, presence, default_page=50, max_page=200)


@pytest.fixture
def users(gate):
    """alice, bob and carol registered directly in the unit database."""
    return {
        name: gate.register(name, PASSWORD)
        for name in ("alice", "bob", "carol")
    }


@pytest.fixture
def app(tmp_path, scheduler):
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "DATABASE": str(tmp_path / "chat.db"),
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "ADMIN_SECRET": ADMIN_SECRET,
            "MAX_UPLOAD_MB": 1,
        },
        presence_scheduler=scheduler,
    )
    yield app


@pytest.fixture
def socketio(app):
    return app.extensions["socketio"]


@pytest.fixture
def make_user(app):
    """Register and log in a user; returns a Flask test client carrying its session."""

    def _make(username, password=PASSWORD):
        client = app.test_client()
        resp = client.post("/register", json={"username": username, "password": password})
        assert resp.status_code == 201, resp.get_json()
        resp = client.post("/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.get_json()
        client.user_id = resp.get_json()["user"]["id"]
        client.username = username
        return client

    return _make


def received(socket_client, name):
    """Payloads of every event called `name` received since the last call."""
    return [p["args"][0] for p in socket_client.get_received() if p["name"] == name]
