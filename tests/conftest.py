import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import main
from database import ensure_indexes
from main import Services
from media import MediaStore
from realtime import Connection


class RecordingConnection(Connection):
    """In-memory connection that keeps every event it is sent."""

    def __init__(self, name):
        super().__init__(name)
        self.events = []
        self.closed = False

    def deliver(self, event, payload):
        self.events.append((event, payload))

    def close(self):
        self.closed = True

    def named(self, event):
        return [payload for name, payload in self.events if name == event]


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(auth, "PBKDF2_ROUNDS", 1)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["sparrow_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def media(tmp_path):
    return MediaStore(root=str(tmp_path / "media"), base_url="/media")


@pytest.fixture
def services(db, media):
    return Services(db, media)


@pytest.fixture
def client(services):
    previous = main.app.state.services
    main.app.state.services = services
    yield TestClient(main.app)
    main.app.state.services = previous


@pytest.fixture
def make_user(services):
    def _make(full_name, username=None, password="secret123"):
        email = f"{(username or full_name.split()[0]).lower()}@sparrow.io"
        user = services.auth.signup(full_name, email, password, username)
        return str(user["_id"])
    return _make


@pytest.fixture
def bearer():
    def _headers(user_id):
        return {"Authorization": f"Bearer {auth.issue_token(user_id)}"}
    return _headers


@pytest.fixture
def connect(services):
    def _connect(user_id, name=None):
        connection = RecordingConnection(name or f"conn-{user_id}")
        assert services.hub.authenticate(connection, auth.issue_token(user_id))
        return connection
    return _connect


@pytest.fixture
def recording():
    return RecordingConnection
