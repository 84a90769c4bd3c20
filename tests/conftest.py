import sqlite3

import pytest

from app import create_app
from storage import EntryStore


@pytest.fixture
def app(tmp_path):
    """Create a test app backed by a temporary database."""
    application = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "DATABASE": str(tmp_path / "test.db"),
            "TIMER_POLL_INTERVAL": 0.05,
        }
    )
    yield application
    for timer in application.extensions["timers"].values():
        timer.cancel()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def store(app):
    """EntryStore on its own connection to the test database."""
    conn = sqlite3.connect(app.config["DATABASE"])
    conn.row_factory = sqlite3.Row
    yield EntryStore(conn)
    conn.close()


class AuthActions:
    def __init__(self, client):
        self._client = client

    def register(self, email="me@example.com", name="Me", password="secret1"):
        return self._client.post("/register", data={"email": email, "name": name, "password": password})

    def login(self, email="me@example.com", password="secret1"):
        return self._client.post("/login", data={"email": email, "password": password})

    def logout(self):
        return self._client.get("/logout")


@pytest.fixture
def auth(client):
    return AuthActions(client)


@pytest.fixture
def logged_in(auth):
    """Register and sign in the default user; returns its id."""
    auth.register()
    auth.login()
    return 1
