"""Shared fixtures for festpass tests."""

import io
import os
import socket
import threading
import time
from unittest.mock import patch

import pytest
from PIL import Image

from festpass import event_log
from festpass.adapters.object_storage import LocalObjectStorage
from festpass.adapters.sqlite_store import SqliteStore

TEST_SECRET = "test-secret"


# ---------------------------------------------------------------------------
# Auto-use fixtures: cleanup global state between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_store():
    """Reset global singletons after every test."""
    yield
    event_log._store = None
    from festpass.observability import reset_metrics
    reset_metrics()


# ---------------------------------------------------------------------------
# Store, storage and assets
# ---------------------------------------------------------------------------

@pytest.fixture
def db_path(tmp_path):
    """Fresh SQLite database for each test, wired into the facade."""
    path = tmp_path / "test_state.db"
    store = SqliteStore(path)
    event_log.configure(store)
    return path


@pytest.fixture
def store(tmp_path):
    """Return a fresh SqliteStore (not wired to the event_log facade)."""
    return SqliteStore(tmp_path / "contract_state.db")


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "objects", secret=TEST_SECRET,
                              base_url="http://testserver")


@pytest.fixture
def template_path(tmp_path):
    """A small dark template PNG, the way the real one looks."""
    path = tmp_path / "base_template.png"
    Image.new("RGB", (400, 600), (20, 16, 40)).save(path)
    return path


def png_bytes(size=(64, 80), color=(180, 120, 90)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def photo_bytes():
    return png_bytes()


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def person(n, **kw):
    """Participant dict with a unique, valid email."""
    data = {"name": f"Member {n}", "email": f"member{n}@college.edu"}
    data.update(kw)
    return data


def make_payload(events, *, email="asha@college.edu", name="Asha Rao", **kw):
    """Registration payload for *events*.

    Each entry is an event name (registrant alone) or a ``(name, roster)``
    pair where roster is a list of participant dicts.
    """
    selection = []
    for item in events:
        if isinstance(item, tuple):
            event, roster = item
            selection.append({"event": event, "participants": roster})
        else:
            selection.append({"event": item})
    payload = {"name": name, "email": email, "college": "City College", "events": selection}
    payload.update(kw)
    return payload


def contact(email="asha@college.edu", name="Asha Rao", **kw):
    data = {"name": name, "email": email}
    data.update(kw)
    return data


def cricket_team(email="asha@college.edu", size=11):
    return [contact(email)] + [person(i) for i in range(1, size)]


# ---------------------------------------------------------------------------
# Live server
# ---------------------------------------------------------------------------

@pytest.fixture
def live_server(db_path, storage):
    """Start a FastAPI/uvicorn server on a random port for testing.

    Operator auth is disabled; session tokens are still checked.
    """
    import uvicorn
    from festpass.api import create_app

    with patch.dict(os.environ, {"FESTPASS_AUTH_REQUIRED": "0"}):
        app = create_app(db_path=str(db_path), storage=storage, signing_secret=TEST_SECRET)

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]

        config = uvicorn.Config(app, host="127.0.0.1", port=port, log_level="error")
        server = uvicorn.Server(config)
        thread = threading.Thread(target=server.run, daemon=True)
        thread.start()

        deadline = time.time() + 10
        while not server.started and time.time() < deadline:
            time.sleep(0.05)

        yield f"http://127.0.0.1:{port}"

        server.should_exit = True
        thread.join(timeout=5)


# ---------------------------------------------------------------------------
# Marker registration and auto-tagging
# ---------------------------------------------------------------------------

def pytest_configure(config):
    config.addinivalue_line("markers", "integration: marks integration tests (live server)")


def pytest_collection_modifyitems(items):
    """Auto-mark tests that use the live_server fixture as integration."""
    for item in items:
        if "live_server" in item.fixturenames:
            item.add_marker(pytest.mark.integration)
