"""Shared fixtures: a throwaway database, a synchronous bus and user helpers."""

import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from request_dispatch.core import notify
from request_dispatch.core import users as users_mod
from request_dispatch.core.timeutil import to_db
from request_dispatch.db.engine import init_db

NOW = datetime(2026, 3, 2, 9, 0, 0)


class RecordingSink:
    """Collects delivered notifications."""

    def __init__(self):
        self.delivered = []

    def deliver(self, notification):
        self.delivered.append(notification)

    def types_for(self, user_id):
        return [n.type for n in self.delivered if n.user_id == user_id]


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path):
    """Create a temporary SQLite database for testing."""
    conn = init_db(db_path)
    yield conn
    conn.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def bus(sink):
    return notify.EventBus([sink], background=False)


def add_user(db, user_id, role, online=False, last_active_at=None, load=0, last_assigned_at=None):
    """Insert a user directly in the given presence and workload state."""
    users_mod.create_user(db, user_id.title(), role, user_id=user_id)
    if online and last_active_at is None:
        last_active_at = NOW
    db.execute(
        """UPDATE users SET online = ?, last_active_at = ?, active_assignment_count = ?,
                  is_busy = ?, last_assigned_at = ?
           WHERE id = ?""",
        (int(online), to_db(last_active_at), load, int(load > 0), to_db(last_assigned_at), user_id),
    )
    db.commit()
    return users_mod.get_user(db, user_id)
