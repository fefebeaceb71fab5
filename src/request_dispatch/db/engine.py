"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT,
    role TEXT NOT NULL CHECK (role IN ('PM', 'Engineer', 'SuperAdmin', 'Client')),
    is_busy INTEGER NOT NULL DEFAULT 0,
    active_assignment_count INTEGER NOT NULL DEFAULT 0 CHECK (active_assignment_count >= 0),
    online INTEGER NOT NULL DEFAULT 0,
    last_active_at TEXT,
    last_assigned_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_users_presence ON users (online, last_active_at);
CREATE INDEX IF NOT EXISTS idx_users_claim
    ON users (role, is_busy, active_assignment_count, last_assigned_at, id);

CREATE TABLE IF NOT EXISTS requests (
    id TEXT PRIMARY KEY,
    client_name TEXT NOT NULL,
    email TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    completion_date TEXT,
    client_id TEXT REFERENCES users(id),
    status TEXT DEFAULT 'Pending' CHECK (status IN ('Pending', 'InProgress', 'Review', 'Complete')),
    pm_id TEXT REFERENCES users(id),
    engineer_id TEXT REFERENCES users(id),
    room_id TEXT,
    engineer_accepted_once INTEGER NOT NULL DEFAULT 0,
    pm_score INTEGER CHECK (pm_score BETWEEN 1 AND 5),
    pm_comment TEXT,
    engineer_score INTEGER CHECK (engineer_score BETWEEN 1 AND 5),
    engineer_comment TEXT,
    coordination_score INTEGER CHECK (coordination_score BETWEEN 1 AND 5),
    coordination_comment TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_requests_standby ON requests (status, pm_id, created_at);

CREATE TABLE IF NOT EXISTS request_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id TEXT NOT NULL REFERENCES requests(id),
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    actor_id TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL REFERENCES requests(id),
    pm_id TEXT NOT NULL REFERENCES users(id),
    engineer_id TEXT NOT NULL REFERENCES users(id),
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT DEFAULT 'Pending' CHECK (status IN ('Pending', 'InProgress', 'Complete')),
    deadline TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS rooms (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL REFERENCES requests(id),
    title TEXT NOT NULL,
    is_closed INTEGER NOT NULL DEFAULT 0,
    reopen_requested_by_client INTEGER NOT NULL DEFAULT 0,
    reopen_requested_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS room_members (
    room_id TEXT NOT NULL REFERENCES rooms(id),
    user_id TEXT NOT NULL REFERENCES users(id),
    PRIMARY KEY (room_id, user_id)
);

CREATE TABLE IF NOT EXISTS room_notices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id TEXT NOT NULL REFERENCES rooms(id),
    kind TEXT NOT NULL,
    text TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    body TEXT DEFAULT '',
    request_id TEXT NOT NULL DEFAULT '',
    task_id TEXT NOT NULL DEFAULT '',
    meta TEXT DEFAULT '{}',
    read_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE (user_id, type, request_id, task_id)
);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE rooms ADD COLUMN reopen_requested_by TEXT",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists

    conn.commit()


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a connection to an already-initialized database."""
    conn = sqlite3.connect(str(db_path), timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = False):
    """Commit on success, roll back on any error.

    With ``immediate`` the write lock is taken up front, so a statement that
    reads and then writes cannot act on a snapshot another writer has changed.
    """
    if immediate and not conn.in_transaction:
        conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()
