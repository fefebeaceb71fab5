"""User accounts: operators (PMs, Engineers), super-observers and clients."""

import sqlite3

from request_dispatch.core.errors import InvalidStateError, NotFoundError
from request_dispatch.core.ids import slugify, unique_id
from request_dispatch.core.timeutil import parse_dt
from request_dispatch.db.models import ROLES, User


def create_user(
    db: sqlite3.Connection,
    name: str,
    role: str,
    email: str | None = None,
    user_id: str | None = None,
) -> User:
    """Register a new user."""
    if role not in ROLES:
        raise InvalidStateError(f"Unknown role: {role}")
    if user_id is None:
        user_id = unique_id(db, "users", slugify(name))

    db.execute(
        "INSERT INTO users (id, name, email, role) VALUES (?, ?, ?, ?)",
        (user_id, name, email, role),
    )
    db.commit()
    return get_user(db, user_id)


def get_user(db: sqlite3.Connection, user_id: str) -> User | None:
    """Get a user by ID."""
    row = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if not row:
        return None
    return row_to_user(row)


def require_user(db: sqlite3.Connection, user_id: str, role: str | None = None) -> User:
    """Get a user by ID, raising if it is missing or has the wrong role."""
    user = get_user(db, user_id)
    if not user:
        raise NotFoundError(f"User not found: {user_id}")
    if role and user.role != role:
        raise InvalidStateError(f"User '{user_id}' is not a {role}")
    return user


def list_users(
    db: sqlite3.Connection,
    role: str | None = None,
    online: bool | None = None,
) -> list[User]:
    """List users, optionally filtered by role and online flag."""
    query = "SELECT * FROM users WHERE 1=1"
    params: list = []

    if role:
        query += " AND role = ?"
        params.append(role)

    if online is not None:
        query += " AND online = ?"
        params.append(int(online))

    query += " ORDER BY role, active_assignment_count ASC, id ASC"
    rows = db.execute(query, params).fetchall()
    return [row_to_user(r) for r in rows]


def super_admin_ids(db: sqlite3.Connection) -> list[str]:
    rows = db.execute("SELECT id FROM users WHERE role = 'SuperAdmin' ORDER BY id").fetchall()
    return [r["id"] for r in rows]


def row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        role=row["role"],
        is_busy=bool(row["is_busy"]),
        active_assignment_count=row["active_assignment_count"],
        online=bool(row["online"]),
        last_active_at=parse_dt(row["last_active_at"]),
        last_assigned_at=parse_dt(row["last_assigned_at"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
