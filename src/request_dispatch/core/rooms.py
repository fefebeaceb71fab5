"""Chat rooms attached to requests.

Only the parts the lifecycle needs live here: membership, the closed flag that
gates chat writes, the client's reopen request, and inline system notices.
None of these functions commit; they run inside the caller's transaction.
"""

import sqlite3
from datetime import datetime

from request_dispatch.core.ids import unique_id
from request_dispatch.core.timeutil import now as _now, parse_dt, to_db
from request_dispatch.db.models import Room, RoomNotice


def open_room(
    db: sqlite3.Connection,
    request_id: str,
    title: str,
    members: list[str] | None = None,
) -> Room:
    """Create an open room for a request with the given members."""
    room_id = unique_id(db, "rooms", f"room-{request_id}")
    db.execute(
        "INSERT INTO rooms (id, request_id, title) VALUES (?, ?, ?)",
        (room_id, request_id, title),
    )
    for user_id in members or []:
        add_member(db, room_id, user_id)
    return get_room(db, room_id)


def get_room(db: sqlite3.Connection, room_id: str) -> Room | None:
    row = db.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
    if not row:
        return None
    room = _row_to_room(row)
    room.members = list_members(db, room_id)
    return room


def list_members(db: sqlite3.Connection, room_id: str) -> list[str]:
    rows = db.execute(
        "SELECT user_id FROM room_members WHERE room_id = ? ORDER BY user_id", (room_id,)
    ).fetchall()
    return [r["user_id"] for r in rows]


def add_member(db: sqlite3.Connection, room_id: str, user_id: str) -> None:
    db.execute(
        "INSERT OR IGNORE INTO room_members (room_id, user_id) VALUES (?, ?)",
        (room_id, user_id),
    )


def is_member(db: sqlite3.Connection, room_id: str, user_id: str) -> bool:
    row = db.execute(
        "SELECT 1 FROM room_members WHERE room_id = ? AND user_id = ?", (room_id, user_id)
    ).fetchone()
    return row is not None


def is_closed(db: sqlite3.Connection, room_id: str) -> bool:
    row = db.execute("SELECT is_closed FROM rooms WHERE id = ?", (room_id,)).fetchone()
    return bool(row and row["is_closed"])


def close_room(db: sqlite3.Connection, room_id: str) -> None:
    """Close the room and drop any outstanding reopen request."""
    db.execute(
        """UPDATE rooms
           SET is_closed = 1, reopen_requested_by_client = 0,
               reopen_requested_at = NULL, reopen_requested_by = NULL,
               updated_at = datetime('now')
           WHERE id = ?""",
        (room_id,),
    )


def reopen_room(db: sqlite3.Connection, room_id: str) -> None:
    db.execute(
        """UPDATE rooms
           SET is_closed = 0, reopen_requested_by_client = 0,
               reopen_requested_at = NULL, reopen_requested_by = NULL,
               updated_at = datetime('now')
           WHERE id = ?""",
        (room_id,),
    )


def set_reopen_requested(
    db: sqlite3.Connection,
    room_id: str,
    requested_by: str,
    now: datetime | None = None,
) -> bool:
    """Flag a client reopen request. Returns False if it was already flagged."""
    result = db.execute(
        """UPDATE rooms
           SET reopen_requested_by_client = 1, reopen_requested_at = ?,
               reopen_requested_by = ?, updated_at = datetime('now')
           WHERE id = ? AND reopen_requested_by_client = 0""",
        (to_db(now or _now()), requested_by, room_id),
    )
    return result.rowcount > 0


def post_notice(db: sqlite3.Connection, room_id: str, kind: str, text: str) -> None:
    """Post an inline system notice into the room."""
    db.execute(
        "INSERT INTO room_notices (room_id, kind, text) VALUES (?, ?, ?)",
        (room_id, kind, text),
    )


def list_notices(db: sqlite3.Connection, room_id: str) -> list[RoomNotice]:
    rows = db.execute(
        "SELECT * FROM room_notices WHERE room_id = ? ORDER BY id", (room_id,)
    ).fetchall()
    return [
        RoomNotice(
            id=r["id"],
            room_id=r["room_id"],
            kind=r["kind"],
            text=r["text"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _row_to_room(row: sqlite3.Row) -> Room:
    return Room(
        id=row["id"],
        request_id=row["request_id"],
        title=row["title"],
        is_closed=bool(row["is_closed"]),
        reopen_requested_by_client=bool(row["reopen_requested_by_client"]),
        reopen_requested_at=parse_dt(row["reopen_requested_at"]),
        reopen_requested_by=row["reopen_requested_by"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
