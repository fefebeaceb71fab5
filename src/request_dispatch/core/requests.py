"""Client project requests and their lifecycle.

Status flows Pending -> InProgress -> Review -> Complete, and a manager can
reopen a completed request back to InProgress. Each operation runs in a single
transaction; notifications are published to the bus only after it commits.
"""

import logging
import sqlite3
from datetime import datetime

from request_dispatch.core import notify
from request_dispatch.core import rooms as rooms_mod
from request_dispatch.core.claims import claim_operator
from request_dispatch.core.errors import ForbiddenError, InvalidStateError, NotFoundError
from request_dispatch.core.ids import slugify, unique_id
from request_dispatch.core.presence import PRESENCE_WINDOW
from request_dispatch.core.timeutil import parse_dt
from request_dispatch.core.users import require_user
from request_dispatch.core.workload import adjust_workload
from request_dispatch.db.engine import transaction
from request_dispatch.db.models import Rating, Ratings, Request, RequestEvent, User

logger = logging.getLogger(__name__)

_REQUEST_SELECT = """
    SELECT r.*, COALESCE(rm.reopen_requested_by_client, 0) AS reopen_flag
    FROM requests r LEFT JOIN rooms rm ON rm.id = r.room_id
"""

STANDBY_NOTICE = (
    "All our PMs are currently assisting other clients. A PM will join this "
    "chat shortly. Thanks for your patience!"
)


# ── Creation and PM assignment ────────────────────────────────────────────────


def create_request(
    db: sqlite3.Connection,
    client_name: str,
    email: str,
    title: str,
    description: str = "",
    completion_date: str | None = None,
    client_id: str | None = None,
    bus: notify.EventBus | None = None,
    window: float = PRESENCE_WINDOW,
    now: datetime | None = None,
) -> Request:
    """Create a request, open its room and try to claim a PM for it.

    If no PM is online the request stays Pending without a manager and a
    standby notice is posted; the standby sweeper picks it up later.
    """
    if client_id:
        require_user(db, client_id)

    with transaction(db):
        request_id = unique_id(db, "requests", slugify(title))
        db.execute(
            """INSERT INTO requests
                   (id, client_name, email, title, description, completion_date, client_id)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (request_id, client_name, email, title, description, completion_date, client_id),
        )
        room = rooms_mod.open_room(
            db,
            request_id,
            f"{title} - {client_name}",
            members=[client_id] if client_id else [],
        )
        db.execute("UPDATE requests SET room_id = ? WHERE id = ?", (room.id, request_id))
        _log_event(db, request_id, "created", None, "Pending")

    notifications = notify.for_super_admins(
        db, notify.PROJECT_REQUEST, "New project request",
        f"'{title}' by {client_name}", request_id=request_id, email=email,
    )

    pm = claim_pm_for_request(db, request_id, bus=bus, window=window, now=now)
    if pm is None and get_request(db, request_id).pm_id is None:
        with transaction(db):
            rooms_mod.post_notice(db, room.id, "standby", STANDBY_NOTICE)
        logger.info("Request %s created on standby (no PM online)", request_id)

    notify.publish(bus, notifications)
    return get_request(db, request_id)


def claim_pm_for_request(
    db: sqlite3.Connection,
    request_id: str,
    bus: notify.EventBus | None = None,
    window: float = PRESENCE_WINDOW,
    now: datetime | None = None,
) -> User | None:
    """Claim the best online PM and attach it to a request still lacking one."""
    pm = claim_operator(db, "PM", window=window, now=now)
    if pm is None:
        return None
    if not attach_pm(db, request_id, pm, bus=bus):
        return None
    return pm


def attach_pm(
    db: sqlite3.Connection,
    request_id: str,
    pm: User,
    bus: notify.EventBus | None = None,
) -> bool:
    """Attach an already-claimed PM to a request if nobody beat us to it.

    The request row is only written while ``pm_id`` is still empty. When that
    compare-and-set loses, or the attach fails, the PM's claim is released again.
    """
    try:
        with transaction(db):
            result = db.execute(
                """UPDATE requests SET pm_id = ?, updated_at = datetime('now')
                   WHERE id = ? AND pm_id IS NULL AND status = 'Pending'""",
                (pm.id, request_id),
            )
            if result.rowcount == 0:
                adjust_workload(db, pm.id, -1)
                won = False
            else:
                request = get_request(db, request_id)
                if request.room_id:
                    rooms_mod.add_member(db, request.room_id, pm.id)
                    rooms_mod.post_notice(
                        db, request.room_id, "pm_assigned",
                        f"{pm.name} has been assigned as your PM. They'll join shortly.",
                    )
                _log_event(db, request_id, "pm_assigned", None, pm.id)
                won = True
    except Exception:
        with transaction(db):
            adjust_workload(db, pm.id, -1)
        logger.warning("Attaching %s to request %s failed; released claim", pm.id, request_id)
        raise

    if not won:
        logger.info("Request %s was already assigned; released claim on %s", request_id, pm.id)
        return False

    logger.info("Assigned PM %s to request %s", pm.id, request_id)
    notify.publish(bus, notify.for_user(
        pm.id, notify.PM_ASSIGNED, "New project assigned",
        f"'{request.title}' from {request.client_name}",
        request_id=request_id, room_id=request.room_id,
    ))
    return True


# ── Manager and engineer actions ──────────────────────────────────────────────


def assign_engineer(
    db: sqlite3.Connection,
    request_id: str,
    actor_id: str,
    engineer_id: str,
    bus: notify.EventBus | None = None,
) -> Request:
    """The assigned PM names the engineer for a request. Status is unchanged."""
    request = require_request(db, request_id)
    _require_pm(request, actor_id, "assign an engineer")
    if request.status == "Complete":
        raise InvalidStateError("Cannot assign an engineer to a completed request")
    engineer = require_user(db, engineer_id, role="Engineer")
    check_single_engineer(request, engineer_id)

    with transaction(db):
        set_engineer(db, request, engineer, actor_id)
        post_engineer_notice(db, request, engineer)

    notify.publish(bus, notify.for_user(
        engineer_id, notify.ENGINEER_ASSIGNED, "You've been assigned a project",
        f"'{request.title}' by {request.client_name}", request_id=request_id,
    ))
    return get_request(db, request_id)


def engineer_accepts_request(
    db: sqlite3.Connection,
    request_id: str,
    actor_id: str,
    bus: notify.EventBus | None = None,
) -> Request:
    """The assigned engineer acknowledges the request.

    Only the first call has any effect. Workload is not touched here; it is
    reserved when the engineer accepts the concrete task.
    """
    request = require_request(db, request_id)
    _require_engineer(request, actor_id)
    if request.engineer_accepted_once:
        return request

    with transaction(db):
        db.execute(
            """UPDATE requests SET engineer_accepted_once = 1, updated_at = datetime('now')
               WHERE id = ?""",
            (request_id,),
        )
        if request.room_id:
            rooms_mod.post_notice(
                db, request.room_id, "engineer_accepted",
                "Engineer has accepted the task and will be joining the room.",
            )
        _log_event(db, request_id, "engineer_accepted", None, actor_id, actor_id)

    body = f"Engineer accepted '{request.title}'"
    notify.publish(
        bus,
        notify.for_user(
            request.pm_id, notify.ENGINEER_ACCEPTED, "Engineer accepted the task", body,
            request_id=request_id, room_id=request.room_id,
        )
        + notify.for_super_admins(
            db, notify.ENGINEER_ACCEPTED, "Engineer accepted", body, request_id=request_id,
        ),
    )
    return get_request(db, request_id)


def mark_review(
    db: sqlite3.Connection,
    request_id: str,
    actor_id: str,
    bus: notify.EventBus | None = None,
) -> Request:
    """The assigned engineer hands the request over for review."""
    request = require_request(db, request_id)
    _require_engineer(request, actor_id)
    if request.status == "Complete":
        raise InvalidStateError("Request is already complete; ask the PM to reopen it")

    with transaction(db):
        set_status(db, request, "Review", actor_id)
        if request.room_id:
            rooms_mod.post_notice(
                db, request.room_id, "engineer_completed",
                "Engineer has completed the task. The project is ready for review.",
            )

    notify.publish(bus, review_notifications(db, request))
    return get_request(db, request_id)


def rate_request(
    db: sqlite3.Connection,
    request_id: str,
    pm_score: int | None = None,
    engineer_score: int | None = None,
    coordination_score: int | None = None,
    pm_comment: str | None = None,
    engineer_comment: str | None = None,
    coordination_comment: str | None = None,
    bus: notify.EventBus | None = None,
) -> Request:
    """Attach the client's ratings to a request under review."""
    request = require_request(db, request_id)
    if request.status != "Review":
        raise InvalidStateError("Request is not in review")
    for name, score in (
        ("pm", pm_score), ("engineer", engineer_score), ("coordination", coordination_score),
    ):
        _validate_score(name, score)

    with transaction(db):
        db.execute(
            """UPDATE requests
               SET pm_score = ?, pm_comment = ?,
                   engineer_score = ?, engineer_comment = ?,
                   coordination_score = ?, coordination_comment = ?,
                   updated_at = datetime('now')
               WHERE id = ?""",
            (
                pm_score, pm_comment,
                engineer_score, engineer_comment,
                coordination_score, coordination_comment,
                request_id,
            ),
        )
        _log_event(
            db, request_id, "rated", None,
            f"pm={pm_score} engineer={engineer_score} coordination={coordination_score}",
        )

    title, body = "Client submitted a rating", f"Rating received for '{request.title}'"
    notify.publish(
        bus,
        notify.for_user(request.pm_id, notify.CLIENT_RATED, title, body, request_id=request_id)
        + notify.for_user(request.engineer_id, notify.CLIENT_RATED, title, body, request_id=request_id)
        + notify.for_super_admins(db, notify.CLIENT_RATED, "Client rated", body, request_id=request_id),
    )
    return get_request(db, request_id)


def close_request(
    db: sqlite3.Connection,
    request_id: str,
    actor_id: str,
    bus: notify.EventBus | None = None,
) -> Request:
    """The assigned PM closes a rated request and releases both operators."""
    request = require_request(db, request_id)
    _require_pm(request, actor_id, "close")
    if request.status == "Complete":
        raise InvalidStateError("Request is already complete")
    if request.ratings.pm.score is None or request.ratings.engineer.score is None:
        raise InvalidStateError("Please ensure client ratings are submitted before closing.")

    with transaction(db):
        if request.room_id:
            rooms_mod.close_room(db, request.room_id)
        adjust_workload(db, request.pm_id, -1)
        adjust_workload(db, request.engineer_id, -1)
        set_status(db, request, "Complete", actor_id)
        _log_event(db, request_id, "closed", None, None, actor_id)

    logger.info("Request %s closed by %s", request_id, actor_id)
    body = f"'{request.title}' marked Complete"
    notify.publish(
        bus,
        notify.for_user(
            request.engineer_id, notify.PROJECT_CLOSED, "Project closed", body, request_id=request_id,
        )
        + notify.for_super_admins(
            db, notify.PROJECT_CLOSED, "Project completed", body, request_id=request_id,
        ),
    )
    return get_request(db, request_id)


def client_request_reopen(
    db: sqlite3.Connection,
    request_id: str,
    actor_id: str,
    bus: notify.EventBus | None = None,
) -> Request:
    """A client asks the PM to reopen a closed room. Repeated asks are no-ops."""
    request = require_request(db, request_id)
    if not request.room_id or not rooms_mod.get_room(db, request.room_id):
        raise NotFoundError(f"Room not found for request: {request_id}")
    if not (rooms_mod.is_member(db, request.room_id, actor_id) or request.client_id == actor_id):
        raise ForbiddenError("Forbidden: not a member of this room")
    if not rooms_mod.is_closed(db, request.room_id):
        raise InvalidStateError("Room is not closed")

    with transaction(db):
        flagged = rooms_mod.set_reopen_requested(db, request.room_id, actor_id)
        if flagged:
            _log_event(db, request_id, "reopen_requested", None, actor_id, actor_id)

    if flagged:
        notify.publish(bus, notify.for_user(
            request.pm_id, notify.CLIENT_REOPEN_REQUEST, "Client requested to reopen a room",
            f"'{request.title}' - {request.client_name}",
            request_id=request_id, room_id=request.room_id,
        ))
    return get_request(db, request_id)


def reopen_request(
    db: sqlite3.Connection,
    request_id: str,
    actor_id: str,
    bus: notify.EventBus | None = None,
    now: datetime | None = None,
) -> Request:
    """The assigned PM reopens a closed request and resumes work on it.

    Both operators take the request back onto their workload. Reopening a
    request whose room is already open does nothing.
    """
    request = require_request(db, request_id)
    _require_pm(request, actor_id, "reopen")
    if not request.room_id or not rooms_mod.get_room(db, request.room_id):
        raise NotFoundError(f"Room not found for request: {request_id}")
    if not rooms_mod.is_closed(db, request.room_id):
        return request

    with transaction(db):
        rooms_mod.reopen_room(db, request.room_id)
        adjust_workload(db, request.pm_id, +1, touch_assign_date=True, now=now)
        adjust_workload(db, request.engineer_id, +1, touch_assign_date=True, now=now)
        set_status(db, request, "InProgress", actor_id)
        _log_event(db, request_id, "reopened", None, None, actor_id)

    logger.info("Request %s reopened by %s", request_id, actor_id)
    body = f"'{request.title}' was reopened"
    notify.publish(
        bus,
        notify.for_user(
            request.engineer_id, notify.PROJECT_REOPENED, "Project reopened", body,
            request_id=request_id,
        )
        + notify.for_super_admins(
            db, notify.PROJECT_REOPENED, "Project reopened", body, request_id=request_id,
        ),
    )
    return get_request(db, request_id)


# ── Queries ───────────────────────────────────────────────────────────────────


def get_request(db: sqlite3.Connection, request_id: str) -> Request | None:
    """Get a request by ID."""
    row = db.execute(_REQUEST_SELECT + " WHERE r.id = ?", (request_id,)).fetchone()
    if not row:
        return None
    return _row_to_request(row)


def require_request(db: sqlite3.Connection, request_id: str) -> Request:
    request = get_request(db, request_id)
    if not request:
        raise NotFoundError(f"Request not found: {request_id}")
    return request


def list_requests(
    db: sqlite3.Connection,
    status: str | None = None,
    pm_id: str | None = None,
    engineer_id: str | None = None,
) -> list[Request]:
    """List requests with optional filters, oldest first."""
    query = _REQUEST_SELECT + " WHERE 1=1"
    params: list = []

    if status:
        query += " AND r.status = ?"
        params.append(status)

    if pm_id:
        query += " AND r.pm_id = ?"
        params.append(pm_id)

    if engineer_id:
        query += " AND r.engineer_id = ?"
        params.append(engineer_id)

    query += " ORDER BY r.created_at ASC, r.rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_request(r) for r in rows]


def list_standby_requests(db: sqlite3.Connection) -> list[Request]:
    """Pending requests that still have no PM, oldest first."""
    rows = db.execute(
        _REQUEST_SELECT
        + """ WHERE r.status = 'Pending' AND r.pm_id IS NULL AND r.room_id IS NOT NULL
              ORDER BY r.created_at ASC, r.rowid ASC"""
    ).fetchall()
    return [_row_to_request(r) for r in rows]


def get_request_events(db: sqlite3.Connection, request_id: str) -> list[RequestEvent]:
    """Get the transition history for a request."""
    rows = db.execute(
        "SELECT * FROM request_events WHERE request_id = ? ORDER BY id",
        (request_id,),
    ).fetchall()
    return [
        RequestEvent(
            id=r["id"],
            request_id=r["request_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            actor_id=r["actor_id"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


# ── Helpers shared with the task lifecycle ────────────────────────────────────


def set_status(db: sqlite3.Connection, request: Request, status: str, actor_id: str | None = None):
    """Write a status change and record it. Does not commit."""
    db.execute(
        "UPDATE requests SET status = ?, updated_at = datetime('now') WHERE id = ?",
        (status, request.id),
    )
    if status != request.status:
        _log_event(db, request.id, "status_changed", request.status, status, actor_id)


def set_engineer(db: sqlite3.Connection, request: Request, engineer: User, actor_id: str):
    """Record the request's engineer. Does not commit."""
    if request.engineer_id == engineer.id:
        return
    db.execute(
        "UPDATE requests SET engineer_id = ?, updated_at = datetime('now') WHERE id = ?",
        (engineer.id, request.id),
    )
    _log_event(db, request.id, "engineer_assigned", request.engineer_id, engineer.id, actor_id)


def post_engineer_notice(db: sqlite3.Connection, request: Request, engineer: User):
    if request.room_id:
        rooms_mod.post_notice(
            db, request.room_id, "pm_assigned_engineer",
            f"PM has assigned the project to an Engineer ({engineer.name}).",
        )


def check_single_engineer(request: Request, engineer_id: str):
    """Reject naming a second, different engineer for a request."""
    if request.engineer_id and request.engineer_id != engineer_id:
        raise InvalidStateError("Request already has a different engineer")


def _require_pm(request: Request, actor_id: str, action: str):
    if not request.pm_id or request.pm_id != actor_id:
        raise ForbiddenError(f"Only the assigned PM can {action}")


def _require_engineer(request: Request, actor_id: str):
    if not request.engineer_id or request.engineer_id != actor_id:
        raise ForbiddenError("Not your request")


def _validate_score(name: str, score):
    if score is None:
        return
    if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 5:
        raise InvalidStateError(f"{name} score must be an integer from 1 to 5")


def review_notifications(db: sqlite3.Connection, request: Request, task_id: str | None = None):
    return notify.for_user(
        request.pm_id, notify.STATUS_REVIEW, "Project moved to Review",
        f"'{request.title}' is ready for review",
        request_id=request.id, task_id=task_id, room_id=request.room_id,
    ) + notify.for_super_admins(
        db, notify.STATUS_REVIEW, "Project in Review",
        f"'{request.title}' moved to Review", request_id=request.id, task_id=task_id,
    )


def _log_event(
    db: sqlite3.Connection,
    request_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
    actor_id: str | None = None,
):
    db.execute(
        """INSERT INTO request_events (request_id, event_type, old_value, new_value, actor_id)
           VALUES (?, ?, ?, ?, ?)""",
        (request_id, event_type, old_value, new_value, actor_id),
    )


def _row_to_request(row: sqlite3.Row) -> Request:
    return Request(
        id=row["id"],
        client_name=row["client_name"],
        email=row["email"],
        title=row["title"],
        description=row["description"],
        completion_date=row["completion_date"],
        client_id=row["client_id"],
        status=row["status"],
        pm_id=row["pm_id"],
        engineer_id=row["engineer_id"],
        room_id=row["room_id"],
        engineer_accepted_once=bool(row["engineer_accepted_once"]),
        reopen_requested_by_client=bool(row["reopen_flag"]),
        ratings=Ratings(
            pm=Rating(row["pm_score"], row["pm_comment"]),
            engineer=Rating(row["engineer_score"], row["engineer_comment"]),
            coordination=Rating(row["coordination_score"], row["coordination_comment"]),
        ),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
