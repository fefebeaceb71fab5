"""Task management: the unit of work a PM hands to an engineer."""

import logging
import re
import sqlite3
from datetime import date, datetime, time

from request_dispatch.core import notify
from request_dispatch.core import requests as requests_mod
from request_dispatch.core import rooms as rooms_mod
from request_dispatch.core.errors import ForbiddenError, InvalidStateError, NotFoundError
from request_dispatch.core.ids import slugify, unique_id
from request_dispatch.core.timeutil import parse_dt, to_db
from request_dispatch.core.users import require_user
from request_dispatch.core.workload import adjust_workload
from request_dispatch.db.engine import transaction
from request_dispatch.db.models import TASK_STATUSES, Task

logger = logging.getLogger(__name__)

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")

READY_TO_RATE_NOTICE = (
    "---- Project has been submitted; type /rate and click send to rate the PM, "
    "Engineer, and their teamwork ----"
)


def normalize_deadline(value) -> datetime | None:
    """Coerce a deadline to a datetime; date-only values mean the end of that day."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.max)

    text = str(value).strip()
    try:
        if _DATE_ONLY.match(text):
            return datetime.combine(date.fromisoformat(text), time.max)
        return datetime.fromisoformat(text)
    except ValueError:
        raise InvalidStateError(f"Invalid deadline: {value!r}") from None


def create_task(
    db: sqlite3.Connection,
    request_id: str,
    actor_id: str,
    engineer_id: str,
    title: str,
    description: str = "",
    deadline=None,
    bus: notify.EventBus | None = None,
) -> Task:
    """The assigned PM creates the task and names its engineer.

    Workload is not reserved here; it is reserved when the engineer accepts.
    """
    request = requests_mod.require_request(db, request_id)
    if request.pm_id != actor_id:
        raise ForbiddenError("Only the assigned PM can create a task")
    if request.status == "Complete":
        raise InvalidStateError("Cannot create a task for a completed request")
    engineer = require_user(db, engineer_id, role="Engineer")
    requests_mod.check_single_engineer(request, engineer_id)
    due = normalize_deadline(deadline)

    with transaction(db):
        task_id = unique_id(db, "tasks", slugify(title))
        db.execute(
            """INSERT INTO tasks (id, request_id, pm_id, engineer_id, title, description, deadline)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (task_id, request_id, actor_id, engineer_id, title, description, to_db(due)),
        )
        requests_mod.set_engineer(db, request, engineer, actor_id)
        requests_mod.post_engineer_notice(db, request, engineer)
        requests_mod._log_event(db, request_id, "task_created", None, task_id, actor_id)

    logger.info("Task %s created for request %s (engineer %s)", task_id, request_id, engineer_id)
    notify.publish(
        bus,
        notify.for_user(
            engineer_id, notify.ENGINEER_ASSIGNED, "You've been assigned a project",
            f"'{request.title}' by {request.client_name}",
            request_id=request_id, task_id=task_id,
        )
        + notify.for_super_admins(
            db, notify.ENGINEER_ASSIGNED, "Engineer assigned",
            f"PM assigned an engineer for '{request.title}'.",
            request_id=request_id, task_id=task_id, engineer_id=engineer_id,
        ),
    )
    return get_task(db, task_id)


def accept_task(
    db: sqlite3.Connection,
    task_id: str,
    actor_id: str,
    bus: notify.EventBus | None = None,
) -> Task:
    """The engineer accepts the task, joins the room and takes on the workload.

    Accepting a task that is already in progress returns it unchanged.
    """
    task = require_task(db, task_id)
    if task.engineer_id != actor_id:
        raise ForbiddenError("Not your task")
    if task.status == "InProgress":
        return task
    if task.status == "Complete":
        raise InvalidStateError("Task is already complete")
    request = requests_mod.require_request(db, task.request_id)
    if request.status == "Complete":
        raise InvalidStateError("Request is complete; ask the PM to reopen it")

    with transaction(db):
        result = db.execute(
            """UPDATE tasks SET status = 'InProgress', updated_at = datetime('now')
               WHERE id = ? AND status = 'Pending'""",
            (task_id,),
        )
        if result.rowcount:
            if request.room_id:
                rooms_mod.add_member(db, request.room_id, actor_id)
                rooms_mod.post_notice(
                    db, request.room_id, "engineer_accepted",
                    "Engineer has accepted the task and will be joining the room.",
                )
            adjust_workload(db, actor_id, +1)
            db.execute(
                """UPDATE requests SET engineer_accepted_once = 1, updated_at = datetime('now')
                   WHERE id = ?""",
                (request.id,),
            )
            if request.status != "InProgress":
                requests_mod.set_status(db, request, "InProgress", actor_id)
            requests_mod._log_event(db, request.id, "task_accepted", None, task_id, actor_id)

    if not result.rowcount:
        return get_task(db, task_id)

    body = f"Engineer accepted '{request.title}'."
    notify.publish(
        bus,
        notify.for_user(
            request.pm_id, notify.ENGINEER_ACCEPTED, "Engineer accepted the task", body,
            request_id=request.id, task_id=task_id, room_id=request.room_id,
        )
        + notify.for_super_admins(
            db, notify.ENGINEER_ACCEPTED, "Engineer accepted", body,
            request_id=request.id, task_id=task_id, engineer_id=actor_id,
        ),
    )
    return get_task(db, task_id)


def complete_task(
    db: sqlite3.Connection,
    task_id: str,
    actor_id: str,
    bus: notify.EventBus | None = None,
) -> Task:
    """The engineer finishes the task; the request moves to Review."""
    task = require_task(db, task_id)
    if task.engineer_id != actor_id:
        raise ForbiddenError("Not your task")
    if task.status == "Complete":
        return task
    if task.status == "Pending":
        raise InvalidStateError("Task must be accepted before it can be completed")
    request = requests_mod.require_request(db, task.request_id)

    moved_to_review = request.status not in ("Review", "Complete")
    with transaction(db):
        db.execute(
            "UPDATE tasks SET status = 'Complete', updated_at = datetime('now') WHERE id = ?",
            (task_id,),
        )
        if moved_to_review:
            requests_mod.set_status(db, request, "Review", actor_id)
            if request.room_id:
                rooms_mod.post_notice(db, request.room_id, "ready_to_rate", READY_TO_RATE_NOTICE)
        requests_mod._log_event(db, request.id, "task_completed", None, task_id, actor_id)

    notify.publish(bus, requests_mod.review_notifications(db, request, task_id=task_id))
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def require_task(db: sqlite3.Connection, task_id: str) -> Task:
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError(f"Task not found: {task_id}")
    return task


def list_tasks(
    db: sqlite3.Connection,
    request_id: str | None = None,
    engineer_id: str | None = None,
    status: str | None = None,
) -> list[Task]:
    """List tasks with optional filters, newest first."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if request_id:
        query += " AND request_id = ?"
        params.append(request_id)

    if engineer_id:
        query += " AND engineer_id = ?"
        params.append(engineer_id)

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY created_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def summarize_engineer_tasks(db: sqlite3.Connection, engineer_id: str) -> dict:
    """Count an engineer's tasks per status."""
    rows = db.execute(
        "SELECT status, COUNT(*) AS n FROM tasks WHERE engineer_id = ? GROUP BY status",
        (engineer_id,),
    ).fetchall()
    counts = {status: 0 for status in TASK_STATUSES}
    for r in rows:
        counts[r["status"]] = r["n"]
    counts["total"] = sum(counts.values())
    return counts


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        request_id=row["request_id"],
        pm_id=row["pm_id"],
        engineer_id=row["engineer_id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        deadline=parse_dt(row["deadline"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
