"""Lifecycle notifications and the event bus that delivers them.

Lifecycle functions build ``Notification`` objects while they run and hand them
to the bus only after their transaction has committed. The bus delivers to each
sink on its own dispatcher thread; a sink failure is logged and never reaches
the caller of the lifecycle function.
"""

import json
import logging
import queue
import sqlite3
import threading
from pathlib import Path

from request_dispatch.core.timeutil import parse_dt
from request_dispatch.core.users import super_admin_ids
from request_dispatch.db.engine import connect
from request_dispatch.db.models import Notification

logger = logging.getLogger(__name__)

PM_ASSIGNED = "PM_ASSIGNED"
ENGINEER_ASSIGNED = "ENGINEER_ASSIGNED"
ENGINEER_ACCEPTED = "ENGINEER_ACCEPTED"
STATUS_REVIEW = "STATUS_REVIEW"
CLIENT_RATED = "CLIENT_RATED"
PROJECT_CLOSED = "PROJECT_CLOSED"
PROJECT_REOPENED = "PROJECT_REOPENED"
CLIENT_REOPEN_REQUEST = "CLIENT_REOPEN_REQUEST"
PROJECT_REQUEST = "PROJECT_REQUEST"

EVENT_TYPES = (
    PM_ASSIGNED,
    ENGINEER_ASSIGNED,
    ENGINEER_ACCEPTED,
    STATUS_REVIEW,
    CLIENT_RATED,
    PROJECT_CLOSED,
    PROJECT_REOPENED,
    CLIENT_REOPEN_REQUEST,
    PROJECT_REQUEST,
)

_STOP = object()


class EventBus:
    """Delivers notifications to sinks after the state change is committed.

    With ``background=True`` delivery happens on a daemon thread and
    ``publish`` returns immediately; ``drain`` waits for the queue to empty.
    With ``background=False`` sinks run inline, still isolated from errors.
    """

    def __init__(self, sinks: list | None = None, background: bool = True):
        self.sinks = list(sinks or [])
        self.background = background
        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def add_sink(self, sink):
        self.sinks.append(sink)

    def start(self):
        """Start the dispatcher thread."""
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="event-bus", daemon=True)
            self._thread.start()
        logger.info("Event bus started with %d sink(s)", len(self.sinks))

    def stop(self):
        """Deliver what is queued, then stop the dispatcher thread."""
        if self._thread and self._thread.is_alive():
            self._queue.put(_STOP)
            self._thread.join(timeout=10)
        logger.info("Event bus stopped")

    def publish(self, notifications: list[Notification]):
        for notification in notifications:
            if self.background:
                if not (self._thread and self._thread.is_alive()):
                    self.start()
                self._queue.put(notification)
            else:
                self._deliver(notification)

    def drain(self):
        """Block until every queued notification has been delivered."""
        self._queue.join()

    def _run(self):
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, notification: Notification):
        for sink in self.sinks:
            try:
                sink.deliver(notification)
            except Exception:
                logger.exception(
                    "Sink %s failed to deliver %s to %s",
                    type(sink).__name__, notification.type, notification.user_id,
                )


def publish(bus: EventBus | None, notifications: list[Notification]):
    """Hand committed notifications to the bus, if one is wired up."""
    if bus is None or not notifications:
        return
    try:
        bus.publish(notifications)
    except Exception:
        logger.exception("Failed to publish %d notification(s)", len(notifications))


# ── Sinks ─────────────────────────────────────────────────────────────────────


class StoreSink:
    """Persists notifications, one row per (user, type, request, task)."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def deliver(self, notification: Notification):
        db = connect(self.db_path)
        try:
            store_notification(db, notification)
        finally:
            db.close()


class LogSink:
    """Writes each notification to the log."""

    def deliver(self, notification: Notification):
        logger.info(
            "[%s] -> %s: %s (request=%s task=%s)",
            notification.type, notification.user_id, notification.title,
            notification.request_id, notification.task_id,
        )


# ── Building notifications ────────────────────────────────────────────────────


def for_user(
    user_id: str | None,
    event_type: str,
    title: str,
    body: str = "",
    request_id: str | None = None,
    task_id: str | None = None,
    **meta,
) -> list[Notification]:
    if not user_id:
        return []
    return [
        Notification(
            user_id=user_id,
            type=event_type,
            title=title,
            body=body,
            request_id=request_id,
            task_id=task_id,
            meta={k: v for k, v in meta.items() if v is not None},
        )
    ]


def for_super_admins(
    db: sqlite3.Connection,
    event_type: str,
    title: str,
    body: str = "",
    request_id: str | None = None,
    task_id: str | None = None,
    **meta,
) -> list[Notification]:
    """One notification per super-observer."""
    notifications = []
    for admin_id in super_admin_ids(db):
        notifications.extend(
            for_user(admin_id, event_type, title, body, request_id=request_id, task_id=task_id, **meta)
        )
    return notifications


# ── Persistence ───────────────────────────────────────────────────────────────


def store_notification(db: sqlite3.Connection, notification: Notification) -> bool:
    """Insert a notification unless its key already exists. Returns True if inserted."""
    result = db.execute(
        """INSERT OR IGNORE INTO notifications
               (user_id, type, title, body, request_id, task_id, meta)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            notification.user_id,
            notification.type,
            notification.title,
            notification.body,
            notification.request_id or "",
            notification.task_id or "",
            json.dumps(notification.meta, default=str),
        ),
    )
    db.commit()
    return result.rowcount > 0


def list_notifications(
    db: sqlite3.Connection,
    user_id: str,
    unread_only: bool = False,
) -> list[Notification]:
    query = "SELECT * FROM notifications WHERE user_id = ?"
    if unread_only:
        query += " AND read_at IS NULL"
    query += " ORDER BY id DESC"
    rows = db.execute(query, (user_id,)).fetchall()
    return [_row_to_notification(r) for r in rows]


def mark_read(db: sqlite3.Connection, notification_id: int) -> bool:
    result = db.execute(
        "UPDATE notifications SET read_at = datetime('now') WHERE id = ? AND read_at IS NULL",
        (notification_id,),
    )
    db.commit()
    return result.rowcount > 0


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        title=row["title"],
        body=row["body"],
        request_id=row["request_id"] or None,
        task_id=row["task_id"] or None,
        meta=json.loads(row["meta"] or "{}"),
        read_at=parse_dt(row["read_at"]),
        created_at=parse_dt(row["created_at"]),
    )
