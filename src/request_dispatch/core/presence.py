"""Operator presence: heartbeats, freshness checks and the stale-entry reaper.

A user is online while heartbeats keep ``last_active_at`` within the presence
window. Disconnects never clear presence directly; the reaper demotes entries
that have been quiet for more than 1.5 windows, so short network blips do not
take an operator out of rotation.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

from request_dispatch.core.monitor import PollingMonitor
from request_dispatch.core.timeutil import now as _now, to_db
from request_dispatch.core.users import get_user
from request_dispatch.core.workload import reconcile_busy_flags
from request_dispatch.db.engine import connect
from request_dispatch.db.models import User

logger = logging.getLogger(__name__)

PRESENCE_WINDOW = 10.0
GRACE_FACTOR = 1.5


def heartbeat(
    db: sqlite3.Connection,
    user_id: str,
    bus=None,
    window: float = PRESENCE_WINDOW,
    now: datetime | None = None,
) -> User | None:
    """Record a heartbeat for a user.

    When the user is a PM, standby requests are retried for it right away.
    Best-effort: store failures are logged and None is returned.
    """
    now = now or _now()
    try:
        db.execute(
            "UPDATE users SET online = 1, last_active_at = ? WHERE id = ?",
            (to_db(now), user_id),
        )
        db.commit()
        user = get_user(db, user_id)
    except sqlite3.Error:
        logger.exception("Failed to record heartbeat for %s", user_id)
        return None

    if user and user.role == "PM":
        from request_dispatch.core.standby import assign_from_standby_for_pm

        try:
            assign_from_standby_for_pm(db, user_id, bus=bus, window=window, now=now)
        except Exception:
            logger.exception("Standby retry after heartbeat from %s failed", user_id)
    return user


def is_fresh(user: User, window: float = PRESENCE_WINDOW, now: datetime | None = None) -> bool:
    if not user.online or user.last_active_at is None:
        return False
    now = now or _now()
    return now - user.last_active_at <= timedelta(seconds=window)


def is_online(
    db: sqlite3.Connection,
    user_id: str,
    window: float = PRESENCE_WINDOW,
    now: datetime | None = None,
) -> bool:
    """True if the user is flagged online and was seen within the window."""
    user = get_user(db, user_id)
    if not user:
        return False
    return is_fresh(user, window, now)


def freshness_cutoff(window: float = PRESENCE_WINDOW, now: datetime | None = None) -> str:
    """Oldest ``last_active_at`` that still counts as online."""
    return to_db((now or _now()) - timedelta(seconds=window))


def reap_stale(
    db: sqlite3.Connection,
    window: float = PRESENCE_WINDOW,
    now: datetime | None = None,
) -> int:
    """Mark users offline whose last heartbeat is older than the grace period."""
    cutoff = to_db((now or _now()) - timedelta(seconds=window * GRACE_FACTOR))
    result = db.execute(
        """UPDATE users SET online = 0
           WHERE online = 1 AND (last_active_at IS NULL OR last_active_at < ?)""",
        (cutoff,),
    )
    db.commit()
    if result.rowcount:
        logger.info("Marked %d stale user(s) offline", result.rowcount)
    return result.rowcount


class PresenceReaper(PollingMonitor):
    """Background thread demoting stale presence and repairing busy flags."""

    name = "presence-reaper"

    def __init__(self, db_path: Path, window: float = PRESENCE_WINDOW, poll_interval: float | None = None):
        super().__init__(poll_interval if poll_interval is not None else max(window, 5.0))
        self.db_path = db_path
        self.window = window

    def tick(self):
        db = connect(self.db_path)
        try:
            reap_stale(db, self.window)
            reconcile_busy_flags(db)
        finally:
            db.close()
