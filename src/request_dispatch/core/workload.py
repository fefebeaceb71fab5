"""Per-operator workload counter.

Every lifecycle transition that changes how much work an operator carries goes
through ``adjust_workload``. The count and the derived busy flag are written by
one statement, so concurrent deltas on the same user commute and the flag can
never disagree with the count it was computed from.
"""

import logging
import sqlite3
from datetime import datetime

from request_dispatch.core.timeutil import now as _now, to_db
from request_dispatch.core.users import row_to_user
from request_dispatch.db.models import User

logger = logging.getLogger(__name__)


def adjust_workload(
    db: sqlite3.Connection,
    user_id: str | None,
    delta: int,
    touch_assign_date: bool = False,
    now: datetime | None = None,
) -> User | None:
    """Apply ``delta`` to a user's active assignment count.

    The count is clamped at zero and ``is_busy`` is recomputed from the new
    count. With ``touch_assign_date`` and a positive delta, ``last_assigned_at``
    is set to ``now``. Does not commit; callers run this inside their own
    transaction. Returns the updated user, or None if it does not exist.
    """
    if not user_id:
        return None
    touch = bool(touch_assign_date and delta > 0)
    stamp = to_db(now or _now())

    rows = db.execute(
        """UPDATE users
           SET active_assignment_count = MAX(0, active_assignment_count + :delta),
               is_busy = (MAX(0, active_assignment_count + :delta) > 0),
               last_assigned_at = CASE WHEN :touch THEN :stamp ELSE last_assigned_at END,
               updated_at = datetime('now')
           WHERE id = :user_id
           RETURNING *""",
        {"delta": delta, "touch": int(touch), "stamp": stamp, "user_id": user_id},
    ).fetchall()
    if not rows:
        logger.warning("Workload adjustment for unknown user %s ignored", user_id)
        return None

    user = row_to_user(rows[0])
    logger.debug(
        "Workload of %s adjusted by %+d -> %d", user_id, delta, user.active_assignment_count
    )
    return user


def sync_busy_flag(db: sqlite3.Connection, user_id: str) -> bool:
    """Recompute one user's busy flag from its count. Returns True if it changed."""
    result = db.execute(
        """UPDATE users SET is_busy = (active_assignment_count > 0), updated_at = datetime('now')
           WHERE id = ? AND is_busy != (active_assignment_count > 0)""",
        (user_id,),
    )
    db.commit()
    return result.rowcount > 0


def reconcile_busy_flags(db: sqlite3.Connection) -> int:
    """Repair every user whose busy flag drifted from its count."""
    result = db.execute(
        """UPDATE users SET is_busy = (active_assignment_count > 0), updated_at = datetime('now')
           WHERE is_busy != (active_assignment_count > 0)"""
    )
    db.commit()
    if result.rowcount:
        logger.info("Reconciled busy flag for %d user(s)", result.rowcount)
    return result.rowcount
