"""Claim engine: atomically select and reserve one operator.

A claim is a single ``UPDATE ... WHERE id = (SELECT ... LIMIT 1) RETURNING *``
run under ``BEGIN IMMEDIATE``. SQLite admits one writer at a time, so the
candidate is chosen and reserved under the same write lock and two callers can
never both reserve the last free operator.
"""

import logging
import sqlite3
from datetime import datetime

from request_dispatch.core.presence import PRESENCE_WINDOW, freshness_cutoff, reap_stale
from request_dispatch.core.timeutil import now as _now, to_db
from request_dispatch.core.users import row_to_user
from request_dispatch.db.engine import transaction
from request_dispatch.db.models import OPERATOR_ROLES, User

logger = logging.getLogger(__name__)

# Least loaded, then longest idle (never-assigned first: NULLs sort first in
# SQLite), then id for a stable tiebreak.
CLAIM_ORDER = "active_assignment_count ASC, last_assigned_at ASC, id ASC"


def _reserve(
    db: sqlite3.Connection,
    *,
    role: str | None,
    user_id: str | None,
    free_only: bool,
    cutoff: str,
    stamp: str,
) -> User | None:
    filters = ["online = 1", "last_active_at IS NOT NULL", "last_active_at >= :cutoff"]
    params: dict = {"cutoff": cutoff, "stamp": stamp}

    if role:
        filters.append("role = :role")
        params["role"] = role
    else:
        filters.append(f"role IN ({', '.join(repr(r) for r in OPERATOR_ROLES)})")

    if user_id:
        filters.append("id = :user_id")
        params["user_id"] = user_id

    if free_only:
        filters.append("is_busy = 0")

    sql = f"""UPDATE users
              SET is_busy = 1,
                  last_assigned_at = :stamp,
                  active_assignment_count = active_assignment_count + 1,
                  updated_at = datetime('now')
              WHERE id = (
                  SELECT id FROM users
                  WHERE {' AND '.join(filters)}
                  ORDER BY {CLAIM_ORDER}
                  LIMIT 1
              )
              RETURNING *"""

    with transaction(db, immediate=True):
        rows = db.execute(sql, params).fetchall()
    if not rows:
        return None
    return row_to_user(rows[0])


def claim_operator(
    db: sqlite3.Connection,
    role: str,
    prefer_free_first: bool = True,
    allow_busy_fallback: bool = True,
    window: float = PRESENCE_WINDOW,
    now: datetime | None = None,
) -> User | None:
    """Reserve the best online operator with ``role``.

    Free operators are tried first; when none is available and
    ``allow_busy_fallback`` is set, the least-loaded busy operator is taken
    instead. Returns the reserved user, or None if nobody eligible is online.
    """
    now = now or _now()
    reap_stale(db, window, now)
    cutoff = freshness_cutoff(window, now)
    stamp = to_db(now)

    user = None
    if prefer_free_first:
        user = _reserve(db, role=role, user_id=None, free_only=True, cutoff=cutoff, stamp=stamp)
    if user is None and (allow_busy_fallback or not prefer_free_first):
        user = _reserve(db, role=role, user_id=None, free_only=False, cutoff=cutoff, stamp=stamp)

    if user:
        logger.info(
            "Claimed %s %s (load now %d)", role, user.id, user.active_assignment_count
        )
    else:
        logger.info("No online %s available to claim", role)
    return user


def claim_specific_operator(
    db: sqlite3.Connection,
    user_id: str,
    role: str | None = None,
    prefer_free: bool = True,
    allow_busy_fallback: bool = False,
    window: float = PRESENCE_WINDOW,
    now: datetime | None = None,
) -> User | None:
    """Reserve one particular operator if it is online (and free, when preferred).

    With ``role`` the operator must also hold that role.
    """
    now = now or _now()
    reap_stale(db, window, now)
    cutoff = freshness_cutoff(window, now)
    stamp = to_db(now)

    user = None
    if prefer_free:
        user = _reserve(db, role=role, user_id=user_id, free_only=True, cutoff=cutoff, stamp=stamp)
    if user is None and (allow_busy_fallback or not prefer_free):
        user = _reserve(db, role=role, user_id=user_id, free_only=False, cutoff=cutoff, stamp=stamp)

    if user:
        logger.info("Claimed %s %s directly", user.role, user.id)
    return user


def free_operator_online(
    db: sqlite3.Connection,
    role: str,
    window: float = PRESENCE_WINDOW,
    now: datetime | None = None,
) -> bool:
    """True if some free operator with ``role`` is currently online."""
    row = db.execute(
        """SELECT 1 FROM users
           WHERE role = ? AND is_busy = 0 AND online = 1 AND last_active_at >= ?
           LIMIT 1""",
        (role, freshness_cutoff(window, now)),
    ).fetchone()
    return row is not None
