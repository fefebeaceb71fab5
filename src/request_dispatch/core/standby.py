"""Standby sweeper: give PM-less requests a manager once one comes online."""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from request_dispatch.core import notify
from request_dispatch.core.claims import claim_operator, claim_specific_operator, free_operator_online
from request_dispatch.core.monitor import PollingMonitor
from request_dispatch.core.presence import PRESENCE_WINDOW
from request_dispatch.core.requests import attach_pm, list_standby_requests
from request_dispatch.db.engine import connect

logger = logging.getLogger(__name__)


def assign_from_standby(
    db: sqlite3.Connection,
    bus: notify.EventBus | None = None,
    window: float = PRESENCE_WINDOW,
    now: datetime | None = None,
) -> list[str]:
    """Claim a PM for each standby request, oldest first.

    Stops at the first request no PM could be claimed for. Each request is
    committed on its own; one that errors is logged and skipped. Returns the
    ids of the requests that got a PM.
    """
    assigned = []
    for request in list_standby_requests(db):
        try:
            pm = claim_operator(db, "PM", window=window, now=now)
            if pm is None:
                break
            if attach_pm(db, request.id, pm, bus=bus):
                assigned.append(request.id)
        except Exception:
            logger.exception("Standby assignment failed for request %s", request.id)

    if assigned:
        logger.info("Assigned %d standby request(s): %s", len(assigned), ", ".join(assigned))
    return assigned


def assign_from_standby_for_pm(
    db: sqlite3.Connection,
    pm_id: str,
    bus: notify.EventBus | None = None,
    window: float = PRESENCE_WINDOW,
    now: datetime | None = None,
) -> list[str]:
    """Offer the oldest standby request to a PM that just checked in.

    The PM gets it if it is free. Otherwise, when some other free PM is
    online, the regular sweep decides; if every PM is busy the least-loaded
    one takes it.
    """
    standby = list_standby_requests(db)
    if not standby:
        return []
    oldest = standby[0]

    pm = claim_specific_operator(
        db, pm_id, role="PM", prefer_free=True, allow_busy_fallback=False, window=window, now=now,
    )
    if pm is None:
        if free_operator_online(db, "PM", window=window, now=now):
            return assign_from_standby(db, bus=bus, window=window, now=now)
        pm = claim_operator(db, "PM", window=window, now=now)
        if pm is None:
            return []

    if attach_pm(db, oldest.id, pm, bus=bus):
        return [oldest.id]
    return []


class StandbySweeper(PollingMonitor):
    """Background thread retrying standby requests on a timer."""

    name = "standby-sweeper"

    def __init__(
        self,
        db_path: Path,
        bus: notify.EventBus | None = None,
        window: float = PRESENCE_WINDOW,
        poll_interval: float = 3.0,
    ):
        super().__init__(poll_interval)
        self.db_path = db_path
        self.bus = bus
        self.window = window

    def tick(self):
        db = connect(self.db_path)
        try:
            assign_from_standby(db, bus=self.bus, window=self.window)
        finally:
            db.close()
