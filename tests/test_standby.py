"""Tests for standby healing: requests created while no PM was online."""

import sqlite3
import time
from datetime import datetime, timedelta

import pytest

from conftest import NOW, add_user
from request_dispatch.core import notify
from request_dispatch.core import presence
from request_dispatch.core import requests as requests_mod
from request_dispatch.core import rooms as rooms_mod
from request_dispatch.core import standby
from request_dispatch.core import users as users_mod
from request_dispatch.core.timeutil import to_db


def _standby_request(db, bus, title):
    request = requests_mod.create_request(db, "Acme", "ops@acme.test", title, bus=bus, now=NOW)
    assert request.pm_id is None
    return request


@pytest.fixture
def offline_pm(db):
    add_user(db, "pm-a", "PM", online=False)


class TestSweep:
    def test_nothing_to_do(self, db, bus):
        assert standby.assign_from_standby(db, bus=bus, now=NOW) == []

    def test_no_pm_online_leaves_queue_alone(self, db, bus, offline_pm):
        _standby_request(db, bus, "First")
        assert standby.assign_from_standby(db, bus=bus, now=NOW) == []
        assert len(requests_mod.list_standby_requests(db)) == 1

    def test_assigns_oldest_first(self, db, bus, sink, offline_pm):
        first = _standby_request(db, bus, "First")
        second = _standby_request(db, bus, "Second")
        add_user(db, "pm-b", "PM", online=True)
        add_user(db, "pm-c", "PM", online=True, last_assigned_at=NOW - timedelta(days=1))

        later = NOW + timedelta(seconds=1)
        assert standby.assign_from_standby(db, bus=bus, now=later) == [first.id, second.id]
        # pm-b has never been assigned, so it goes first.
        assert requests_mod.get_request(db, first.id).pm_id == "pm-b"
        assert requests_mod.get_request(db, second.id).pm_id == "pm-c"
        assert requests_mod.list_standby_requests(db) == []
        assert sink.types_for("pm-b") == [notify.PM_ASSIGNED]

    def test_sweep_heals_after_pm_returns(self, db, bus, offline_pm):
        request = _standby_request(db, bus, "First")
        db.execute(
            "UPDATE users SET online = 1, last_active_at = ? WHERE id = 'pm-a'",
            (to_db(NOW),),
        )
        db.commit()
        assert standby.assign_from_standby(db, bus=bus, now=NOW) == [request.id]
        pm = users_mod.get_user(db, "pm-a")
        assert pm.active_assignment_count == 1
        assert pm.is_busy is True

    def test_failing_attach_does_not_grow_workload(self, db, bus, offline_pm, monkeypatch):
        request = _standby_request(db, bus, "First")
        db.execute(
            "UPDATE users SET online = 1, last_active_at = ? WHERE id = 'pm-a'",
            (to_db(NOW),),
        )
        db.commit()

        def broken_add_member(*args):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(rooms_mod, "add_member", broken_add_member)
        for _ in range(3):
            assert standby.assign_from_standby(db, bus=bus, now=NOW) == []

        pm = users_mod.get_user(db, "pm-a")
        assert pm.active_assignment_count == 0
        assert pm.is_busy is False
        assert requests_mod.get_request(db, request.id).pm_id is None


class TestHeartbeatHealing:
    def test_engineer_is_never_made_pm(self, db, bus, offline_pm):
        add_user(db, "eng-a", "Engineer", online=True)
        request = _standby_request(db, bus, "First")
        assert standby.assign_from_standby_for_pm(db, "eng-a", bus=bus, now=NOW) == []
        assert requests_mod.get_request(db, request.id).pm_id is None
        assert users_mod.get_user(db, "eng-a").active_assignment_count == 0

    def test_failing_attach_on_heartbeat_releases_claim(self, db, bus, offline_pm, monkeypatch):
        request = _standby_request(db, bus, "First")

        def broken_add_member(*args):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(rooms_mod, "add_member", broken_add_member)
        presence.heartbeat(db, "pm-a", bus=bus, now=NOW)
        assert users_mod.get_user(db, "pm-a").active_assignment_count == 0
        assert requests_mod.get_request(db, request.id).pm_id is None

    def test_pm_heartbeat_claims_standby_request(self, db, bus, sink, offline_pm):
        request = _standby_request(db, bus, "First")
        presence.heartbeat(db, "pm-a", bus=bus, now=NOW)
        request = requests_mod.get_request(db, request.id)
        assert request.pm_id == "pm-a"
        assert sink.types_for("pm-a") == [notify.PM_ASSIGNED]

    def test_engineer_heartbeat_does_not_assign(self, db, bus, offline_pm):
        add_user(db, "eng-a", "Engineer")
        request = _standby_request(db, bus, "First")
        presence.heartbeat(db, "eng-a", bus=bus, now=NOW)
        assert requests_mod.get_request(db, request.id).pm_id is None

    def test_busy_pm_defers_to_free_pm(self, db, bus, offline_pm):
        request = _standby_request(db, bus, "First")
        add_user(db, "pm-busy", "PM", load=2)
        add_user(db, "pm-free", "PM", online=True)
        presence.heartbeat(db, "pm-busy", bus=bus, now=NOW)
        assert requests_mod.get_request(db, request.id).pm_id == "pm-free"
        assert users_mod.get_user(db, "pm-busy").active_assignment_count == 2

    def test_busy_pm_takes_it_when_everyone_is_busy(self, db, bus, offline_pm):
        request = _standby_request(db, bus, "First")
        add_user(db, "pm-busy", "PM", load=2)
        presence.heartbeat(db, "pm-busy", bus=bus, now=NOW)
        assert requests_mod.get_request(db, request.id).pm_id == "pm-busy"
        assert users_mod.get_user(db, "pm-busy").active_assignment_count == 3


class TestStandbySweeper:
    def test_background_sweeper_assigns(self, db, db_path, bus, offline_pm):
        request = _standby_request(db, bus, "First")
        # Bring the PM online without the heartbeat's own standby retry.
        db.execute(
            "UPDATE users SET online = 1, last_active_at = ? WHERE id = 'pm-a'",
            (to_db(datetime.now()),),
        )
        db.commit()

        sweeper = standby.StandbySweeper(db_path, bus=bus, poll_interval=0.05)
        sweeper.start()
        try:
            deadline = time.time() + 5
            while time.time() < deadline:
                if requests_mod.get_request(db, request.id).pm_id:
                    break
                time.sleep(0.05)
        finally:
            sweeper.stop()

        assert requests_mod.get_request(db, request.id).pm_id == "pm-a"
