"""Tests for presence tracking and the stale-entry reaper."""

import time
from datetime import timedelta

from conftest import NOW, add_user
from request_dispatch.core import presence
from request_dispatch.core import users as users_mod


class TestHeartbeat:
    def test_marks_user_online(self, db):
        add_user(db, "pm-a", "PM")
        user = presence.heartbeat(db, "pm-a", now=NOW)
        assert user.online is True
        assert user.last_active_at == NOW

    def test_unknown_user_returns_none(self, db):
        assert presence.heartbeat(db, "nobody", now=NOW) is None

    def test_heartbeat_does_not_touch_workload(self, db):
        add_user(db, "eng-a", "Engineer", load=2)
        user = presence.heartbeat(db, "eng-a", now=NOW)
        assert user.active_assignment_count == 2
        assert user.is_busy is True


class TestIsOnline:
    def test_fresh_heartbeat_is_online(self, db):
        add_user(db, "pm-a", "PM")
        presence.heartbeat(db, "pm-a", now=NOW)
        assert presence.is_online(db, "pm-a", window=10, now=NOW + timedelta(seconds=10))

    def test_old_heartbeat_is_offline(self, db):
        add_user(db, "pm-a", "PM")
        presence.heartbeat(db, "pm-a", now=NOW)
        assert not presence.is_online(db, "pm-a", window=10, now=NOW + timedelta(seconds=11))

    def test_flag_without_timestamp_is_offline(self, db):
        add_user(db, "pm-a", "PM")
        db.execute("UPDATE users SET online = 1 WHERE id = 'pm-a'")
        db.commit()
        assert not presence.is_online(db, "pm-a", now=NOW)

    def test_unknown_user_is_offline(self, db):
        assert not presence.is_online(db, "nobody", now=NOW)


class TestReaper:
    def test_demotes_after_grace_period(self, db):
        add_user(db, "pm-a", "PM", online=True, last_active_at=NOW - timedelta(seconds=16))
        add_user(db, "pm-b", "PM", online=True, last_active_at=NOW - timedelta(seconds=14))
        assert presence.reap_stale(db, window=10, now=NOW) == 1
        assert users_mod.get_user(db, "pm-a").online is False
        assert users_mod.get_user(db, "pm-b").online is True

    def test_demotes_entries_without_timestamp(self, db):
        add_user(db, "pm-a", "PM")
        db.execute("UPDATE users SET online = 1 WHERE id = 'pm-a'")
        db.commit()
        assert presence.reap_stale(db, now=NOW) == 1

    def test_background_reaper_repairs_state(self, db, db_path):
        add_user(db, "pm-a", "PM", online=True, last_active_at=NOW - timedelta(days=3650))
        db.execute("UPDATE users SET is_busy = 1 WHERE id = 'pm-a'")
        db.commit()

        reaper = presence.PresenceReaper(db_path, window=10, poll_interval=0.05)
        reaper.start()
        try:
            deadline = time.time() + 5
            while time.time() < deadline:
                user = users_mod.get_user(db, "pm-a")
                if not user.online and not user.is_busy:
                    break
                time.sleep(0.05)
        finally:
            reaper.stop()

        user = users_mod.get_user(db, "pm-a")
        assert user.online is False
        assert user.is_busy is False
        assert not reaper.running
