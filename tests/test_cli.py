"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from request_dispatch.cli import main


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        env = {
            "RD_DB_PATH": str(Path(tmp) / "test.db"),
            "RD_SLACK_CHANNEL": "",
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner()

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _ok(runner, args):
    result = runner.invoke(main, args)
    assert result.exit_code == 0, result.output
    return result


def _people(runner):
    _ok(runner, ["user", "add", "Pat Manager", "--role", "PM", "--id", "pm-a"])
    _ok(runner, ["user", "add", "Eve Engineer", "--role", "Engineer", "--id", "eng-a"])
    _ok(runner, ["user", "add", "Ada Admin", "--role", "SuperAdmin", "--id", "admin"])


class TestCLI:
    def test_help(self, cli_env):
        result = _ok(cli_env, ["--help"])
        assert "Request Dispatch" in result.output

    def test_user_add_and_list(self, cli_env):
        result = _ok(cli_env, ["user", "add", "Pat Manager", "--role", "PM"])
        assert "pat-manager" in result.output
        result = _ok(cli_env, ["user", "list"])
        assert "pat-manager [PM] load=0" in result.output

    def test_rejects_unknown_role(self, cli_env):
        result = cli_env.invoke(main, ["user", "add", "X", "--role", "Boss"])
        assert result.exit_code != 0

    def test_full_request_flow(self, cli_env):
        runner = cli_env
        _people(runner)
        _ok(runner, ["presence", "heartbeat", "pm-a"])

        result = _ok(runner, [
            "request", "create", "Website Redesign",
            "--client-name", "Acme", "--email", "ops@acme.test",
        ])
        assert "Created request: website-redesign" in result.output
        assert "PM: pm-a" in result.output

        result = _ok(runner, [
            "task", "create", "website-redesign", "Build it",
            "--engineer", "eng-a", "--as", "pm-a", "--deadline", "2026-05-01",
        ])
        assert "Created task: build-it" in result.output
        assert "2026-05-01T23:59:59.999999" in result.output

        assert "InProgress" in _ok(runner, ["task", "accept", "build-it", "--as", "eng-a"]).output
        assert "Complete" in _ok(runner, ["task", "complete", "build-it", "--as", "eng-a"]).output
        _ok(runner, ["request", "rate", "website-redesign", "--pm-score", "5", "--engineer-score", "4"])
        _ok(runner, ["request", "close", "website-redesign", "--as", "pm-a"])

        data = json.loads(_ok(runner, ["request", "show", "website-redesign", "--json"]).output)
        assert data["status"] == "Complete"
        assert data["ratings"]["pm"]["score"] == 5
        assert data["tasks"][0]["status"] == "Complete"

        users = json.loads(_ok(runner, ["user", "list", "--json"]).output)
        loads = {u["id"]: u["active_assignment_count"] for u in users}
        assert loads["pm-a"] == 0
        assert loads["eng-a"] == 0

        result = _ok(runner, ["notifications", "pm-a"])
        assert "PM_ASSIGNED" in result.output
        assert "STATUS_REVIEW" in result.output

    def test_errors_exit_nonzero(self, cli_env):
        runner = cli_env
        _people(runner)
        _ok(runner, ["presence", "heartbeat", "pm-a"])
        _ok(runner, ["request", "create", "Site", "--client-name", "Acme", "--email", "a@acme.test"])

        result = runner.invoke(main, ["request", "close", "site", "--as", "pm-a"])
        assert result.exit_code == 1
        assert "ratings" in result.output

        result = runner.invoke(main, ["request", "close", "site", "--as", "eng-a"])
        assert result.exit_code == 1
        assert "Only the assigned PM" in result.output

        result = runner.invoke(main, ["request", "show", "missing"])
        assert result.exit_code == 1

    def test_standby_flow(self, cli_env):
        runner = cli_env
        _people(runner)
        result = _ok(runner, ["request", "create", "Site", "--client-name", "Acme", "--email", "a@acme.test"])
        assert "standby" in result.output
        assert "site: Site (Acme)" in _ok(runner, ["standby", "list"]).output

        _ok(runner, ["presence", "heartbeat", "pm-a"])
        assert "No requests on standby." in _ok(runner, ["standby", "list"]).output
        assert "PM: pm-a" in _ok(runner, ["request", "show", "site"]).output

    def test_presence_reap(self, cli_env):
        result = _ok(cli_env, ["presence", "reap"])
        assert "Marked 0 user(s) offline" in result.output
