"""CLI entry point for request dispatch."""

import functools
import json
import logging
import sys

import click

from request_dispatch.config import get_config
from request_dispatch.core import notify
from request_dispatch.core import presence as presence_mod
from request_dispatch.core import requests as requests_mod
from request_dispatch.core import standby as standby_mod
from request_dispatch.core import tasks as tasks_mod
from request_dispatch.core import users as users_mod
from request_dispatch.core.errors import DispatchError
from request_dispatch.core.workload import reconcile_busy_flags
from request_dispatch.db.engine import get_db
from request_dispatch.db.models import REQUEST_STATUSES, ROLES, TASK_STATUSES
from request_dispatch.web.app import build_bus, request_dict, task_dict, user_dict


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _bus():
    return build_bus(get_config(), background=False)


def _reports_errors(func):
    """Turn dispatch errors into a message on stderr and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DispatchError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    return wrapper


@click.group()
def main():
    """rd - Request Dispatch CLI"""
    pass


# ── User Commands ─────────────────────────────────────────────────────────────


@main.group("user")
def user_group():
    """Manage users."""
    pass


@user_group.command("add")
@click.argument("name")
@click.option("--role", type=click.Choice(ROLES), required=True, help="User role")
@click.option("--email", default=None, help="Email address")
@click.option("--id", "user_id", default=None, help="Explicit user ID (default: slug of name)")
@_reports_errors
def user_add(name, role, email, user_id):
    """Register a user."""
    with _get_db() as db:
        user = users_mod.create_user(db, name, role, email=email, user_id=user_id)
        click.echo(f"Created user: {user.id} ({user.role})")


@user_group.command("list")
@click.option("--role", type=click.Choice(ROLES), default=None, help="Filter by role")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def user_list(role, json_output):
    """List users with their presence and workload."""
    config = get_config()
    with _get_db() as db:
        users = users_mod.list_users(db, role=role)

        if json_output:
            click.echo(json.dumps([user_dict(u, config.presence_window) for u in users], indent=2))
            return

        if not users:
            click.echo("No users found.")
            return

        for u in users:
            online = "●" if presence_mod.is_fresh(u, config.presence_window) else "○"
            busy = " busy" if u.is_busy else ""
            click.echo(f"  {online} {u.id} [{u.role}] load={u.active_assignment_count}{busy}")


# ── Request Commands ──────────────────────────────────────────────────────────


@main.group("request")
def request_group():
    """Manage client requests."""
    pass


@request_group.command("create")
@click.argument("title")
@click.option("--client-name", required=True, help="Client display name")
@click.option("--email", required=True, help="Client email")
@click.option("--description", "-d", default="", help="Project description")
@click.option("--completion-date", default=None, help="Requested completion date")
@click.option("--client-id", default=None, help="Client user ID")
@_reports_errors
def request_create(title, client_name, email, description, completion_date, client_id):
    """Create a request and try to claim a PM for it."""
    config = get_config()
    with _get_db() as db:
        request = requests_mod.create_request(
            db, client_name, email, title, description,
            completion_date=completion_date, client_id=client_id,
            bus=_bus(), window=config.presence_window,
        )
        click.echo(f"Created request: {request.id}")
        if request.pm_id:
            click.echo(f"  PM: {request.pm_id}")
        else:
            click.echo("  No PM online; request is on standby.")


@request_group.command("show")
@click.argument("request_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@_reports_errors
def request_show(request_id, json_output):
    """Show request details and history."""
    with _get_db() as db:
        request = requests_mod.require_request(db, request_id)
        tasks = tasks_mod.list_tasks(db, request_id=request_id)

        if json_output:
            rd = request_dict(request)
            rd["tasks"] = [task_dict(t) for t in tasks]
            click.echo(json.dumps(rd, indent=2))
            return

        click.echo(f"Request: {request.id}")
        click.echo(f"  Title: {request.title}")
        click.echo(f"  Client: {request.client_name} <{request.email}>")
        click.echo(f"  Status: {request.status}")
        click.echo(f"  PM: {request.pm_id or '-'}")
        click.echo(f"  Engineer: {request.engineer_id or '-'}")
        if request.ratings.pm.score is not None:
            click.echo(
                f"  Ratings: pm={request.ratings.pm.score} "
                f"engineer={request.ratings.engineer.score} "
                f"coordination={request.ratings.coordination.score}"
            )
        for t in tasks:
            click.echo(f"  Task {t.id}: {t.title} ({t.status})")

        events = requests_mod.get_request_events(db, request_id)
        if events:
            click.echo("  History:")
            for e in events:
                ts = e.created_at.strftime("%Y-%m-%d %H:%M") if e.created_at else "?"
                change = f"{e.old_value} -> {e.new_value}" if e.old_value else (e.new_value or "")
                click.echo(f"    [{ts}] {e.event_type}: {change}")


@request_group.command("list")
@click.option("--status", type=click.Choice(REQUEST_STATUSES), default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def request_list(status, json_output):
    """List requests."""
    with _get_db() as db:
        items = requests_mod.list_requests(db, status=status)

        if json_output:
            click.echo(json.dumps([request_dict(r) for r in items], indent=2))
            return

        if not items:
            click.echo("No requests found.")
            return

        for r in items:
            click.echo(f"  {r.id}: {r.title} ({r.status}) pm={r.pm_id or '-'} eng={r.engineer_id or '-'}")


@request_group.command("assign-engineer")
@click.argument("request_id")
@click.argument("engineer_id")
@click.option("--as", "actor", required=True, help="Acting PM ID")
@_reports_errors
def request_assign_engineer(request_id, engineer_id, actor):
    """Name the engineer for a request."""
    with _get_db() as db:
        requests_mod.assign_engineer(db, request_id, actor, engineer_id, bus=_bus())
        click.echo(f"Engineer {engineer_id} assigned to {request_id}")


@request_group.command("accept")
@click.argument("request_id")
@click.option("--as", "actor", required=True, help="Acting engineer ID")
@_reports_errors
def request_accept(request_id, actor):
    """Engineer acknowledges a request."""
    with _get_db() as db:
        requests_mod.engineer_accepts_request(db, request_id, actor, bus=_bus())
        click.echo(f"Accepted: {request_id}")


@request_group.command("review")
@click.argument("request_id")
@click.option("--as", "actor", required=True, help="Acting engineer ID")
@_reports_errors
def request_review(request_id, actor):
    """Hand a request over for review."""
    with _get_db() as db:
        request = requests_mod.mark_review(db, request_id, actor, bus=_bus())
        click.echo(f"{request.id} is now {request.status}")


@request_group.command("rate")
@click.argument("request_id")
@click.option("--pm-score", type=click.IntRange(1, 5), default=None)
@click.option("--engineer-score", type=click.IntRange(1, 5), default=None)
@click.option("--coordination-score", type=click.IntRange(1, 5), default=None)
@click.option("--pm-comment", default=None)
@click.option("--engineer-comment", default=None)
@click.option("--coordination-comment", default=None)
@_reports_errors
def request_rate(request_id, pm_score, engineer_score, coordination_score,
                 pm_comment, engineer_comment, coordination_comment):
    """Record the client's ratings."""
    with _get_db() as db:
        requests_mod.rate_request(
            db, request_id,
            pm_score=pm_score, engineer_score=engineer_score,
            coordination_score=coordination_score,
            pm_comment=pm_comment, engineer_comment=engineer_comment,
            coordination_comment=coordination_comment,
            bus=_bus(),
        )
        click.echo(f"Rated: {request_id}")


@request_group.command("close")
@click.argument("request_id")
@click.option("--as", "actor", required=True, help="Acting PM ID")
@_reports_errors
def request_close(request_id, actor):
    """Close a rated request."""
    with _get_db() as db:
        requests_mod.close_request(db, request_id, actor, bus=_bus())
        click.echo(f"Closed: {request_id}")


@request_group.command("reopen-request")
@click.argument("request_id")
@click.option("--as", "actor", required=True, help="Acting client ID")
@_reports_errors
def request_reopen_request(request_id, actor):
    """Client asks the PM to reopen a closed request."""
    with _get_db() as db:
        requests_mod.client_request_reopen(db, request_id, actor, bus=_bus())
        click.echo(f"Reopen requested: {request_id}")


@request_group.command("reopen")
@click.argument("request_id")
@click.option("--as", "actor", required=True, help="Acting PM ID")
@_reports_errors
def request_reopen(request_id, actor):
    """Reopen a closed request."""
    with _get_db() as db:
        request = requests_mod.reopen_request(db, request_id, actor, bus=_bus())
        click.echo(f"{request.id} is now {request.status}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("create")
@click.argument("request_id")
@click.argument("title")
@click.option("--engineer", "engineer_id", required=True, help="Engineer user ID")
@click.option("--as", "actor", required=True, help="Acting PM ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--deadline", default=None, help="Deadline (YYYY-MM-DD or ISO timestamp)")
@_reports_errors
def task_create(request_id, title, engineer_id, actor, description, deadline):
    """Create a task for a request."""
    with _get_db() as db:
        task = tasks_mod.create_task(
            db, request_id, actor, engineer_id, title, description, deadline, bus=_bus()
        )
        click.echo(f"Created task: {task.id}")
        if task.deadline:
            click.echo(f"  Deadline: {task.deadline.isoformat()}")


@task_group.command("accept")
@click.argument("task_id")
@click.option("--as", "actor", required=True, help="Acting engineer ID")
@_reports_errors
def task_accept(task_id, actor):
    """Accept a task."""
    with _get_db() as db:
        task = tasks_mod.accept_task(db, task_id, actor, bus=_bus())
        click.echo(f"{task.id} is now {task.status}")


@task_group.command("complete")
@click.argument("task_id")
@click.option("--as", "actor", required=True, help="Acting engineer ID")
@_reports_errors
def task_complete(task_id, actor):
    """Complete a task."""
    with _get_db() as db:
        task = tasks_mod.complete_task(db, task_id, actor, bus=_bus())
        click.echo(f"{task.id} is now {task.status}")


@task_group.command("list")
@click.option("--request", "request_id", default=None, help="Filter by request")
@click.option("--engineer", "engineer_id", default=None, help="Filter by engineer")
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(request_id, engineer_id, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, request_id=request_id, engineer_id=engineer_id, status=status)

        if json_output:
            click.echo(json.dumps([task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {"Pending": "○", "InProgress": "●", "Complete": "✓"}
        for t in tasks:
            icon = status_icons.get(t.status, "?")
            due = f" due {t.deadline:%Y-%m-%d}" if t.deadline else ""
            click.echo(f"  {icon} {t.id}: {t.title} [{t.request_id}] -> {t.engineer_id}{due}")


# ── Presence and Standby Commands ─────────────────────────────────────────────


@main.group("presence")
def presence_group():
    """Operator presence."""
    pass


@presence_group.command("heartbeat")
@click.argument("user_id")
@_reports_errors
def presence_heartbeat(user_id):
    """Record a heartbeat for a user."""
    config = get_config()
    with _get_db() as db:
        user = presence_mod.heartbeat(db, user_id, bus=_bus(), window=config.presence_window)
        if not user:
            click.echo(f"User not found: {user_id}", err=True)
            sys.exit(1)
        click.echo(f"Heartbeat recorded for {user.id}")


@presence_group.command("reap")
def presence_reap():
    """Mark stale users offline and repair busy flags."""
    config = get_config()
    with _get_db() as db:
        reaped = presence_mod.reap_stale(db, config.presence_window)
        fixed = reconcile_busy_flags(db)
        click.echo(f"Marked {reaped} user(s) offline; repaired {fixed} busy flag(s).")


@main.group("standby")
def standby_group():
    """Requests waiting for a PM."""
    pass


@standby_group.command("list")
def standby_list():
    """List requests on standby."""
    with _get_db() as db:
        items = requests_mod.list_standby_requests(db)
        if not items:
            click.echo("No requests on standby.")
            return
        for r in items:
            click.echo(f"  {r.id}: {r.title} ({r.client_name})")


@standby_group.command("sweep")
def standby_sweep():
    """Try to claim a PM for every request on standby."""
    config = get_config()
    with _get_db() as db:
        assigned = standby_mod.assign_from_standby(db, bus=_bus(), window=config.presence_window)
        click.echo(f"Assigned {len(assigned)} request(s).")
        for request_id in assigned:
            click.echo(f"  {request_id}")


# ── Notifications ─────────────────────────────────────────────────────────────


@main.command("notifications")
@click.argument("user_id")
@click.option("--unread", is_flag=True, help="Only unread notifications")
@click.option("--mark-read", is_flag=True, help="Mark the listed notifications as read")
def notifications_list(user_id, unread, mark_read):
    """Show a user's notifications."""
    with _get_db() as db:
        items = notify.list_notifications(db, user_id, unread_only=unread)
        if not items:
            click.echo("No notifications.")
            return
        for n in items:
            marker = " " if n.read_at else "*"
            ref = f" [{n.request_id}]" if n.request_id else ""
            click.echo(f"  {marker} {n.type}: {n.title}{ref}")
            if mark_read:
                notify.mark_read(db, n.id)


# ── Server ────────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve(host, port):
    """Run the status API with the presence reaper and standby sweeper."""
    from request_dispatch.web.app import run_server

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    click.echo(f"Serving on http://{host}:{port}")
    run_server(host=host, port=port)


if __name__ == "__main__":
    main()
