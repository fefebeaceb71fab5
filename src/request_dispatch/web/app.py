"""Status API and presence endpoint for request dispatch."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from request_dispatch.config import Config, get_config
from request_dispatch.core import notify
from request_dispatch.core import presence as presence_mod
from request_dispatch.core import requests as requests_mod
from request_dispatch.core import rooms as rooms_mod
from request_dispatch.core import tasks as tasks_mod
from request_dispatch.core import users as users_mod
from request_dispatch.core.errors import ForbiddenError, InvalidStateError, NotFoundError
from request_dispatch.core.standby import StandbySweeper
from request_dispatch.db.engine import connect, init_db
from request_dispatch.integrations.slack import SlackSink

logger = logging.getLogger(__name__)


def _get_db(request: Request):
    return connect(request.app.state.config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_users(request: Request):
    role = request.query_params.get("role")
    db = _get_db(request)
    try:
        users = users_mod.list_users(db, role=role)
        window = request.app.state.config.presence_window
        return JSONResponse([user_dict(u, window) for u in users])
    finally:
        db.close()


async def api_list_requests(request: Request):
    status_filter = request.query_params.get("status")
    db = _get_db(request)
    try:
        items = requests_mod.list_requests(db, status=status_filter)
        return JSONResponse([request_dict(r) for r in items])
    finally:
        db.close()


async def api_get_request(request: Request):
    request_id = request.path_params["request_id"]
    db = _get_db(request)
    try:
        item = requests_mod.require_request(db, request_id)
        rd = request_dict(item)
        rd["events"] = [event_dict(e) for e in requests_mod.get_request_events(db, request_id)]
        rd["tasks"] = [task_dict(t) for t in tasks_mod.list_tasks(db, request_id=request_id)]
        if item.room_id:
            rd["notices"] = [
                {"kind": n.kind, "text": n.text, "created_at": _iso(n.created_at)}
                for n in rooms_mod.list_notices(db, item.room_id)
            ]
        return JSONResponse(rd)
    finally:
        db.close()


async def api_standby(request: Request):
    db = _get_db(request)
    try:
        return JSONResponse([request_dict(r) for r in requests_mod.list_standby_requests(db)])
    finally:
        db.close()


async def api_heartbeat(request: Request):
    user_id = request.path_params["user_id"]
    state = request.app.state
    db = _get_db(request)
    try:
        user = presence_mod.heartbeat(
            db, user_id, bus=state.bus, window=state.config.presence_window
        )
        if not user:
            raise NotFoundError(f"User not found: {user_id}")
        return JSONResponse(user_dict(user, state.config.presence_window))
    finally:
        db.close()


async def api_notifications(request: Request):
    user_id = request.path_params["user_id"]
    unread = request.query_params.get("unread") in ("1", "true")
    db = _get_db(request)
    try:
        users_mod.require_user(db, user_id)
        items = notify.list_notifications(db, user_id, unread_only=unread)
        return JSONResponse([notification_dict(n) for n in items])
    finally:
        db.close()


# ── Errors ────────────────────────────────────────────────────────────────────


async def _error(request: Request, exc: Exception, status_code: int):
    return JSONResponse({"error": str(exc)}, status_code=status_code)


async def not_found(request: Request, exc: NotFoundError):
    return await _error(request, exc, 404)


async def forbidden(request: Request, exc: ForbiddenError):
    return await _error(request, exc, 403)


async def invalid_state(request: Request, exc: InvalidStateError):
    return await _error(request, exc, 400)


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(dt):
    return dt.isoformat() if dt else None


def user_dict(u, window: float = presence_mod.PRESENCE_WINDOW) -> dict:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "role": u.role,
        "is_busy": u.is_busy,
        "active_assignment_count": u.active_assignment_count,
        "online": presence_mod.is_fresh(u, window),
        "last_active_at": _iso(u.last_active_at),
        "last_assigned_at": _iso(u.last_assigned_at),
    }


def request_dict(r) -> dict:
    return {
        "id": r.id,
        "title": r.title,
        "client_name": r.client_name,
        "email": r.email,
        "description": r.description,
        "completion_date": r.completion_date,
        "status": r.status,
        "pm_id": r.pm_id,
        "engineer_id": r.engineer_id,
        "room_id": r.room_id,
        "engineer_accepted_once": r.engineer_accepted_once,
        "reopen_requested_by_client": r.reopen_requested_by_client,
        "ratings": {
            name: {"score": rating.score, "comment": rating.comment}
            for name, rating in (
                ("pm", r.ratings.pm),
                ("engineer", r.ratings.engineer),
                ("coordination", r.ratings.coordination),
            )
        },
        "created_at": _iso(r.created_at),
        "updated_at": _iso(r.updated_at),
    }


def task_dict(t) -> dict:
    return {
        "id": t.id,
        "request_id": t.request_id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "pm_id": t.pm_id,
        "engineer_id": t.engineer_id,
        "deadline": _iso(t.deadline),
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "actor_id": e.actor_id,
        "created_at": _iso(e.created_at),
    }


def notification_dict(n) -> dict:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "body": n.body,
        "request_id": n.request_id,
        "task_id": n.task_id,
        "meta": n.meta,
        "read": n.read_at is not None,
        "created_at": _iso(n.created_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def build_bus(config: Config, background: bool = True) -> notify.EventBus:
    """Event bus with the store and log sinks, plus Slack when configured."""
    sinks = [notify.StoreSink(config.db_path), notify.LogSink()]
    if config.slack_bot_token and config.slack_channel:
        sinks.append(SlackSink(config.slack_bot_token, config.slack_channel))
    return notify.EventBus(sinks, background=background)


def create_app(config: Config | None = None, start_background: bool = True) -> Starlette:
    config = config or get_config()
    init_db(config.db_path).close()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        """Run the reaper, sweeper and event bus for the life of the server."""
        if not start_background:
            yield
            return
        reaper = presence_mod.PresenceReaper(
            config.db_path, config.presence_window, config.effective_reap_interval
        )
        sweeper = StandbySweeper(
            config.db_path, app.state.bus, config.presence_window, config.sweep_interval
        )
        app.state.bus.start()
        reaper.start()
        sweeper.start()
        try:
            yield
        finally:
            sweeper.stop()
            reaper.stop()
            app.state.bus.stop()

    routes = [
        Route("/api/users", api_list_users),
        Route("/api/users/{user_id}/notifications", api_notifications),
        Route("/api/requests", api_list_requests),
        Route("/api/requests/{request_id}", api_get_request),
        Route("/api/standby", api_standby),
        Route("/api/presence/{user_id}/heartbeat", api_heartbeat, methods=["POST"]),
    ]
    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={
            NotFoundError: not_found,
            ForbiddenError: forbidden,
            InvalidStateError: invalid_state,
        },
    )
    app.state.config = config
    app.state.bus = build_bus(config, background=start_background)
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, config: Config | None = None):
    app = create_app(config)
    logger.info("Serving request dispatch on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port)
