"""Read-only JSON API over the orchestrator's store."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from session_orchestrator.config import get_config
from session_orchestrator.core import feed as feed_mod
from session_orchestrator.core import projects as projects_mod
from session_orchestrator.core import sessions as sessions_mod
from session_orchestrator.core import tasks as tasks_mod
from session_orchestrator.db.engine import init_db


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _iso(value):
    return value.isoformat() if value else None


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        return JSONResponse([_project_dict(p) for p in projects_mod.list_projects(db)])
    finally:
        db.close()


async def api_project_tasks(request: Request):
    project_id = request.path_params["project_id"]
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        if not projects_mod.get_project(db, project_id):
            return JSONResponse({"error": "Project not found"}, status_code=404)
        try:
            tasks = tasks_mod.list_tasks(db, project_id, status=status_filter)
        except ValueError:
            return JSONResponse({"error": f"Unknown status: {status_filter}"}, status_code=400)
        return JSONResponse([_task_dict(t) for t in tasks])
    finally:
        db.close()


async def api_project_stats(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        if not projects_mod.get_project(db, project_id):
            return JSONResponse({"error": "Project not found"}, status_code=404)
        stats = projects_mod.project_stats(db, project_id)
        return JSONResponse({
            "project_id": project_id,
            "counts": stats.counts,
            "total": stats.total,
            "input_tokens": stats.input_tokens,
            "output_tokens": stats.output_tokens,
            "cost": round(stats.cost, 4),
            "completed_seconds": round(stats.completed_seconds, 1),
        })
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        td = _task_dict(task)
        td["subtasks"] = [_subtask_dict(s) for s in task.subtasks]
        td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
        return JSONResponse(td)
    finally:
        db.close()


async def api_list_sessions(request: Request):
    active_only = request.query_params.get("active") in ("1", "true", "yes")
    db = _get_db()
    try:
        sessions = sessions_mod.list_sessions(db, active_only=active_only)
        return JSONResponse([_session_dict(s) for s in sessions])
    finally:
        db.close()


async def api_rate_limit(request: Request):
    db = _get_db()
    try:
        state = feed_mod.get_rate_limit_state(db)
        return JSONResponse({
            "is_rate_limited": state.is_rate_limited,
            "feeding_paused": feed_mod.feeding_paused(db),
            "limit_type": state.limit_type,
            "reset_at": _iso(state.reset_at),
            "usage_5h_pct": state.usage_5h_pct,
            "usage_7d_pct": state.usage_7d_pct,
        })
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "repo_path": p.repo_path,
        "default_branch": p.default_branch,
        "slack_channel": p.slack_channel,
        "created_at": _iso(p.created_at),
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "project_id": t.project_id,
        "title": t.title,
        "description": t.description,
        "status": t.status.value,
        "mode": t.mode.value,
        "sort_order": t.sort_order,
        "session_id": t.session_id,
        "pr_url": t.pr_url,
        "input_tokens": t.input_tokens,
        "output_tokens": t.output_tokens,
        "cost": t.cost,
        "created_at": _iso(t.created_at),
        "started_at": _iso(t.started_at),
        "completed_at": _iso(t.completed_at),
    }


def _subtask_dict(s) -> dict:
    return {
        "id": s.id,
        "title": s.title,
        "status": s.status.value,
        "sort_order": s.sort_order,
    }


def _session_dict(s) -> dict:
    return {
        "id": s.id,
        "project_id": s.project_id,
        "branch_name": s.branch_name,
        "worktree_path": s.worktree_path,
        "claude_status": s.claude_status.value,
        "status_message": s.status_message,
        "files_changed": s.files_changed,
        "lines_added": s.lines_added,
        "lines_removed": s.lines_removed,
        "feed_pending": s.feed_pending,
        "created_at": _iso(s.created_at),
        "closed_at": _iso(s.closed_at),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}/tasks", api_project_tasks),
        Route("/api/projects/{project_id}/stats", api_project_stats),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/sessions", api_list_sessions),
        Route("/api/rate-limit", api_rate_limit),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port, log_level="warning")


def start_server_thread(host: str = "127.0.0.1", port: int = 8787):
    """Serve the API from a daemon thread. Returns the uvicorn server and its thread."""
    import threading

    server = uvicorn.Server(uvicorn.Config(create_app(), host=host, port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, name="web-api", daemon=True)
    thread.start()
    return server, thread
