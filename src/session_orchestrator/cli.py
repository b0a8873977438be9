"""CLI entry point for the session orchestrator."""

import json
import logging
import os
import sys
from pathlib import Path

import click

from session_orchestrator.config import get_config
from session_orchestrator.core import feed as feed_mod
from session_orchestrator.core import projects as projects_mod
from session_orchestrator.core import sessions as sessions_mod
from session_orchestrator.core import status as status_mod
from session_orchestrator.core import tasks as tasks_mod
from session_orchestrator.db.engine import MigrationError, get_db
from session_orchestrator.db.models import ClaudeStatus, TaskMode, TaskStatus
from session_orchestrator.integrations import github
from session_orchestrator.integrations import transcript as transcript_mod
from session_orchestrator.integrations.git import GitError
from session_orchestrator.integrations.notify import Notifier
from session_orchestrator.integrations.terminal import TerminalError, TmuxTerminal

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    TaskStatus.PENDING: "○",
    TaskStatus.IN_PROGRESS: "●",
    TaskStatus.IN_REVIEW: "◐",
    TaskStatus.DONE: "✓",
    TaskStatus.ERROR: "✗",
}


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity",
)
def main(log_level):
    """sorc - orchestrate coding-agent sessions against a task queue"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("add")
@click.argument("name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--slack-channel", default=None, help="Slack channel for review notifications")
def project_add(name, repo_path, branch, slack_channel):
    """Register a repository as a project."""
    repo_path = os.path.abspath(repo_path)
    with _get_db() as db:
        try:
            project = projects_mod.create_project(db, name, repo_path, branch, slack_channel)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.default_branch}")


@project_group.command("list")
def project_list():
    """List projects."""
    with _get_db() as db:
        projects = projects_mod.list_projects(db)
        if not projects:
            click.echo("No projects found.")
            return
        for p in projects:
            click.echo(f"  {p.id}: {p.name} [{p.repo_path}]")


@project_group.command("remove")
@click.argument("project_id")
def project_remove(project_id):
    """Delete a project with all of its tasks."""
    with _get_db() as db:
        try:
            removed = projects_mod.delete_project(db, project_id)
        except ValueError as e:
            _fail(str(e))
        if not removed:
            _fail(f"Project not found: {project_id}")
        click.echo(f"Removed project: {project_id}")


@project_group.command("stats")
@click.argument("project_id")
def project_stats(project_id):
    """Show task counts, token usage, cost and time spent."""
    with _get_db() as db:
        if not projects_mod.get_project(db, project_id):
            _fail(f"Project not found: {project_id}")
        stats = projects_mod.project_stats(db, project_id)
        click.echo(f"Project: {project_id}")
        for status in TaskStatus:
            click.echo(f"  {status.value}: {stats.counts.get(status.value, 0)}")
        click.echo(f"  Tokens: {stats.input_tokens} in / {stats.output_tokens} out")
        click.echo(f"  Cost: ${stats.cost:.2f}")
        click.echo(f"  Time on completed tasks: {stats.completed_seconds / 60:.1f} min")


@project_group.command("export")
@click.argument("project_id")
@click.option("--output", "-o", default=None, type=click.Path(dir_okay=False), help="Output file")
def project_export(project_id, output):
    """Write a project's tasks and stats as JSON (default: <repo>/.sorc/tasks.json)."""
    with _get_db() as db:
        project = projects_mod.get_project(db, project_id)
        if not project:
            _fail(f"Project not found: {project_id}")
        tasks = tasks_mod.list_tasks(db, project_id=project_id)
        stats = projects_mod.project_stats(db, project_id)
        session_count = len(sessions_mod.list_sessions(db, project_id=project_id))

    export = {
        "project": project.name,
        "repo_path": project.repo_path,
        "exported_at": feed_mod.utcnow().isoformat(),
        "stats": {
            "counts": stats.counts,
            "total_tasks": stats.total,
            "completed_tasks": stats.counts.get(TaskStatus.DONE.value, 0),
            "total_sessions": session_count,
            "input_tokens": stats.input_tokens,
            "output_tokens": stats.output_tokens,
            "total_tokens": stats.input_tokens + stats.output_tokens,
            "cost": stats.cost,
            "completed_seconds": stats.completed_seconds,
        },
        "tasks": [_task_dict(t) for t in tasks],
    }

    path = Path(output) if output else Path(project.repo_path) / ".sorc" / "tasks.json"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(export, indent=2) + "\n")
    except OSError as e:
        _fail(f"Could not write {path}: {e}")
    click.echo(f"Exported {len(tasks)} tasks to {path}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", required=True, help="Project ID")
@click.option("--description", "-d", default="", help="Task prompt")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in TaskMode]),
    default=TaskMode.SUPERVISED.value,
    help="autonomous tasks are fed to idle sessions automatically",
)
def task_add(title, project, description, mode):
    """Queue a new task."""
    with _get_db() as db:
        try:
            task = tasks_mod.create_task(db, project, title, description, mode)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Mode: {task.mode}")
        click.echo(f"  Order: {task.sort_order}")


@task_group.command("list")
@click.option("--project", default=None, help="Project ID")
@click.option("--status", default=None, type=click.Choice([s.value for s in TaskStatus]))
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks in queue order."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            icon = STATUS_ICONS.get(task.status, "?")
            auto = " [auto]" if task.mode == TaskMode.AUTONOMOUS else ""
            pr = f" [{task.pr_url}]" if task.pr_url else ""
            click.echo(f"  {icon} #{task.sort_order} {task.id}: {task.title} ({task.status}){auto}{pr}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Mode: {task.mode}")
        click.echo(f"  Project: {task.project_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.session_id:
            click.echo(f"  Session: {task.session_id}")
        if task.pr_url:
            click.echo(f"  PR: {task.pr_url}")
        click.echo(f"  Tokens: {task.input_tokens} in / {task.output_tokens} out, ${task.cost:.2f}")
        for sub in task.subtasks:
            click.echo(f"    [{sub.status}] {sub.title}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    {e.created_at}: {e.event_type} {e.old_value or ''} -> {e.new_value or ''}")


@task_group.command("launch")
@click.argument("task_id")
@click.option("--terminal/--no-terminal", default=True, help="Open a tmux window running the agent")
def task_launch(task_id, terminal):
    """Start a pending task in a new worktree and agent session."""
    config = get_config()
    with _get_db() as db:
        try:
            session = sessions_mod.launch_task(
                db, config, task_id, terminal=TmuxTerminal() if terminal else None
            )
        except (ValueError, GitError, TerminalError, OSError) as e:
            _fail(f"Launch failed: {e}")
        click.echo(f"Launched task: {task_id}")
        click.echo(f"  Session: {session.id}")
        click.echo(f"  Branch: {session.branch_name}")
        click.echo(f"  Worktree: {session.worktree_path}")


@task_group.command("finish")
@click.argument("task_id")
def task_finish(task_id):
    """Confirm a reviewed task as done and tear down its session."""
    with _get_db() as db:
        try:
            task = sessions_mod.finish_task(db, task_id, terminal=TmuxTerminal())
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Completed task: {task.id}")


@task_group.command("error")
@click.argument("task_id")
def task_error(task_id):
    """Mark an in-progress task as failed."""
    with _get_db() as db:
        try:
            tasks_mod.mark_task_error(db, task_id)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Marked task as error: {task_id}")


@task_group.command("swap")
@click.argument("task_a")
@click.argument("task_b")
def task_swap(task_a, task_b):
    """Swap the queue positions of two tasks."""
    with _get_db() as db:
        try:
            a, b = tasks_mod.swap_sort_order(db, task_a, task_b)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Swapped: {a.id} is now #{a.sort_order}, {b.id} is now #{b.sort_order}")


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task and its subtasks."""
    with _get_db() as db:
        try:
            deleted = tasks_mod.delete_task(db, task_id)
        except ValueError as e:
            _fail(str(e))
        if not deleted:
            _fail(f"Task not found: {task_id}")
        click.echo(f"Deleted task: {task_id}")


# ── Subtask Commands ──────────────────────────────────────────────────────────


@main.group("subtask")
def subtask_group():
    """Manage the steps of a task."""
    pass


@subtask_group.command("add")
@click.argument("task_id")
@click.argument("title")
@click.option("--description", "-d", default="", help="Step prompt")
def subtask_add(task_id, title, description):
    """Append a step to a task."""
    with _get_db() as db:
        try:
            sub = tasks_mod.create_subtask(db, task_id, title, description)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Added step #{sub.sort_order} to {task_id}: {sub.title}")


@subtask_group.command("list")
@click.argument("task_id")
def subtask_list(task_id):
    """List the steps of a task."""
    with _get_db() as db:
        subs = tasks_mod.list_subtasks(db, task_id)
        if not subs:
            click.echo("No subtasks.")
            return
        for sub in subs:
            click.echo(f"  #{sub.sort_order} [{sub.status}] {sub.title}")


# ── Session Commands ──────────────────────────────────────────────────────────


@main.group("session")
def session_group():
    """Inspect and tear down agent sessions."""
    pass


@session_group.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include closed sessions")
def session_list(show_all):
    """List sessions."""
    with _get_db() as db:
        sessions = sessions_mod.list_sessions(db, active_only=not show_all)
        if not sessions:
            click.echo("No sessions found.")
            return
        for s in sessions:
            state = "closed" if s.closed_at else s.claude_status.value
            click.echo(f"  {s.id} [{state}] {s.branch_name} {s.status_message}")


@session_group.command("teardown")
@click.argument("session_id")
def session_teardown(session_id):
    """Close a session and force-remove its worktree (uncommitted changes are lost)."""
    with _get_db() as db:
        try:
            session = sessions_mod.teardown_session(db, session_id, terminal=TmuxTerminal())
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Closed session: {session.id}")
        click.echo(
            f"  {session.files_changed} files, +{session.lines_added}/-{session.lines_removed}"
        )


@session_group.command("focus")
@click.argument("session_id")
def session_focus(session_id):
    """Switch the terminal to a session's window."""
    with _get_db() as db:
        try:
            sessions_mod.focus_session(db, session_id, TmuxTerminal())
        except (ValueError, TerminalError) as e:
            _fail(str(e))


@main.command("feed-next")
@click.option("--session-id", required=True, help="Session to feed")
def feed_next(session_id):
    """Start the next queued autonomous task on a session."""
    with _get_db() as db:
        result = feed_mod.feed_next_task(
            db, session_id, feeder=sessions_mod.TerminalFeeder(TmuxTerminal())
        )
        if result.outcome == feed_mod.FeedOutcome.SESSION_CLOSED:
            _fail(f"Session not found or closed: {session_id}")
        click.echo(f"{result.outcome.value}: {result.task.id if result.task else '-'}")


# ── Status Reporting (one-shot transport) ─────────────────────────────────────


@main.command("session-update")
@click.option("--session-id", required=True, help="Session the report belongs to")
@click.option("--status", "state", default=None, type=click.Choice([s.value for s in ClaudeStatus]))
@click.option("--message", default=None, help="Status message")
@click.option("--input-tokens", default=0, type=int)
@click.option("--output-tokens", default=0, type=int)
@click.option("--cost", default=0.0, type=float)
@click.option("--pr-url", default=None, help="PR opened for the task; completes it")
@click.option("--detect-pr", is_flag=True, help="Look up a PR for the current branch with gh")
@click.option("--transcript-usage", is_flag=True, help="Charge token usage read from the agent transcript")
@click.option("--done", is_flag=True, help="Report the current task or step as finished")
def session_update(
    session_id, state, message, input_tokens, output_tokens, cost, pr_url, detect_pr, transcript_usage, done
):
    """Apply a status report for a session (run by agent hooks)."""
    config = get_config()
    notifier = Notifier.from_config(config)
    feeder = sessions_mod.TerminalFeeder(TmuxTerminal())

    with _get_db() as db:
        try:
            session = sessions_mod.require_active_session(db, session_id)

            if input_tokens or output_tokens or cost:
                status_mod.report_usage(db, session_id, input_tokens, output_tokens, cost)

            if transcript_usage:
                totals = transcript_mod.worktree_usage(session.worktree_path, config.claude_dir)
                if totals is not None:
                    status_mod.report_transcript_usage(
                        db, session_id, totals.input_tokens, totals.output_tokens
                    )

            current = tasks_mod.in_progress_task_for_session(db, session_id)
            if detect_pr and not pr_url and current:
                pr_url = _detect_pr(db, session_id, current.id, config.poll_timeout)

            if done or pr_url:
                result = status_mod.report_task_done(
                    db, session_id, summary=message or "", pr_url=pr_url,
                    notifier=notifier, feeder=feeder,
                )
                if result.task:
                    click.echo(f"Task {result.task.id}: {result.task.status}")
                if result.feed and result.feed.task:
                    click.echo(f"Fed: {result.feed.task.id} ({result.feed.outcome.value})")
            elif state:
                status_mod.report_status(
                    db, session_id, state, message, notifier=notifier, feeder=feeder
                )
        except ValueError as e:
            _fail(str(e))


def _detect_pr(db, session_id: str, task_id: str, timeout: float) -> str | None:
    try:
        url = github.pr_url_for_branch(os.getcwd(), timeout=timeout)
    except github.GitHubError as e:
        logger.warning("PR lookup failed: %s", e)
        return None
    if url and tasks_mod.pr_url_claimed(db, session_id, url, task_id):
        # The branch is shared with earlier tasks on this session.
        logger.info("Ignoring %s for task '%s': it belongs to an earlier task", url, task_id)
        return None
    return url


# ── Rate Limit Commands ───────────────────────────────────────────────────────


@main.group("rate-limit")
def rate_limit_group():
    """Inspect or clear the feed rate limit."""
    pass


@rate_limit_group.command("show")
def rate_limit_show():
    """Show the rate-limit gate and usage windows."""
    with _get_db() as db:
        state = feed_mod.get_rate_limit_state(db)
        paused = feed_mod.feeding_paused(db)
        click.echo(f"Feeding: {'paused' if paused else 'open'}")
        if state.is_rate_limited:
            click.echo(f"  Limit: {state.limit_type} until {state.reset_at}")
        if state.usage_5h_pct is not None:
            click.echo(f"  5h window: {state.usage_5h_pct:.0f}%")
        if state.usage_7d_pct is not None:
            click.echo(f"  7d window: {state.usage_7d_pct:.0f}%")


@rate_limit_group.command("clear")
def rate_limit_clear():
    """Lift the rate limit now."""
    with _get_db() as db:
        feed_mod.clear_rate_limit(db)
        click.echo("Rate limit cleared")


# ── Supervisor ────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--web-port", default=None, type=int, help="Also serve the read-only JSON API")
@click.option("--host", default="127.0.0.1", help="Host for the JSON API")
def serve(web_port, host):
    """Run the control loop, the status service and the pollers."""
    from session_orchestrator.core.control import ControlLoop
    from session_orchestrator.status.service import StatusService

    config = get_config()
    terminal = TmuxTerminal()
    try:
        loop = ControlLoop.from_config(config, terminal=terminal)
        # Migrate before anything else starts.
        loop.db
    except MigrationError as e:
        _fail(f"Store migration failed: {e}")

    service = StatusService(
        config.db_path,
        config.socket_path,
        notifier=Notifier.from_config(config),
        feeder=sessions_mod.TerminalFeeder(terminal),
        rate_limit_minutes=config.rate_limit_default_minutes,
    )
    try:
        service.start_in_thread()
    except RuntimeError as e:
        _fail(str(e))
    click.echo(f"Status service on {config.socket_path}")

    web_server = None
    if web_port:
        from session_orchestrator.web.app import start_server_thread

        web_server, _ = start_server_thread(host=host, port=web_port)
        click.echo(f"JSON API on http://{host}:{web_port}")

    try:
        loop.run()
    except KeyboardInterrupt:
        loop.stop()
    finally:
        service.stop()
        if web_server is not None:
            web_server.should_exit = True


@main.command("web")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def web_command(host, port):
    """Serve only the read-only JSON API."""
    from session_orchestrator.web.app import run_server

    click.echo(f"JSON API on http://{host}:{port}")
    run_server(host=host, port=port)


# ── MCP Bridge ────────────────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP bridge commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Run the agent-side MCP bridge (stdio transport)."""
    from session_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status.value,
        "mode": task.mode.value,
        "sort_order": task.sort_order,
        "project": task.project_id,
        "description": task.description,
        "session_id": task.session_id,
        "pr_url": task.pr_url,
        "input_tokens": task.input_tokens,
        "output_tokens": task.output_tokens,
        "cost": task.cost,
        "started_at": task.started_at.isoformat() if task.started_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


if __name__ == "__main__":
    main()
