"""Session lifecycle: workspace + terminal window + session record."""

import logging
import shlex
import sqlite3
import uuid
from pathlib import Path

from session_orchestrator.core.projects import get_project
from session_orchestrator.core.tasks import (
    TransitionError,
    bind_task_to_session,
    get_task,
    open_tasks_for_session,
    slugify,
    transition_task,
)
from session_orchestrator.db.models import (
    ClaudeStatus,
    Project,
    Session,
    Subtask,
    Task,
    TaskMode,
    TaskStatus,
    parse_dt,
)
from session_orchestrator.integrations import git
from session_orchestrator.integrations import workspace
from session_orchestrator.integrations.terminal import TerminalError

logger = logging.getLogger(__name__)

AUTONOMOUS_SUFFIX = (
    "\n\nWork autonomously. Do not ask questions or wait for confirmation; "
    "make reasonable decisions and note them in your summary."
)


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        project_id=row["project_id"],
        branch_name=row["branch_name"],
        worktree_path=row["worktree_path"],
        terminal_target=row["terminal_target"],
        claude_status=ClaudeStatus(row["claude_status"]),
        status_message=row["status_message"],
        files_changed=row["files_changed"],
        lines_added=row["lines_added"],
        lines_removed=row["lines_removed"],
        feed_pending=bool(row["feed_pending"]),
        transcript_input_tokens=row["transcript_input_tokens"],
        transcript_output_tokens=row["transcript_output_tokens"],
        last_activity_at=parse_dt(row["last_activity_at"]),
        created_at=parse_dt(row["created_at"]),
        closed_at=parse_dt(row["closed_at"]),
    )


# ── Session records ─────────────────────────────────────────────────────────


def create_session(
    db: sqlite3.Connection,
    project_id: str,
    branch_name: str,
    worktree_path: str,
    session_id: str | None = None,
    terminal_target: str | None = None,
) -> Session:
    """Insert an active, idle session record."""
    session_id = session_id or str(uuid.uuid4())
    db.execute(
        """INSERT INTO sessions (id, project_id, branch_name, worktree_path, terminal_target)
           VALUES (?, ?, ?, ?, ?)""",
        (session_id, project_id, branch_name, worktree_path, terminal_target),
    )
    db.commit()
    return get_session(db, session_id)


def get_session(db: sqlite3.Connection, session_id: str) -> Session | None:
    row = db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def require_active_session(db: sqlite3.Connection, session_id: str) -> Session:
    """Resolve a session id supplied by a status report, rejecting unknown or closed ones."""
    session = get_session(db, session_id)
    if not session:
        raise ValueError(f"Session not found: {session_id}")
    if not session.is_active:
        raise ValueError(f"Session is closed: {session_id}")
    return session


def list_sessions(
    db: sqlite3.Connection,
    project_id: str | None = None,
    active_only: bool = False,
) -> list[Session]:
    query = "SELECT * FROM sessions WHERE 1 = 1"
    params: list = []
    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)
    if active_only:
        query += " AND closed_at IS NULL"
    query += " ORDER BY created_at DESC"
    return [_row_to_session(r) for r in db.execute(query, params).fetchall()]


def update_session_status(
    db: sqlite3.Connection,
    session_id: str,
    status: ClaudeStatus | str,
    message: str | None = None,
) -> Session | None:
    """Set the agent-reported status. A None message keeps the current one."""
    status = ClaudeStatus(status)
    db.execute(
        """UPDATE sessions SET claude_status = ?, status_message = COALESCE(?, status_message),
                  last_activity_at = datetime('now')
           WHERE id = ?""",
        (status.value, message, session_id),
    )
    db.commit()
    return get_session(db, session_id)


def set_feed_pending(db: sqlite3.Connection, session_id: str, pending: bool):
    db.execute(
        "UPDATE sessions SET feed_pending = ? WHERE id = ?", (int(pending), session_id)
    )
    db.commit()


def set_transcript_watermark(db: sqlite3.Connection, session_id: str, input_tokens: int, output_tokens: int):
    db.execute(
        """UPDATE sessions SET transcript_input_tokens = ?, transcript_output_tokens = ?
           WHERE id = ?""",
        (input_tokens, output_tokens, session_id),
    )
    db.commit()


def set_terminal_target(db: sqlite3.Connection, session_id: str, target: str | None):
    db.execute("UPDATE sessions SET terminal_target = ? WHERE id = ?", (target, session_id))
    db.commit()


def close_session(
    db: sqlite3.Connection,
    session_id: str,
    stat: git.DiffStat | None = None,
) -> Session | None:
    """Mark a session closed, recording its final diff statistics."""
    stat = stat or git.DiffStat()
    db.execute(
        """UPDATE sessions SET closed_at = COALESCE(closed_at, datetime('now')),
                  files_changed = ?, lines_added = ?, lines_removed = ?,
                  claude_status = 'idle', feed_pending = 0
           WHERE id = ?""",
        (stat.files_changed, stat.lines_added, stat.lines_removed, session_id),
    )
    db.commit()
    return get_session(db, session_id)


# ── Prompt construction ──────────────────────────────────────────────────────


def generate_branch_name(title: str) -> str:
    slug = slugify(title)[:40].strip("-") or "task"
    return f"task/{slug}-{uuid.uuid4().hex[:8]}"


def completion_instructions(default_branch: str) -> str:
    return (
        "\n\n## When you are done\n"
        f"Commit your work, push the branch and open a pull request against `{default_branch}`. "
        "Then call the `task_done` tool with a short summary and the pull request URL."
    )


def build_task_prompt(task: Task, default_branch: str = "main", subtask: Subtask | None = None) -> str:
    """Prompt handed to the agent for a task, or for one step of it."""
    if subtask:
        parts = [f"# {task.title}: {subtask.title}"]
        if subtask.description:
            parts.append(subtask.description)
        parts.append("Complete only this step, then call the `task_done` tool with a short summary.")
        prompt = "\n\n".join(parts)
    else:
        prompt = f"# {task.title}"
        if task.description:
            prompt += f"\n\n{task.description}"
        prompt += completion_instructions(default_branch)

    if task.mode == TaskMode.AUTONOMOUS:
        prompt += AUTONOMOUS_SUFFIX
    return prompt


def initial_prompt(task: Task, project: Project) -> str:
    current = next((s for s in task.subtasks if s.status == "in_progress"), None)
    if current is None:
        current = next((s for s in task.subtasks if s.status == "pending"), None)
    return build_task_prompt(task, project.default_branch, current)


def agent_command_line(agent_command: str, prompt: str) -> str:
    return f"{agent_command} {shlex.quote(prompt)}"


# ── Launch / teardown ────────────────────────────────────────────────────────


def _base_ref(repo_path: str, default_branch: str) -> str:
    if git.fetch(repo_path) and git.ref_exists(repo_path, f"refs/remotes/origin/{default_branch}"):
        return f"origin/{default_branch}"
    return default_branch


def launch_task(db: sqlite3.Connection, config, task_id: str, terminal=None) -> Session:
    """Start a pending task in a fresh worktree and terminal window.

    Every external step runs before the task is bound, so a failure
    leaves the task pending and removes whatever was already created.
    """
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if task.status != TaskStatus.PENDING:
        raise TransitionError(f"Task '{task_id}' is {task.status}, only pending tasks can launch")
    project = get_project(db, task.project_id)
    if not project:
        raise ValueError(f"Project not found: {task.project_id}")

    session_id = str(uuid.uuid4())
    branch = generate_branch_name(task.title)
    worktree_path = Path(config.worktree_dir) / project.id / branch.replace("/", "-")

    git.worktree_add(
        project.repo_path, worktree_path, branch, _base_ref(project.repo_path, project.default_branch)
    )
    logger.info("Created worktree %s on %s for task '%s'", worktree_path, branch, task.id)

    session = None
    target = None
    try:
        workspace.provision(
            worktree_path,
            session_id,
            Path(config.config_dir),
            project.id,
            Path(project.repo_path),
            Path(config.socket_path),
        )
        session = create_session(db, project.id, branch, str(worktree_path), session_id=session_id)

        if terminal is not None:
            command = agent_command_line(config.agent_command, initial_prompt(task, project))
            target = terminal.open_window(task.id[:30], worktree_path, command=command)
            set_terminal_target(db, session_id, target)

        bind_task_to_session(db, task.id, session_id)
        update_session_status(db, session_id, ClaudeStatus.WORKING, f"Starting: {task.title}")
    except Exception:
        logger.exception("Launch of task '%s' failed, cleaning up", task.id)
        if target is not None:
            try:
                terminal.close_window(target)
            except TerminalError:
                logger.warning("Could not close terminal window %s", target)
        if session is not None:
            close_session(db, session_id)
        try:
            git.worktree_remove(project.repo_path, worktree_path, force=True)
        except git.GitError:
            logger.warning("Could not remove worktree %s", worktree_path)
        raise

    logger.info("Launched session %s for task '%s'", session_id, task.id)
    return get_session(db, session_id)


def _capture_diff_stat(project: Project | None, session: Session) -> git.DiffStat:
    if not project or not Path(session.worktree_path).exists():
        return git.DiffStat()
    for base in (f"origin/{project.default_branch}", project.default_branch):
        if git.ref_exists(session.worktree_path, base):
            try:
                return git.diff_stat(session.worktree_path, base)
            except git.GitError as e:
                logger.warning("Diff stats for session %s failed: %s", session.id, e)
                break
    return git.DiffStat()


def teardown_session(db: sqlite3.Connection, session_id: str, terminal=None) -> Session:
    """Capture diff stats, close the window, force-remove the worktree, close the record.

    The worktree is removed with --force: uncommitted work in it is lost.
    """
    session = get_session(db, session_id)
    if not session:
        raise ValueError(f"Session not found: {session_id}")
    if not session.is_active:
        return session

    project = get_project(db, session.project_id)
    stat = _capture_diff_stat(project, session)

    if terminal is not None and session.terminal_target:
        try:
            terminal.close_window(session.terminal_target)
        except TerminalError as e:
            logger.warning("Could not close terminal for session %s: %s", session_id, e)

    if project and Path(session.worktree_path).exists():
        try:
            git.worktree_remove(project.repo_path, session.worktree_path, force=True)
        except git.GitError as e:
            logger.warning("Could not remove worktree %s: %s", session.worktree_path, e)

    closed = close_session(db, session_id, stat)
    logger.info(
        "Tore down session %s (%d files, +%d/-%d)",
        session_id, stat.files_changed, stat.lines_added, stat.lines_removed,
    )
    return closed


def finish_task(db: sqlite3.Connection, task_id: str, terminal=None) -> Task:
    """in_review -> done, tearing down the session unless other open work still uses it."""
    task = transition_task(db, task_id, TaskStatus.DONE)
    if task.session_id:
        session = get_session(db, task.session_id)
        if session and session.is_active and not open_tasks_for_session(db, session.id):
            teardown_session(db, session.id, terminal=terminal)
    return get_task(db, task_id)


def focus_session(db: sqlite3.Connection, session_id: str, terminal) -> Session:
    session = require_active_session(db, session_id)
    if not session.terminal_target:
        raise ValueError(f"Session {session_id} has no terminal window")
    terminal.focus(session.terminal_target)
    return session


class TerminalFeeder:
    """Hands a prompt to a running agent by typing it into its terminal window."""

    def __init__(self, terminal):
        self.terminal = terminal

    def __call__(self, session: Session, prompt: str):
        if not session.terminal_target:
            raise TerminalError(f"Session {session.id} has no terminal window")
        self.terminal.send_text(session.terminal_target, prompt)
