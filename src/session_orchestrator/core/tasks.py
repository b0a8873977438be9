"""Task and subtask operations, including the task status state machine."""

import re
import sqlite3
import uuid

from session_orchestrator.db.models import (
    Subtask,
    SubtaskStatus,
    Task,
    TaskEvent,
    TaskMode,
    TaskStatus,
    parse_dt,
)


class TransitionError(ValueError):
    """Raised when a task status change is not allowed from its current status."""


# Single authority for task status changes. Nothing re-enters PENDING.
TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.IN_REVIEW, TaskStatus.ERROR}),
    TaskStatus.IN_REVIEW: frozenset({TaskStatus.DONE}),
    TaskStatus.DONE: frozenset(),
    TaskStatus.ERROR: frozenset(),
}

SUBTASK_TRANSITIONS: dict[SubtaskStatus, frozenset[SubtaskStatus]] = {
    SubtaskStatus.PENDING: frozenset({SubtaskStatus.IN_PROGRESS}),
    SubtaskStatus.IN_PROGRESS: frozenset({SubtaskStatus.DONE}),
    SubtaskStatus.DONE: frozenset(),
}


def can_transition(old: TaskStatus, new: TaskStatus) -> bool:
    return new in TRANSITIONS[old]


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    base_slug = base_slug or "task"
    candidate = base_slug
    i = 2
    while db.execute("SELECT 1 FROM tasks WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


# ── Tasks ────────────────────────────────────────────────────────────────────


def create_task(
    db: sqlite3.Connection,
    project_id: str,
    title: str,
    description: str = "",
    mode: TaskMode | str = TaskMode.SUPERVISED,
) -> Task:
    """Queue a new pending task at the end of its project's order."""
    mode = TaskMode(mode)
    if not db.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone():
        raise ValueError(f"Project not found: {project_id}")

    task_id = _unique_id(db, slugify(title))
    db.execute(
        """INSERT INTO tasks (id, project_id, title, description, mode, sort_order)
           VALUES (?, ?, ?, ?, ?,
                   (SELECT COALESCE(MAX(sort_order), 0) + 1 FROM tasks WHERE project_id = ?))""",
        (task_id, project_id, title, description, mode.value, project_id),
    )
    _log_event(db, task_id, "created", None, TaskStatus.PENDING.value)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its subtasks."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.subtasks = list_subtasks(db, task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    project_id: str | None = None,
    status: TaskStatus | str | None = None,
) -> list[Task]:
    """List tasks in queue order, optionally filtered by project and status."""
    query = "SELECT * FROM tasks WHERE 1 = 1"
    params: list = []

    if project_id is not None:
        query += " AND project_id = ?"
        params.append(project_id)

    if status:
        query += " AND status = ?"
        params.append(TaskStatus(status).value)

    query += " ORDER BY project_id, sort_order ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task and its subtasks. Refused while an active session runs it."""
    task = get_task(db, task_id)
    if not task:
        return False
    if task.session_id and _session_is_active(db, task.session_id):
        raise ValueError(
            f"Task '{task_id}' is bound to active session {task.session_id}; tear it down first"
        )
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


def swap_sort_order(db: sqlite3.Connection, task_a: str, task_b: str) -> tuple[Task, Task]:
    """Swap the queue positions of two tasks in the same project."""
    a = get_task(db, task_a)
    b = get_task(db, task_b)
    if not a:
        raise ValueError(f"Task not found: {task_a}")
    if not b:
        raise ValueError(f"Task not found: {task_b}")
    if a.project_id != b.project_id:
        raise ValueError("Tasks belong to different projects")

    # sort_order is unique per project, so park one task past the end first.
    db.execute(
        """UPDATE tasks SET sort_order =
               (SELECT MAX(sort_order) + 1 FROM tasks WHERE project_id = ?)
           WHERE id = ?""",
        (a.project_id, a.id),
    )
    db.execute("UPDATE tasks SET sort_order = ? WHERE id = ?", (a.sort_order, b.id))
    db.execute("UPDATE tasks SET sort_order = ? WHERE id = ?", (b.sort_order, a.id))
    _log_event(db, a.id, "reordered", str(a.sort_order), str(b.sort_order))
    _log_event(db, b.id, "reordered", str(b.sort_order), str(a.sort_order))
    db.commit()
    return get_task(db, a.id), get_task(db, b.id)


# ── State machine ────────────────────────────────────────────────────────────


def _apply_transition(
    db: sqlite3.Connection,
    task: Task,
    new_status: TaskStatus,
    extra: dict[str, object] | None = None,
):
    """Compare-and-set a status change. Caller commits."""
    if not can_transition(task.status, new_status):
        raise TransitionError(
            f"Task '{task.id}' cannot move from {task.status} to {new_status}"
        )

    set_parts = ["status = ?", "updated_at = datetime('now')"]
    values: list = [new_status.value]
    if new_status == TaskStatus.IN_PROGRESS:
        set_parts.append("started_at = COALESCE(started_at, datetime('now'))")
    if new_status in (TaskStatus.IN_REVIEW, TaskStatus.DONE):
        set_parts.append("completed_at = COALESCE(completed_at, datetime('now'))")
    for column, value in (extra or {}).items():
        set_parts.append(f"{column} = ?")
        values.append(value)

    cursor = db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ? AND status = ?",
        values + [task.id, task.status.value],
    )
    if cursor.rowcount == 0:
        raise TransitionError(
            f"Task '{task.id}' changed concurrently; expected status {task.status}"
        )
    _log_event(db, task.id, "status_changed", task.status.value, new_status.value)


def transition_task(
    db: sqlite3.Connection,
    task_id: str,
    new_status: TaskStatus | str,
    pr_url: str | None = None,
) -> Task:
    """Move a task along the transition table.

    Starting a task goes through bind_task_to_session, since in_progress
    always comes with a session binding.
    """
    new_status = TaskStatus(new_status)
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if new_status == TaskStatus.IN_PROGRESS:
        raise TransitionError("Tasks are started by binding them to a session")

    extra = {}
    if pr_url:
        extra["pr_url"] = pr_url
    _apply_transition(db, task, new_status, extra)
    if pr_url and pr_url != task.pr_url:
        _log_event(db, task_id, "pr_url_changed", task.pr_url, pr_url)
    db.commit()
    return get_task(db, task_id)


def mark_task_error(db: sqlite3.Connection, task_id: str) -> Task:
    """Explicitly flag an in-progress task as failed. Never triggered automatically."""
    return transition_task(db, task_id, TaskStatus.ERROR)


def bind_task_to_session(db: sqlite3.Connection, task_id: str, session_id: str) -> Task:
    """Start a pending task on a session: bind, set in_progress, activate the first subtask."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")

    session = db.execute(
        "SELECT project_id, closed_at FROM sessions WHERE id = ?", (session_id,)
    ).fetchone()
    if not session:
        raise ValueError(f"Session not found: {session_id}")
    if session["closed_at"] is not None:
        raise ValueError(f"Session is closed: {session_id}")
    if session["project_id"] != task.project_id:
        raise ValueError(
            f"Session {session_id} belongs to project '{session['project_id']}', "
            f"not '{task.project_id}'"
        )
    if task.session_id and task.session_id != session_id and _session_is_active(db, task.session_id):
        raise ValueError(
            f"Task '{task_id}' is already bound to active session {task.session_id}"
        )

    _apply_transition(db, task, TaskStatus.IN_PROGRESS, {"session_id": session_id})
    _log_event(db, task_id, "session_bound", task.session_id, session_id)

    if not any(s.status == SubtaskStatus.IN_PROGRESS for s in task.subtasks):
        first = next((s for s in task.subtasks if s.status == SubtaskStatus.PENDING), None)
        if first:
            _set_subtask_status(db, first, SubtaskStatus.IN_PROGRESS)

    db.commit()
    return get_task(db, task_id)


# ── Queries used by the feed controller and pollers ──────────────────────────


def next_eligible_task(db: sqlite3.Connection, project_id: str) -> Task | None:
    """The lowest-ordered pending autonomous task in a project."""
    row = db.execute(
        """SELECT * FROM tasks
           WHERE project_id = ? AND status = 'pending' AND mode = 'autonomous'
           ORDER BY sort_order ASC LIMIT 1""",
        (project_id,),
    ).fetchone()
    if not row:
        return None
    return get_task(db, row["id"])


def _task_for_session(db: sqlite3.Connection, session_id: str, status: TaskStatus) -> Task | None:
    row = db.execute(
        """SELECT id FROM tasks WHERE session_id = ? AND status = ?
           ORDER BY started_at DESC, sort_order DESC LIMIT 1""",
        (session_id, status.value),
    ).fetchone()
    if not row:
        return None
    return get_task(db, row["id"])


def in_progress_task_for_session(db: sqlite3.Connection, session_id: str) -> Task | None:
    return _task_for_session(db, session_id, TaskStatus.IN_PROGRESS)


def in_review_task_for_session(db: sqlite3.Connection, session_id: str) -> Task | None:
    return _task_for_session(db, session_id, TaskStatus.IN_REVIEW)


def open_tasks_for_session(db: sqlite3.Connection, session_id: str) -> list[Task]:
    """Tasks on a session that still need its workspace (in_progress or in_review)."""
    rows = db.execute(
        """SELECT * FROM tasks WHERE session_id = ? AND status IN ('in_progress', 'in_review')
           ORDER BY sort_order""",
        (session_id,),
    ).fetchall()
    return [_row_to_task(r) for r in rows]


def pr_url_claimed(db: sqlite3.Connection, session_id: str, pr_url: str, task_id: str) -> bool:
    """Whether another task that ran on this session already owns pr_url.

    Fed tasks reuse the session's branch, so a branch lookup keeps finding
    the PR of the task that opened it.
    """
    row = db.execute(
        "SELECT 1 FROM tasks WHERE session_id = ? AND pr_url = ? AND id != ? LIMIT 1",
        (session_id, pr_url, task_id),
    ).fetchone()
    return row is not None


def in_review_tasks_with_pr(db: sqlite3.Connection) -> list[Task]:
    rows = db.execute(
        """SELECT * FROM tasks WHERE status = 'in_review' AND pr_url IS NOT NULL AND pr_url != ''
           ORDER BY project_id, sort_order"""
    ).fetchall()
    return [_row_to_task(r) for r in rows]


def add_usage(
    db: sqlite3.Connection,
    task_id: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cost: float = 0.0,
) -> Task | None:
    """Add incremental token usage and cost to a task's running totals."""
    cursor = db.execute(
        """UPDATE tasks SET input_tokens = input_tokens + ?, output_tokens = output_tokens + ?,
                  cost = cost + ?, updated_at = datetime('now')
           WHERE id = ?""",
        (input_tokens, output_tokens, cost, task_id),
    )
    db.commit()
    if cursor.rowcount == 0:
        return None
    return get_task(db, task_id)


def update_task_pr_url(db: sqlite3.Connection, task_id: str, pr_url: str | None) -> Task | None:
    """Set or clear a task's PR URL."""
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        "UPDATE tasks SET pr_url = ?, updated_at = datetime('now') WHERE id = ?",
        (pr_url, task_id),
    )
    _log_event(db, task_id, "pr_url_changed", task.pr_url, pr_url)
    db.commit()
    return get_task(db, task_id)


# ── Subtasks ─────────────────────────────────────────────────────────────────


def create_subtask(
    db: sqlite3.Connection,
    task_id: str,
    title: str,
    description: str = "",
) -> Subtask:
    """Append a subtask to a task."""
    if not db.execute("SELECT 1 FROM tasks WHERE id = ?", (task_id,)).fetchone():
        raise ValueError(f"Task not found: {task_id}")
    subtask_id = uuid.uuid4().hex[:12]
    db.execute(
        """INSERT INTO subtasks (id, task_id, title, description, sort_order)
           VALUES (?, ?, ?, ?,
                   (SELECT COALESCE(MAX(sort_order), 0) + 1 FROM subtasks WHERE task_id = ?))""",
        (subtask_id, task_id, title, description, task_id),
    )
    db.commit()
    return get_subtask(db, subtask_id)


def get_subtask(db: sqlite3.Connection, subtask_id: str) -> Subtask | None:
    row = db.execute("SELECT * FROM subtasks WHERE id = ?", (subtask_id,)).fetchone()
    if not row:
        return None
    return _row_to_subtask(row)


def list_subtasks(db: sqlite3.Connection, task_id: str) -> list[Subtask]:
    rows = db.execute(
        "SELECT * FROM subtasks WHERE task_id = ? ORDER BY sort_order ASC", (task_id,)
    ).fetchall()
    return [_row_to_subtask(r) for r in rows]


def current_subtask(db: sqlite3.Connection, task_id: str) -> Subtask | None:
    row = db.execute(
        """SELECT * FROM subtasks WHERE task_id = ? AND status = 'in_progress'
           ORDER BY sort_order LIMIT 1""",
        (task_id,),
    ).fetchone()
    return _row_to_subtask(row) if row else None


def next_pending_subtask(db: sqlite3.Connection, task_id: str) -> Subtask | None:
    row = db.execute(
        """SELECT * FROM subtasks WHERE task_id = ? AND status = 'pending'
           ORDER BY sort_order LIMIT 1""",
        (task_id,),
    ).fetchone()
    return _row_to_subtask(row) if row else None


def _set_subtask_status(db: sqlite3.Connection, subtask: Subtask, status: SubtaskStatus):
    if status not in SUBTASK_TRANSITIONS[subtask.status]:
        raise TransitionError(
            f"Subtask '{subtask.id}' cannot move from {subtask.status} to {status}"
        )
    column = "started_at" if status == SubtaskStatus.IN_PROGRESS else "completed_at"
    cursor = db.execute(
        f"UPDATE subtasks SET status = ?, {column} = datetime('now') WHERE id = ? AND status = ?",
        (status.value, subtask.id, subtask.status.value),
    )
    if cursor.rowcount == 0:
        raise TransitionError(f"Subtask '{subtask.id}' changed concurrently")
    _log_event(db, subtask.task_id, f"subtask_{status.value}", subtask.id, subtask.title)


def set_subtask_status(
    db: sqlite3.Connection,
    subtask_id: str,
    status: SubtaskStatus | str,
) -> Subtask:
    subtask = get_subtask(db, subtask_id)
    if not subtask:
        raise ValueError(f"Subtask not found: {subtask_id}")
    _set_subtask_status(db, subtask, SubtaskStatus(status))
    db.commit()
    return get_subtask(db, subtask_id)


# ── Events ───────────────────────────────────────────────────────────────────


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _session_is_active(db: sqlite3.Connection, session_id: str) -> bool:
    row = db.execute(
        "SELECT 1 FROM sessions WHERE id = ? AND closed_at IS NULL", (session_id,)
    ).fetchone()
    return row is not None


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"],
        status=TaskStatus(row["status"]),
        mode=TaskMode(row["mode"]),
        session_id=row["session_id"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        cost=row["cost"],
        sort_order=row["sort_order"],
        pr_url=row["pr_url"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
    )


def _row_to_subtask(row: sqlite3.Row) -> Subtask:
    return Subtask(
        id=row["id"],
        task_id=row["task_id"],
        title=row["title"],
        description=row["description"],
        status=SubtaskStatus(row["status"]),
        sort_order=row["sort_order"],
        created_at=parse_dt(row["created_at"]),
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
    )
