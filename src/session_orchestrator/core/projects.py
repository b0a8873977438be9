"""Project registration and statistics."""

import sqlite3
from dataclasses import dataclass, field

from session_orchestrator.core.tasks import slugify
from session_orchestrator.db.models import Project, parse_dt


@dataclass
class ProjectStats:
    project_id: str
    counts: dict[str, int] = field(default_factory=dict)
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    completed_seconds: float = 0.0

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def create_project(
    db: sqlite3.Connection,
    name: str,
    repo_path: str,
    default_branch: str = "main",
    slack_channel: str | None = None,
) -> Project:
    """Register a repository as a project. Names are unique."""
    if get_project_by_name(db, name):
        raise ValueError(f"Project already exists: {name}")
    project_id = slugify(name)
    if not project_id:
        raise ValueError(f"Project name has no usable characters: {name!r}")
    if get_project(db, project_id):
        raise ValueError(f"Project id already taken: {project_id}")

    db.execute(
        """INSERT INTO projects (id, name, repo_path, default_branch, slack_channel)
           VALUES (?, ?, ?, ?, ?)""",
        (project_id, name, repo_path, default_branch, slack_channel),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def get_project_by_name(db: sqlite3.Connection, name: str) -> Project | None:
    row = db.execute("SELECT * FROM projects WHERE name = ?", (name,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY name").fetchall()
    return [_row_to_project(r) for r in rows]


def delete_project(db: sqlite3.Connection, project_id: str) -> bool:
    """Delete a project with its tasks, subtasks and sessions.

    Sessions are removed from the store only; workspaces of still-active
    sessions must be torn down first.
    """
    if not get_project(db, project_id):
        return False
    active = db.execute(
        "SELECT COUNT(*) FROM sessions WHERE project_id = ? AND closed_at IS NULL",
        (project_id,),
    ).fetchone()[0]
    if active:
        raise ValueError(
            f"Project '{project_id}' has {active} active session(s); tear them down first"
        )
    db.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    db.commit()
    return True


def project_stats(db: sqlite3.Connection, project_id: str) -> ProjectStats:
    """Aggregate task counts, token usage, cost and completed work time."""
    stats = ProjectStats(project_id=project_id)
    for row in db.execute(
        "SELECT status, COUNT(*) AS n FROM tasks WHERE project_id = ? GROUP BY status",
        (project_id,),
    ):
        stats.counts[row["status"]] = row["n"]

    row = db.execute(
        """SELECT COALESCE(SUM(input_tokens), 0) AS input_tokens,
                  COALESCE(SUM(output_tokens), 0) AS output_tokens,
                  COALESCE(SUM(cost), 0.0) AS cost,
                  COALESCE(SUM(
                      CASE WHEN started_at IS NOT NULL AND completed_at IS NOT NULL
                           THEN (julianday(completed_at) - julianday(started_at)) * 86400.0
                           ELSE 0 END
                  ), 0.0) AS seconds
           FROM tasks WHERE project_id = ?""",
        (project_id,),
    ).fetchone()
    stats.input_tokens = row["input_tokens"]
    stats.output_tokens = row["output_tokens"]
    stats.cost = row["cost"]
    stats.completed_seconds = row["seconds"]
    return stats


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        repo_path=row["repo_path"],
        default_branch=row["default_branch"],
        slack_channel=row["slack_channel"],
        created_at=parse_dt(row["created_at"]),
    )
