"""Data models for the session orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"
    ERROR = "error"


class TaskMode(StrEnum):
    AUTONOMOUS = "autonomous"
    SUPERVISED = "supervised"


class SubtaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class ClaudeStatus(StrEnum):
    IDLE = "idle"
    WORKING = "working"
    WAITING_FOR_INPUT = "waiting_for_input"
    DONE = "done"
    ERROR = "error"


@dataclass
class Project:
    id: str
    name: str
    repo_path: str
    default_branch: str = "main"
    slack_channel: str | None = None
    created_at: datetime | None = None


@dataclass
class Subtask:
    id: str
    task_id: str
    title: str
    description: str = ""
    status: SubtaskStatus = SubtaskStatus.PENDING
    sort_order: int = 0
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    mode: TaskMode = TaskMode.SUPERVISED
    session_id: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    sort_order: int = 0
    pr_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    subtasks: list[Subtask] = field(default_factory=list)


@dataclass
class Session:
    id: str
    project_id: str
    branch_name: str
    worktree_path: str
    terminal_target: str | None = None
    claude_status: ClaudeStatus = ClaudeStatus.IDLE
    status_message: str = ""
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    feed_pending: bool = False
    transcript_input_tokens: int = 0
    transcript_output_tokens: int = 0
    last_activity_at: datetime | None = None
    created_at: datetime | None = None
    closed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.closed_at is None


@dataclass
class RateLimitState:
    is_rate_limited: bool = False
    limit_type: str | None = None
    rate_limited_at: datetime | None = None
    reset_at: datetime | None = None
    usage_5h_pct: float | None = None
    usage_7d_pct: float | None = None
    updated_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
