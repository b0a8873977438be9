"""State mutations behind every status-report transport.

The one-shot `session-update` command, the Unix-socket status service and
the MCP bridge all end up here, so behavior does not depend on how a report
arrived. Every function resolves its session first and rejects unknown or
closed sessions before touching anything.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from session_orchestrator.core import feed as feed_mod
from session_orchestrator.core import sessions as sessions_mod
from session_orchestrator.core import tasks as tasks_mod
from session_orchestrator.core.projects import get_project
from session_orchestrator.db.models import (
    ClaudeStatus,
    RateLimitState,
    Session,
    Subtask,
    SubtaskStatus,
    Task,
    TaskMode,
    TaskStatus,
    parse_dt,
)

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class CompletionResult:
    task: Task | None = None
    next_subtask: Subtask | None = None
    feed: feed_mod.FeedResult | None = None

    @property
    def in_review(self) -> bool:
        return self.task is not None and self.task.status == TaskStatus.IN_REVIEW


def report_status(
    db: sqlite3.Connection,
    session_id: str,
    state: ClaudeStatus | str,
    message: str | None = None,
    notifier=None,
    feeder=None,
    now: datetime | None = None,
) -> Session:
    """Record the agent's status. A `done` report completes the bound task."""
    state = ClaudeStatus(state)
    sessions_mod.require_active_session(db, session_id)

    if state == ClaudeStatus.DONE and tasks_mod.in_progress_task_for_session(db, session_id):
        report_task_done(
            db, session_id, summary=message or "", notifier=notifier, feeder=feeder, now=now
        )
        return sessions_mod.get_session(db, session_id)

    return sessions_mod.update_session_status(db, session_id, state, message)


def report_task_done(
    db: sqlite3.Connection,
    session_id: str,
    summary: str = "",
    pr_url: str | None = None,
    notifier=None,
    feeder=None,
    now: datetime | None = None,
) -> CompletionResult:
    """Complete the current subtask, or the task itself when no subtask remains.

    A finished autonomous task hands the session to the feed controller.
    """
    session = sessions_mod.require_active_session(db, session_id)
    task = tasks_mod.in_progress_task_for_session(db, session_id)
    if not task:
        logger.info("Completion report for session %s with no task in progress", session_id)
        sessions_mod.update_session_status(db, session_id, ClaudeStatus.DONE, summary or None)
        return CompletionResult()

    if pr_url and pr_url != task.pr_url:
        tasks_mod.update_task_pr_url(db, task.id, pr_url)

    current = tasks_mod.current_subtask(db, task.id)
    if current:
        tasks_mod.set_subtask_status(db, current.id, SubtaskStatus.DONE)
    upcoming = tasks_mod.next_pending_subtask(db, task.id)
    if upcoming:
        return _advance_subtask(db, session, task, upcoming, feeder)

    task = tasks_mod.transition_task(db, task.id, TaskStatus.IN_REVIEW, pr_url=pr_url)
    sessions_mod.update_session_status(db, session_id, ClaudeStatus.DONE, summary or "Task complete")
    logger.info("Task '%s' is ready for review (pr=%s)", task.id, task.pr_url)

    if notifier is not None:
        project = get_project(db, task.project_id)
        notifier.task_in_review(
            task.title, task.pr_url, project.slack_channel if project else None
        )

    result = CompletionResult(task=task)
    if task.mode == TaskMode.AUTONOMOUS:
        result.feed = feed_mod.feed_next_task(db, session_id, feeder=feeder, now=now)
    return result


def _advance_subtask(
    db: sqlite3.Connection,
    session: Session,
    task: Task,
    upcoming: Subtask,
    feeder,
) -> CompletionResult:
    upcoming = tasks_mod.set_subtask_status(db, upcoming.id, SubtaskStatus.IN_PROGRESS)
    session = sessions_mod.update_session_status(
        db, session.id, ClaudeStatus.WORKING, f"Step: {upcoming.title}"
    )
    if feeder is not None:
        project = get_project(db, task.project_id)
        prompt = sessions_mod.build_task_prompt(task, project.default_branch, upcoming)
        try:
            feeder(session, prompt)
        except Exception:
            logger.exception("Could not hand subtask '%s' to session %s", upcoming.id, session.id)
    return CompletionResult(task=tasks_mod.get_task(db, task.id), next_subtask=upcoming)


def report_usage(
    db: sqlite3.Connection,
    session_id: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cost: float = 0.0,
) -> Task:
    """Add token usage to the session's task (the running one, else the one in review)."""
    if input_tokens < 0 or output_tokens < 0 or cost < 0:
        raise ValueError("Usage increments must not be negative")
    sessions_mod.require_active_session(db, session_id)
    task = tasks_mod.in_progress_task_for_session(db, session_id)
    if task is None:
        task = tasks_mod.in_review_task_for_session(db, session_id)
    if task is None:
        raise ValueError(f"No task bound to session {session_id}")
    return tasks_mod.add_usage(db, task.id, input_tokens, output_tokens, cost)


def report_transcript_usage(
    db: sqlite3.Connection,
    session_id: str,
    input_total: int,
    output_total: int,
) -> Task | None:
    """Record cumulative transcript totals, adding only their growth since the last report.

    Totals below the recorded ones mean the agent started a new transcript,
    so they are counted in full.
    """
    if input_total < 0 or output_total < 0:
        raise ValueError("Transcript totals must not be negative")
    session = sessions_mod.require_active_session(db, session_id)
    if input_total < session.transcript_input_tokens or output_total < session.transcript_output_tokens:
        added_in, added_out = input_total, output_total
    else:
        added_in = input_total - session.transcript_input_tokens
        added_out = output_total - session.transcript_output_tokens

    task = None
    if added_in or added_out:
        task = tasks_mod.in_progress_task_for_session(db, session_id)
        if task is None:
            task = tasks_mod.in_review_task_for_session(db, session_id)
        if task is not None:
            task = tasks_mod.add_usage(db, task.id, added_in, added_out, 0.0)
        else:
            logger.info("Session %s has no task to charge %d/%d tokens to", session_id, added_in, added_out)
    sessions_mod.set_transcript_watermark(db, session_id, input_total, output_total)
    return task


def report_rate_limited(
    db: sqlite3.Connection,
    session_id: str,
    limit_type: str = "5h",
    reset_at: datetime | str | None = None,
    default_minutes: int = 30,
    now: datetime | None = None,
) -> RateLimitState:
    """Pause feeding process-wide until reset_at (default: now + default_minutes)."""
    session = sessions_mod.require_active_session(db, session_id)
    if isinstance(reset_at, str):
        reset_at = parse_dt(reset_at)
    if reset_at is None:
        reset_at = feed_mod.default_reset_at(default_minutes, now)
    state = feed_mod.set_rate_limited(db, limit_type, reset_at, now=now)
    sessions_mod.update_session_status(
        db, session_id, session.claude_status, f"Rate limited until {state.reset_at.isoformat()}"
    )
    return state


def report_usage_windows(
    db: sqlite3.Connection,
    session_id: str,
    pct_5h: float | None = None,
    pct_7d: float | None = None,
) -> RateLimitState:
    sessions_mod.require_active_session(db, session_id)
    return feed_mod.update_usage_windows(db, pct_5h, pct_7d)


def report_log(
    db: sqlite3.Connection,
    session_id: str,
    message: str,
    level: str = "info",
) -> None:
    """Write an agent-supplied message to the orchestrator log."""
    sessions_mod.require_active_session(db, session_id)
    if level not in LOG_LEVELS:
        raise ValueError(f"Unknown log level: {level}")
    logger.log(LOG_LEVELS[level], "[session %s] %s", session_id, message)
