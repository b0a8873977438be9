"""Autonomous feed controller and the process-wide rate-limit gate."""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import StrEnum

from session_orchestrator.core import sessions as sessions_mod
from session_orchestrator.core.projects import get_project
from session_orchestrator.core.tasks import (
    TransitionError,
    bind_task_to_session,
    in_progress_task_for_session,
    next_eligible_task,
)
from session_orchestrator.db.models import ClaudeStatus, RateLimitState, Task, parse_dt

logger = logging.getLogger(__name__)

# Bounds retries when another process binds the selected task first.
MAX_BIND_ATTEMPTS = 5


class FeedOutcome(StrEnum):
    FED = "fed"
    NO_TASK = "no_task"
    RATE_LIMITED = "rate_limited"
    BUSY = "busy"
    SESSION_CLOSED = "session_closed"


@dataclass
class FeedResult:
    outcome: FeedOutcome
    task: Task | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Store timestamps without an offset are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Rate-limit state ─────────────────────────────────────────────────────────


def get_rate_limit_state(db: sqlite3.Connection) -> RateLimitState:
    row = db.execute("SELECT * FROM rate_limit_state WHERE id = 1").fetchone()
    if not row:
        return RateLimitState()
    return RateLimitState(
        is_rate_limited=bool(row["is_rate_limited"]),
        limit_type=row["limit_type"],
        rate_limited_at=parse_dt(row["rate_limited_at"]),
        reset_at=parse_dt(row["reset_at"]),
        usage_5h_pct=row["usage_5h_pct"],
        usage_7d_pct=row["usage_7d_pct"],
        updated_at=parse_dt(row["updated_at"]),
    )


def set_rate_limited(
    db: sqlite3.Connection,
    limit_type: str,
    reset_at: datetime,
    now: datetime | None = None,
) -> RateLimitState:
    now = now or utcnow()
    db.execute(
        """UPDATE rate_limit_state SET is_rate_limited = 1, limit_type = ?, rate_limited_at = ?,
                  reset_at = ?, updated_at = datetime('now')
           WHERE id = 1""",
        (limit_type, now.isoformat(), as_utc(reset_at).isoformat()),
    )
    db.commit()
    logger.warning("Rate limited (%s) until %s", limit_type, reset_at.isoformat())
    return get_rate_limit_state(db)


def clear_rate_limit(db: sqlite3.Connection) -> RateLimitState:
    db.execute(
        """UPDATE rate_limit_state SET is_rate_limited = 0, limit_type = NULL,
                  rate_limited_at = NULL, reset_at = NULL, updated_at = datetime('now')
           WHERE id = 1"""
    )
    db.commit()
    return get_rate_limit_state(db)


def update_usage_windows(
    db: sqlite3.Connection,
    pct_5h: float | None,
    pct_7d: float | None,
) -> RateLimitState:
    db.execute(
        """UPDATE rate_limit_state SET usage_5h_pct = COALESCE(?, usage_5h_pct),
                  usage_7d_pct = COALESCE(?, usage_7d_pct), updated_at = datetime('now')
           WHERE id = 1""",
        (pct_5h, pct_7d),
    )
    db.commit()
    return get_rate_limit_state(db)


def feeding_paused(db: sqlite3.Connection, now: datetime | None = None) -> bool:
    """True while a rate limit is in force. A limit without a reset time holds until cleared."""
    state = get_rate_limit_state(db)
    if not state.is_rate_limited:
        return False
    if state.reset_at is None:
        return True
    return as_utc(now or utcnow()) < as_utc(state.reset_at)


def clear_expired_rate_limit(db: sqlite3.Connection, now: datetime | None = None) -> bool:
    """Lift a rate limit whose reset time has passed. Returns True if one was lifted."""
    state = get_rate_limit_state(db)
    if not state.is_rate_limited or state.reset_at is None:
        return False
    if as_utc(now or utcnow()) < as_utc(state.reset_at):
        return False
    clear_rate_limit(db)
    logger.info("Rate limit expired at %s, feeding resumed", state.reset_at.isoformat())
    return True


def default_reset_at(minutes: int, now: datetime | None = None) -> datetime:
    return (now or utcnow()) + timedelta(minutes=minutes)


# ── Feeding ──────────────────────────────────────────────────────────────────


def feed_next_task(
    db: sqlite3.Connection,
    session_id: str,
    feeder=None,
    now: datetime | None = None,
) -> FeedResult:
    """Start the next queued autonomous task of the session's project on that session.

    feeder is called as feeder(session, prompt) once the task is bound; when
    it is None the caller drives the agent itself.
    """
    session = sessions_mod.get_session(db, session_id)
    if not session or not session.is_active:
        return FeedResult(FeedOutcome.SESSION_CLOSED)

    if in_progress_task_for_session(db, session_id):
        sessions_mod.set_feed_pending(db, session_id, False)
        return FeedResult(FeedOutcome.BUSY)

    for _ in range(MAX_BIND_ATTEMPTS):
        candidate = next_eligible_task(db, session.project_id)
        if not candidate:
            sessions_mod.set_feed_pending(db, session_id, False)
            sessions_mod.update_session_status(db, session_id, ClaudeStatus.IDLE, "No queued tasks")
            return FeedResult(FeedOutcome.NO_TASK)

        if feeding_paused(db, now):
            state = get_rate_limit_state(db)
            until = state.reset_at.isoformat() if state.reset_at else "cleared"
            sessions_mod.set_feed_pending(db, session_id, True)
            sessions_mod.update_session_status(
                db, session_id, ClaudeStatus.IDLE, f"Feeding paused: rate limited until {until}"
            )
            logger.info("Deferred feeding session %s: rate limited", session_id)
            return FeedResult(FeedOutcome.RATE_LIMITED, candidate)

        try:
            task = bind_task_to_session(db, candidate.id, session_id)
            break
        except TransitionError:
            logger.info("Task '%s' was taken by another feeder, trying the next one", candidate.id)
    else:
        return FeedResult(FeedOutcome.BUSY)

    sessions_mod.set_feed_pending(db, session_id, False)
    session = sessions_mod.update_session_status(
        db, session_id, ClaudeStatus.WORKING, f"Starting: {task.title}"
    )
    logger.info("Fed task '%s' to session %s", task.id, session_id)

    if feeder is not None:
        project = get_project(db, task.project_id)
        prompt = sessions_mod.initial_prompt(task, project)
        try:
            feeder(session, prompt)
        except Exception:
            logger.exception("Could not hand task '%s' to session %s", task.id, session_id)

    return FeedResult(FeedOutcome.FED, task)


def resume_deferred_feeds(
    db: sqlite3.Connection,
    feeder=None,
    now: datetime | None = None,
) -> list[FeedResult]:
    """Retry feeds that were deferred by the rate-limit gate, once it is open."""
    if feeding_paused(db, now):
        return []
    rows = db.execute(
        "SELECT id FROM sessions WHERE feed_pending = 1 AND closed_at IS NULL ORDER BY created_at"
    ).fetchall()
    return [feed_next_task(db, r["id"], feeder=feeder, now=now) for r in rows]
