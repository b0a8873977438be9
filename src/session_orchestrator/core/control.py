"""The supervising process's control loop."""

import functools
import logging
import queue
import sqlite3
import threading
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from session_orchestrator.core import feed as feed_mod
from session_orchestrator.core.pollers import (
    CompletionPoller,
    MergeDetected,
    PrCheck,
    UsagePoller,
    UsageResult,
)
from session_orchestrator.core.sessions import TerminalFeeder, finish_task
from session_orchestrator.core.tasks import get_task, in_review_tasks_with_pr
from session_orchestrator.db.engine import init_db
from session_orchestrator.db.models import TaskStatus
from session_orchestrator.integrations import github
from session_orchestrator.integrations.usage import UsageWindows, fetch_usage

logger = logging.getLogger(__name__)

FULL_UTILIZATION = 100.0


class ControlLoop:
    """Applies every supervising-side mutation serially, one tick at a time.

    Each tick re-reads the store, lifts an expired rate limit, applies
    queued poller results, retries deferred feeds and starts whichever
    pollers are due. Poller calls to gh and the usage endpoint never run on
    the tick. Two kinds of external work do: finishing a merged task tears
    its session down (git diff, git worktree remove, tmux kill-window), and
    resuming a deferred feed types into tmux. Each of those commands has a
    bounded duration: tmux calls time out after TmuxTerminal.timeout and git
    calls after git.GIT_TIMEOUT.
    """

    def __init__(
        self,
        db_path: Path,
        tick_interval: float = 0.5,
        terminal=None,
        usage_fetch: Callable[[], UsageWindows] | None = None,
        is_merged: Callable[[str], bool] | None = None,
        usage_interval: float = 60.0,
        pr_interval: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db_path = db_path
        self.tick_interval = tick_interval
        self.terminal = terminal
        self.feeder = TerminalFeeder(terminal) if terminal is not None else None
        self.results: queue.Queue = queue.Queue()
        self.usage: UsageResult | None = None
        self.usage_poller = (
            UsagePoller(self.results, usage_interval, usage_fetch, clock=clock) if usage_fetch else None
        )
        self.completion_poller = (
            CompletionPoller(self.results, pr_interval, is_merged, clock=clock) if is_merged else None
        )
        self._db: sqlite3.Connection | None = None
        self._stop_event = threading.Event()

    @classmethod
    def from_config(cls, config, terminal=None) -> "ControlLoop":
        usage_fetch = None
        if config.usage_token:
            usage_fetch = functools.partial(
                fetch_usage, config.usage_url, config.usage_token, config.poll_timeout
            )
        return cls(
            db_path=config.db_path,
            tick_interval=config.tick_interval,
            terminal=terminal,
            usage_fetch=usage_fetch,
            is_merged=functools.partial(github.is_merged, timeout=config.poll_timeout),
            usage_interval=config.usage_poll_interval,
            pr_interval=config.pr_poll_interval,
        )

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            self._db = init_db(self.db_path)
        return self._db

    # ── Tick ────────────────────────────────────────────────────────────────

    def tick(self, now: datetime | None = None) -> int:
        """Run one iteration. Returns the number of poller results applied."""
        db = self.db
        now = now or feed_mod.utcnow()
        feed_mod.clear_expired_rate_limit(db, now)
        applied = self.drain(db)
        feed_mod.resume_deferred_feeds(db, feeder=self.feeder, now=now)
        self._start_pollers(db)
        return applied

    def drain(self, db: sqlite3.Connection) -> int:
        applied = 0
        while True:
            try:
                result = self.results.get_nowait()
            except queue.Empty:
                break
            try:
                self._apply(db, result)
                applied += 1
            except Exception:
                logger.exception("Failed to apply poller result %r", result)
        return applied

    def _apply(self, db: sqlite3.Connection, result):
        if isinstance(result, UsageResult):
            self._apply_usage(db, result)
        elif isinstance(result, MergeDetected):
            self._apply_merge(db, result)
        else:
            logger.warning("Ignoring unknown poller result %r", result)

    def _apply_usage(self, db: sqlite3.Connection, result: UsageResult):
        self.usage = result
        windows = result.windows
        feed_mod.update_usage_windows(db, windows.pct_5h, windows.pct_7d)

        state = feed_mod.get_rate_limit_state(db)
        if state.is_rate_limited:
            return
        for limit_type, pct, reset_at in (
            ("5h", windows.pct_5h, windows.reset_5h),
            ("7d", windows.pct_7d, windows.reset_7d),
        ):
            if pct is not None and pct >= FULL_UTILIZATION and reset_at is not None:
                feed_mod.set_rate_limited(db, limit_type, reset_at)
                return

    def _apply_merge(self, db: sqlite3.Connection, result: MergeDetected):
        task = get_task(db, result.task_id)
        if not task or task.status != TaskStatus.IN_REVIEW:
            logger.debug("Stale merge result for task '%s'", result.task_id)
            return
        finish_task(db, task.id, terminal=self.terminal)
        logger.info("Task '%s' done: PR merged", task.id)

    def _start_pollers(self, db: sqlite3.Connection):
        if self.usage_poller is not None:
            self.usage_poller.maybe_start()

        poller = self.completion_poller
        if poller is None or not poller.due() or poller.in_flight:
            return
        checks = [
            PrCheck(task_id=t.id, session_id=t.session_id, title=t.title, pr_url=t.pr_url)
            for t in in_review_tasks_with_pr(db)
        ]
        if checks:
            poller.maybe_start(checks)

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def run(self):
        """Tick until stop() is called."""
        logger.info("Control loop started")
        try:
            while not self._stop_event.is_set():
                try:
                    self.tick()
                except Exception:
                    logger.exception("Error in control loop tick")
                self._stop_event.wait(self.tick_interval)
        finally:
            self.close()
            logger.info("Control loop stopped")

    def stop(self):
        self._stop_event.set()

    def close(self):
        if self._db is not None:
            self._db.close()
            self._db = None
