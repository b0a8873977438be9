"""Background reconciliation pollers.

Each poller runs its cycle on a daemon thread behind a single-flight token:
a cycle that is due while the previous one is still running is skipped, not
queued. Pollers never touch the store; results go onto a queue that the
control loop drains and applies on its own thread.
"""

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from session_orchestrator.integrations.github import GitHubError
from session_orchestrator.integrations.usage import UsageFetchError, UsageWindows

logger = logging.getLogger(__name__)


class SingleFlight:
    """Non-blocking token: at most one holder at a time."""

    def __init__(self):
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self):
        self._lock.release()

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()


@dataclass
class UsageResult:
    windows: UsageWindows
    fetched_at: datetime


@dataclass
class PrCheck:
    task_id: str
    session_id: str | None
    title: str
    pr_url: str


@dataclass
class MergeDetected:
    task_id: str
    session_id: str | None
    title: str


class Poller:
    """Interval-gated, single-flight background cycle feeding a result queue."""

    name = "poller"
    expected_errors: tuple[type[Exception], ...] = ()

    def __init__(
        self,
        results: queue.Queue,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.results = results
        self.interval = interval
        self._clock = clock
        self._flight = SingleFlight()
        self._last_started: float | None = None
        self._thread: threading.Thread | None = None

    @property
    def in_flight(self) -> bool:
        return self._flight.in_flight

    def due(self) -> bool:
        return self._last_started is None or self._clock() - self._last_started >= self.interval

    def maybe_start(self, *args) -> bool:
        """Start a cycle if one is due and none is running. Returns True if started."""
        if not self.due():
            return False
        if not self._flight.try_acquire():
            logger.debug("%s poll skipped: previous cycle still in flight", self.name)
            return False
        self._last_started = self._clock()
        thread = threading.Thread(
            target=self._run, args=args, name=f"{self.name}-poller", daemon=True
        )
        try:
            thread.start()
        except RuntimeError:
            self._flight.release()
            raise
        self._thread = thread
        return True

    def join(self, timeout: float | None = None):
        if self._thread:
            self._thread.join(timeout)

    def _run(self, *args):
        try:
            for result in self.poll(*args):
                self.results.put(result)
        except self.expected_errors as e:
            logger.warning("%s poll failed: %s", self.name, e)
        except Exception:
            logger.exception("%s poll failed", self.name)
        finally:
            self._flight.release()

    def poll(self, *args) -> Iterable:
        raise NotImplementedError


class UsagePoller(Poller):
    """Fetches account usage windows."""

    name = "usage"
    expected_errors = (UsageFetchError,)

    def __init__(self, results: queue.Queue, interval: float, fetch: Callable[[], UsageWindows], **kwargs):
        super().__init__(results, interval, **kwargs)
        self.fetch = fetch

    def poll(self) -> Iterable[UsageResult]:
        yield UsageResult(windows=self.fetch(), fetched_at=datetime.now(timezone.utc))


class CompletionPoller(Poller):
    """Checks in-review PRs for an external merge."""

    name = "completion"

    def __init__(self, results: queue.Queue, interval: float, is_merged: Callable[[str], bool], **kwargs):
        super().__init__(results, interval, **kwargs)
        self.is_merged = is_merged

    def poll(self, checks: list[PrCheck]) -> Iterable[MergeDetected]:
        for check in checks:
            try:
                merged = self.is_merged(check.pr_url)
            except GitHubError as e:
                logger.warning("Merge check for %s failed: %s", check.pr_url, e)
                continue
            if merged:
                logger.info("PR for task '%s' merged: %s", check.task_id, check.pr_url)
                yield MergeDetected(task_id=check.task_id, session_id=check.session_id, title=check.title)
