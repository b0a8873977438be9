"""Git subprocess wrappers for session worktrees and diff statistics."""

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class DiffStat:
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0


_FILES_RE = re.compile(r"(\d+) files? changed")
_ADDED_RE = re.compile(r"(\d+) insertions?\(\+\)")
_REMOVED_RE = re.compile(r"(\d+) deletions?\(-\)")


GIT_TIMEOUT = 60.0


def run_git(args: list[str], cwd: str | Path | None = None, timeout: float = GIT_TIMEOUT) -> str:
    """Run a git command and return stdout. Raises GitError on failure or timeout."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {' '.join(args)} timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise GitError("git executable not found") from e


def fetch(repo_path: str | Path, remote: str = "origin") -> bool:
    """Fetch from a remote. Returns False when the fetch fails (offline, no remote)."""
    try:
        run_git(["fetch", remote], cwd=repo_path)
        return True
    except GitError as e:
        logger.warning("git fetch in %s failed: %s", repo_path, e)
        return False


def ref_exists(repo_path: str | Path, ref: str) -> bool:
    try:
        run_git(["rev-parse", "--verify", "--quiet", ref], cwd=repo_path)
        return True
    except GitError:
        return False


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_ref: str = "main",
) -> str:
    """Create a worktree on a new branch, falling back to checking out an existing branch."""
    Path(worktree_path).parent.mkdir(parents=True, exist_ok=True)
    try:
        return run_git(
            ["worktree", "add", "-b", branch, str(worktree_path), base_ref], cwd=repo_path
        )
    except GitError:
        if not ref_exists(repo_path, f"refs/heads/{branch}"):
            raise
        return run_git(["worktree", "add", str(worktree_path), branch], cwd=repo_path)


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree. With force, uncommitted changes in it are lost."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def parse_diff_stat(output: str) -> DiffStat:
    """Parse the summary line of `git diff --stat`."""
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if not lines:
        return DiffStat()
    summary = lines[-1]
    stat = DiffStat()
    if m := _FILES_RE.search(summary):
        stat.files_changed = int(m.group(1))
    if m := _ADDED_RE.search(summary):
        stat.lines_added = int(m.group(1))
    if m := _REMOVED_RE.search(summary):
        stat.lines_removed = int(m.group(1))
    return stat


def diff_stat(worktree_path: str | Path, base_ref: str) -> DiffStat:
    """Diff statistics of a worktree against a base ref."""
    return parse_diff_stat(run_git(["diff", "--stat", base_ref], cwd=worktree_path))
