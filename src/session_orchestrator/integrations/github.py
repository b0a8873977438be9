"""Pull-request state lookups through the GitHub CLI."""

import json
import subprocess


class GitHubError(Exception):
    """Raised when a pull-request lookup fails."""


MERGED = "MERGED"


def pr_state(pr_url: str, timeout: float = 10.0) -> str:
    """Return the PR state reported by `gh` (OPEN, CLOSED or MERGED)."""
    cmd = ["gh", "pr", "view", pr_url, "--json", "state"]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as e:
        raise GitHubError(f"gh pr view {pr_url} failed: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise GitHubError(f"gh pr view {pr_url} timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise GitHubError("gh executable not found") from e

    try:
        return json.loads(result.stdout)["state"]
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise GitHubError(f"Unexpected gh output for {pr_url}: {result.stdout[:200]}") from e


def is_merged(pr_url: str, timeout: float = 10.0) -> bool:
    return pr_state(pr_url, timeout=timeout) == MERGED


def pr_url_for_branch(cwd: str, timeout: float = 10.0) -> str | None:
    """URL of the PR opened from the branch checked out in cwd, if any."""
    cmd = ["gh", "pr", "view", "--json", "url"]
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise GitHubError(f"gh pr view timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise GitHubError("gh executable not found") from e
    if result.returncode != 0:
        # gh exits non-zero when the branch has no PR.
        return None
    try:
        return json.loads(result.stdout).get("url") or None
    except (json.JSONDecodeError, AttributeError):
        return None
