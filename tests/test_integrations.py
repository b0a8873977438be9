"""Tests for the git, GitHub, usage, tmux and workspace wrappers."""

import json
import os
import subprocess
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch
from urllib.error import URLError

import pytest

from session_orchestrator.config import Config
from session_orchestrator.integrations import git, github, transcript, usage, workspace
from session_orchestrator.integrations.terminal import TerminalError, TmuxTerminal


class TestDiffStat:
    def test_full_summary(self):
        out = " a.py | 3 ++-\n b.py | 1 -\n 2 files changed, 2 insertions(+), 2 deletions(-)"
        assert git.parse_diff_stat(out) == git.DiffStat(2, 2, 2)

    def test_singular(self):
        assert git.parse_diff_stat(" 1 file changed, 1 insertion(+)") == git.DiffStat(1, 1, 0)

    def test_deletions_only(self):
        assert git.parse_diff_stat(" 3 files changed, 9 deletions(-)") == git.DiffStat(3, 0, 9)

    def test_empty(self):
        assert git.parse_diff_stat("") == git.DiffStat()

    def test_run_git_error(self):
        with tempfile.TemporaryDirectory() as tmp:
            with pytest.raises(git.GitError, match="rev-parse"):
                git.run_git(["rev-parse", "HEAD"], cwd=tmp)

    def test_run_git_timeout(self):
        with patch(
            "session_orchestrator.integrations.git.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="git", timeout=1),
        ):
            with pytest.raises(git.GitError, match="timed out"):
                git.run_git(["status"], timeout=1)

    def test_fetch_without_remote(self):
        with tempfile.TemporaryDirectory() as tmp:
            subprocess.run(["git", "init"], cwd=tmp, capture_output=True, check=True)
            assert git.fetch(tmp) is False


class TestGitHub:
    def _completed(self, stdout, returncode=0):
        return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr="")

    def test_pr_state(self):
        with patch("session_orchestrator.integrations.github.subprocess.run",
                   return_value=self._completed('{"state": "MERGED"}')) as run:
            assert github.is_merged("https://github.com/o/r/pull/1", timeout=3)
        assert run.call_args.args[0] == ["gh", "pr", "view", "https://github.com/o/r/pull/1", "--json", "state"]
        assert run.call_args.kwargs["timeout"] == 3

    def test_open_pr(self):
        with patch("session_orchestrator.integrations.github.subprocess.run",
                   return_value=self._completed('{"state": "OPEN"}')):
            assert not github.is_merged("https://github.com/o/r/pull/1")

    def test_timeout(self):
        with patch("session_orchestrator.integrations.github.subprocess.run",
                   side_effect=subprocess.TimeoutExpired(cmd="gh", timeout=1)):
            with pytest.raises(github.GitHubError, match="timed out"):
                github.pr_state("https://github.com/o/r/pull/1", timeout=1)

    def test_command_failure(self):
        err = subprocess.CalledProcessError(1, "gh", stderr="no such pr")
        with patch("session_orchestrator.integrations.github.subprocess.run", side_effect=err):
            with pytest.raises(github.GitHubError, match="no such pr"):
                github.pr_state("https://github.com/o/r/pull/9")

    def test_garbled_output(self):
        with patch("session_orchestrator.integrations.github.subprocess.run",
                   return_value=self._completed("not json")):
            with pytest.raises(github.GitHubError, match="Unexpected"):
                github.pr_state("https://github.com/o/r/pull/1")

    def test_pr_url_for_branch(self):
        with patch("session_orchestrator.integrations.github.subprocess.run",
                   return_value=self._completed('{"url": "https://github.com/o/r/pull/4"}')):
            assert github.pr_url_for_branch("/tmp") == "https://github.com/o/r/pull/4"

    def test_no_pr_for_branch(self):
        with patch("session_orchestrator.integrations.github.subprocess.run",
                   return_value=self._completed("", returncode=1)):
            assert github.pr_url_for_branch("/tmp") is None


class TestUsage:
    def test_parse(self):
        windows = usage.parse_usage({
            "five_hour": {"utilization": 87, "resets_at": "2026-03-01T17:00:00Z"},
            "seven_day": {"utilization": 41.5, "resets_at": None},
        })
        assert windows.pct_5h == 87.0
        assert windows.pct_7d == 41.5
        assert windows.reset_5h == datetime(2026, 3, 1, 17, tzinfo=timezone.utc)
        assert windows.reset_7d is None

    def test_parse_missing_windows(self):
        windows = usage.parse_usage({"five_hour": None})
        assert windows == usage.UsageWindows()

    def test_parse_bad_reset(self):
        windows = usage.parse_usage({"five_hour": {"utilization": 5, "resets_at": "soon"}})
        assert windows.reset_5h is None

    def test_fetch(self):
        body = json.dumps({"five_hour": {"utilization": 10}}).encode()
        resp = MagicMock()
        resp.read.return_value = body
        resp.__enter__.return_value = resp
        with patch("session_orchestrator.integrations.usage.urllib_request.urlopen", return_value=resp) as urlopen:
            windows = usage.fetch_usage("https://example.test/usage", "tok", timeout=4)
        assert windows.pct_5h == 10.0
        req = urlopen.call_args.args[0]
        assert req.get_header("Authorization") == "Bearer tok"
        assert urlopen.call_args.kwargs["timeout"] == 4

    def test_fetch_unreachable(self):
        with patch("session_orchestrator.integrations.usage.urllib_request.urlopen",
                   side_effect=URLError("refused")):
            with pytest.raises(usage.UsageFetchError, match="unreachable"):
                usage.fetch_usage("https://example.test/usage", "tok")

    def test_fetch_bad_json(self):
        resp = MagicMock()
        resp.read.return_value = b"<html>"
        resp.__enter__.return_value = resp
        with patch("session_orchestrator.integrations.usage.urllib_request.urlopen", return_value=resp):
            with pytest.raises(usage.UsageFetchError, match="invalid JSON"):
                usage.fetch_usage("https://example.test/usage", "tok")


class TestTmux:
    def test_open_window_in_existing_session(self):
        term = TmuxTerminal(session_name="sorc")
        with patch.object(term, "_tmux", side_effect=["", "sorc:@4"]) as tmux:
            target = term.open_window("fix-bug", "/work/tree", command="claude 'go'")
        assert target == "sorc:@4"
        args = tmux.call_args_list[1].args
        assert args[0] == "new-window"
        assert args[-1] == "claude 'go'"
        assert "/work/tree" in args

    def test_open_window_starts_session(self):
        term = TmuxTerminal(session_name="sorc")
        with patch.object(term, "_tmux", side_effect=[TerminalError("no server"), "sorc:@1"]) as tmux:
            term.open_window("fix-bug", "/work/tree")
        assert tmux.call_args_list[1].args[0] == "new-session"

    def test_send_text_is_literal_then_enter(self):
        term = TmuxTerminal()
        with patch.object(term, "_tmux") as tmux, \
                patch("session_orchestrator.integrations.terminal.time.sleep"):
            term.send_text("sorc:@4", "do it; rm nothing")
        assert tmux.call_args_list[0].args == ("send-keys", "-t", "sorc:@4", "-l", "do it; rm nothing")
        assert tmux.call_args_list[1].args == ("send-keys", "-t", "sorc:@4", "Enter")

    def test_missing_tmux(self):
        term = TmuxTerminal()
        with patch("session_orchestrator.integrations.terminal.subprocess.run",
                   side_effect=FileNotFoundError("tmux")):
            with pytest.raises(TerminalError, match="not found"):
                term.close_window("sorc:@4")


class TestWorkspace:
    def test_merge_skips_missing_and_blank(self):
        with tempfile.TemporaryDirectory() as tmp:
            a = Path(tmp) / "a.md"
            b = Path(tmp) / "b.md"
            a.write_text("first\n")
            b.write_text("   \n")
            merged = workspace.merge_instructions([a, Path(tmp) / "missing.md", b])
        assert merged == "first"

    def test_seed_hooks_later_dirs_override(self):
        with tempfile.TemporaryDirectory() as tmp:
            shared = Path(tmp) / "shared"
            project = Path(tmp) / "project"
            shared.mkdir()
            project.mkdir()
            (shared / "stop.sh").write_text("shared stop")
            (shared / "start.sh").write_text("shared start")
            (project / "stop.sh").write_text("project stop")
            dest = Path(tmp) / "dest"

            copied = workspace.seed_hooks([shared, project, Path(tmp) / "absent"], dest)

            assert sorted(p.name for p in copied) == ["start.sh", "stop.sh"]
            assert (dest / "stop.sh").read_text() == "project stop"
            assert (dest / "start.sh").read_text() == "shared start"

    def test_seed_hooks_nothing_to_copy(self):
        with tempfile.TemporaryDirectory() as tmp:
            dest = Path(tmp) / "dest"
            assert workspace.seed_hooks([Path(tmp) / "none"], dest) == []
            assert not dest.exists()


class TestConfig:
    def test_defaults_follow_home(self):
        config = Config(home_dir=Path("/srv/sorc"))
        assert config.db_path == Path("/srv/sorc/sorc.db")
        assert config.worktree_dir == Path("/srv/sorc/worktrees")
        assert config.socket_path == Path("/srv/sorc/status.sock")
        assert config.config_dir == Path("/srv/sorc/config")

    def test_from_env(self):
        env = {
            "SORC_HOME": "/srv/sorc",
            "SORC_SOCKET_PATH": "/run/sorc.sock",
            "SORC_AGENT_COMMAND": "claude --verbose",
            "SORC_PR_POLL_INTERVAL": "30",
            "SORC_RATE_LIMIT_MINUTES": "45",
            "SORC_USAGE_TOKEN": "",
            "SORC_CLAUDE_DIR": "/srv/claude",
        }
        with patch.dict("os.environ", env, clear=True):
            config = Config.from_env()
        assert config.db_path == Path("/srv/sorc/sorc.db")
        assert config.socket_path == Path("/run/sorc.sock")
        assert config.agent_command == "claude --verbose"
        assert config.pr_poll_interval == 30.0
        assert config.rate_limit_default_minutes == 45
        assert config.usage_token is None
        assert config.claude_dir == Path("/srv/claude")


def _assistant(input_tokens, output_tokens, **extra):
    usage_counts = {"input_tokens": input_tokens, "output_tokens": output_tokens, **extra}
    return json.dumps({"type": "assistant", "message": {"role": "assistant", "usage": usage_counts}})


class TestTranscript:
    def test_project_dir_replaces_separators(self):
        path = transcript.project_dir("/home/me/wt/fix_bug.v2", Path("/c"))
        assert path == Path("/c/projects/-home-me-wt-fix-bug-v2")

    def test_read_usage_sums_assistant_messages(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "a.jsonl"
            path.write_text("\n".join([
                json.dumps({"type": "user", "message": {"usage": {"input_tokens": 999}}}),
                _assistant(100, 20, cache_creation_input_tokens=50, cache_read_input_tokens=400),
                "",
                "not json",
                _assistant(10, 5, cache_read_input_tokens=None),
                json.dumps({"type": "assistant", "message": "text"}),
            ]) + "\n")
            assert transcript.read_usage(path) == transcript.TranscriptUsage(560, 25)

    def test_latest_transcript_by_mtime(self):
        with tempfile.TemporaryDirectory() as tmp:
            old = Path(tmp) / "old.jsonl"
            new = Path(tmp) / "new.jsonl"
            old.write_text(_assistant(1, 1) + "\n")
            new.write_text(_assistant(2, 2) + "\n")
            (Path(tmp) / "notes.txt").write_text("x")
            os.utime(old, (1_000_000, 1_000_000))
            os.utime(new, (2_000_000, 2_000_000))
            assert transcript.latest_transcript(Path(tmp)) == new

    def test_worktree_usage(self):
        with tempfile.TemporaryDirectory() as tmp:
            claude_dir = Path(tmp)
            assert transcript.worktree_usage("/wt/demo", claude_dir) is None
            directory = transcript.project_dir("/wt/demo", claude_dir)
            directory.mkdir(parents=True)
            assert transcript.worktree_usage("/wt/demo", claude_dir) is None
            (directory / "s.jsonl").write_text(_assistant(7, 3) + "\n")
            assert transcript.worktree_usage("/wt/demo", claude_dir) == transcript.TranscriptUsage(7, 3)
