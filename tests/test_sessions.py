"""Tests for session launch, teardown and prompt construction."""

import json
import os
import re
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from session_orchestrator.config import Config
from session_orchestrator.core import projects as projects_mod
from session_orchestrator.core import sessions as sessions_mod
from session_orchestrator.core import status as status_mod
from session_orchestrator.core import tasks as tasks_mod
from session_orchestrator.core.tasks import TransitionError
from session_orchestrator.db.engine import init_db
from session_orchestrator.db.models import ClaudeStatus, Subtask, Task, TaskMode, TaskStatus
from session_orchestrator.integrations.terminal import TerminalError

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


@pytest.fixture
def workdir():
    """A temp dir holding a git repo with an initial commit on main."""
    with tempfile.TemporaryDirectory() as tmp:
        repo = Path(tmp) / "repo"
        repo.mkdir()
        subprocess.run(["git", "init"], cwd=repo, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=repo, capture_output=True, check=True)
        (repo / "README.md").write_text("# Test\n")
        subprocess.run(["git", "add", "."], cwd=repo, capture_output=True, check=True)
        subprocess.run(["git", "commit", "-m", "init"], cwd=repo, capture_output=True, check=True, env=GIT_ENV)
        yield Path(tmp)


@pytest.fixture
def config(workdir):
    return Config(home_dir=workdir / "home")


@pytest.fixture
def db(workdir, config):
    conn = init_db(config.db_path)
    projects_mod.create_project(conn, "demo", str(workdir / "repo"))
    yield conn
    conn.close()


@pytest.fixture
def terminal():
    term = MagicMock()
    term.open_window.return_value = "sorc:@7"
    return term


def _worktrees(repo: Path) -> str:
    return subprocess.run(
        ["git", "worktree", "list"], cwd=repo, capture_output=True, text=True, check=True
    ).stdout


class TestLaunch:
    def test_launch_creates_workspace_and_binds(self, db, config, terminal):
        tasks_mod.create_task(db, "demo", "Add login", "Build the login form")

        session = sessions_mod.launch_task(db, config, "add-login", terminal=terminal)

        worktree = Path(session.worktree_path)
        assert worktree.is_dir()
        assert (worktree / "README.md").exists()
        assert session.branch_name.startswith("task/add-login-")
        assert session.terminal_target == "sorc:@7"
        assert session.claude_status == ClaudeStatus.WORKING

        task = tasks_mod.get_task(db, "add-login")
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.session_id == session.id

        label, cwd = terminal.open_window.call_args.args
        assert cwd == worktree
        command = terminal.open_window.call_args.kwargs["command"]
        assert command.startswith("claude ")
        assert "Build the login form" in command

    def test_window_opens_before_binding(self, db, config, terminal):
        tasks_mod.create_task(db, "demo", "Add login")
        seen = []
        terminal.open_window.side_effect = lambda *a, **kw: (
            seen.append(tasks_mod.get_task(db, "add-login").status) or "sorc:@7"
        )

        sessions_mod.launch_task(db, config, "add-login", terminal=terminal)

        assert seen == [TaskStatus.PENDING]
        assert tasks_mod.get_task(db, "add-login").status == TaskStatus.IN_PROGRESS

    def test_launch_writes_status_wiring(self, db, config, terminal):
        tasks_mod.create_task(db, "demo", "Wire it")
        session = sessions_mod.launch_task(db, config, "wire-it", terminal=terminal)
        worktree = Path(session.worktree_path)

        assert (worktree / ".sorc_session_id").read_text().strip() == session.id
        mcp_config = json.loads((worktree / ".mcp.json").read_text())
        server = mcp_config["mcpServers"]["session-orchestrator"]
        assert server["args"] == ["mcp", "serve"]
        assert server["env"]["SORC_SESSION_ID"] == session.id
        assert server["env"]["SORC_SOCKET_PATH"] == str(config.socket_path)

        settings = json.loads((worktree / ".claude" / "settings.local.json").read_text())
        stop_command = settings["hooks"]["Stop"][0]["hooks"][0]["command"]
        assert f"--session-id {session.id}" in stop_command
        assert "--detect-pr" in stop_command
        assert "--transcript-usage" in stop_command

    def test_launch_merges_instructions(self, db, config, workdir):
        config.config_dir.mkdir(parents=True)
        (config.config_dir / "CLAUDE.md").write_text("Global rules")
        project_dir = config.config_dir / "projects" / "demo"
        (project_dir / "hooks").mkdir(parents=True)
        (project_dir / "CLAUDE.md").write_text("Project rules")
        (project_dir / "hooks" / "pre.sh").write_text("#!/bin/sh\n")
        tasks_mod.create_task(db, "demo", "Follow rules")

        session = sessions_mod.launch_task(db, config, "follow-rules")

        worktree = Path(session.worktree_path)
        assert (worktree / "CLAUDE.local.md").read_text() == "Global rules\n\nProject rules\n"
        assert (worktree / ".claude" / "hooks" / "pre.sh").exists()

    def test_launch_without_terminal(self, db, config):
        tasks_mod.create_task(db, "demo", "Headless")
        session = sessions_mod.launch_task(db, config, "headless")
        assert session.terminal_target is None
        assert tasks_mod.get_task(db, "headless").status == TaskStatus.IN_PROGRESS

    def test_only_pending_tasks_launch(self, db, config):
        tasks_mod.create_task(db, "demo", "Twice")
        sessions_mod.launch_task(db, config, "twice")
        with pytest.raises(TransitionError):
            sessions_mod.launch_task(db, config, "twice")

    def test_unknown_task(self, db, config):
        with pytest.raises(ValueError, match="Task not found"):
            sessions_mod.launch_task(db, config, "ghost")

    def test_failed_window_cleans_up(self, db, config, terminal, workdir):
        tasks_mod.create_task(db, "demo", "Doomed")
        terminal.open_window.side_effect = TerminalError("no tmux server")

        with pytest.raises(TerminalError):
            sessions_mod.launch_task(db, config, "doomed", terminal=terminal)

        task = tasks_mod.get_task(db, "doomed")
        assert task.status == TaskStatus.PENDING
        assert task.session_id is None
        assert sessions_mod.list_sessions(db, active_only=True) == []
        assert not any(config.worktree_dir.rglob("README.md"))
        assert "task/doomed" not in _worktrees(workdir / "repo")


class TestTeardown:
    def test_teardown_records_stats_and_removes_worktree(self, db, config, terminal, workdir):
        tasks_mod.create_task(db, "demo", "Edit readme")
        session = sessions_mod.launch_task(db, config, "edit-readme", terminal=terminal)
        worktree = Path(session.worktree_path)
        (worktree / "README.md").write_text("# Test\nmore text\n")

        closed = sessions_mod.teardown_session(db, session.id, terminal=terminal)

        assert not closed.is_active
        assert closed.files_changed == 1
        assert closed.lines_added == 1
        assert not worktree.exists()
        terminal.close_window.assert_called_once_with("sorc:@7")
        assert str(worktree) not in _worktrees(workdir / "repo")

    def test_teardown_tolerates_terminal_failure(self, db, config, terminal):
        tasks_mod.create_task(db, "demo", "Stubborn")
        session = sessions_mod.launch_task(db, config, "stubborn", terminal=terminal)
        terminal.close_window.side_effect = TerminalError("window gone")

        closed = sessions_mod.teardown_session(db, session.id, terminal=terminal)

        assert not closed.is_active
        assert not Path(session.worktree_path).exists()

    def test_teardown_is_idempotent(self, db, config):
        tasks_mod.create_task(db, "demo", "Once")
        session = sessions_mod.launch_task(db, config, "once")
        first = sessions_mod.teardown_session(db, session.id)
        second = sessions_mod.teardown_session(db, session.id)
        assert first.closed_at == second.closed_at

    def test_teardown_unknown(self, db):
        with pytest.raises(ValueError, match="Session not found"):
            sessions_mod.teardown_session(db, "ghost")


class TestFinish:
    def test_finish_tears_down(self, db, config, terminal):
        tasks_mod.create_task(db, "demo", "Finish me")
        session = sessions_mod.launch_task(db, config, "finish-me", terminal=terminal)
        status_mod.report_task_done(db, session.id, "done", pr_url="https://github.com/o/r/pull/1")

        task = sessions_mod.finish_task(db, "finish-me", terminal=terminal)

        assert task.status == TaskStatus.DONE
        assert not sessions_mod.get_session(db, session.id).is_active
        assert not Path(session.worktree_path).exists()

    def test_finish_keeps_session_with_open_work(self, db, config):
        tasks_mod.create_task(db, "demo", "First", mode="autonomous")
        tasks_mod.create_task(db, "demo", "Second", mode="autonomous")
        session = sessions_mod.launch_task(db, config, "first")
        status_mod.report_task_done(db, session.id, "done")
        assert tasks_mod.get_task(db, "second").status == TaskStatus.IN_PROGRESS

        sessions_mod.finish_task(db, "first")

        assert sessions_mod.get_session(db, session.id).is_active
        assert Path(session.worktree_path).exists()

    def test_finish_requires_review(self, db, config):
        tasks_mod.create_task(db, "demo", "Early")
        sessions_mod.launch_task(db, config, "early")
        with pytest.raises(TransitionError):
            sessions_mod.finish_task(db, "early")


class TestFocusAndFeeder:
    def test_focus(self, db, terminal):
        session = sessions_mod.create_session(db, "demo", "task/x", "/tmp/x", terminal_target="sorc:@2")
        sessions_mod.focus_session(db, session.id, terminal)
        terminal.focus.assert_called_once_with("sorc:@2")

    def test_focus_without_window(self, db, terminal):
        session = sessions_mod.create_session(db, "demo", "task/x", "/tmp/x")
        with pytest.raises(ValueError, match="no terminal window"):
            sessions_mod.focus_session(db, session.id, terminal)

    def test_feeder_types_prompt(self, db, terminal):
        session = sessions_mod.create_session(db, "demo", "task/x", "/tmp/x", terminal_target="sorc:@3")
        sessions_mod.TerminalFeeder(terminal)(session, "Do the thing")
        terminal.send_text.assert_called_once_with("sorc:@3", "Do the thing")

    def test_feeder_needs_window(self, db, terminal):
        session = sessions_mod.create_session(db, "demo", "task/x", "/tmp/x")
        with pytest.raises(TerminalError):
            sessions_mod.TerminalFeeder(terminal)(session, "Do the thing")


class TestPrompts:
    def test_branch_name(self):
        branch = sessions_mod.generate_branch_name("Fix: the Parser!")
        assert re.fullmatch(r"task/fix-the-parser-[0-9a-f]{8}", branch)

    def test_branch_names_unique(self):
        assert sessions_mod.generate_branch_name("Same") != sessions_mod.generate_branch_name("Same")

    def test_task_prompt(self):
        task = Task(id="t", project_id="p", title="Fix parser", description="It crashes")
        prompt = sessions_mod.build_task_prompt(task, "develop")
        assert prompt.startswith("# Fix parser\n\nIt crashes")
        assert "`develop`" in prompt
        assert "task_done" in prompt
        assert sessions_mod.AUTONOMOUS_SUFFIX not in prompt

    def test_autonomous_prompt(self):
        task = Task(id="t", project_id="p", title="Fix parser", mode=TaskMode.AUTONOMOUS)
        assert sessions_mod.build_task_prompt(task).endswith(sessions_mod.AUTONOMOUS_SUFFIX)

    def test_subtask_prompt(self):
        task = Task(id="t", project_id="p", title="Fix parser")
        sub = Subtask(id="s", task_id="t", title="Add a failing test", description="Use pytest")
        prompt = sessions_mod.build_task_prompt(task, "main", sub)
        assert prompt.startswith("# Fix parser: Add a failing test")
        assert "Use pytest" in prompt
        assert "pull request" not in prompt

    def test_agent_command_line_quotes(self):
        line = sessions_mod.agent_command_line("claude", "it's a test")
        assert line == "claude 'it'\"'\"'s a test'"
