"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_USAGE_URL = "https://api.anthropic.com/api/oauth/usage"


def _default_home() -> Path:
    return Path.home() / ".session_orchestrator"


def _default_claude_dir() -> Path:
    return Path.home() / ".claude"


@dataclass
class Config:
    home_dir: Path = field(default_factory=_default_home)
    db_path: Path | None = None
    worktree_dir: Path | None = None
    socket_path: Path | None = None
    config_dir: Path | None = None
    agent_command: str = "claude"
    notify_command: str | None = None
    notify_template: str = "completed {task}"
    slack_bot_token: str | None = None
    tick_interval: float = 0.5
    usage_poll_interval: float = 60.0
    pr_poll_interval: float = 15.0
    poll_timeout: float = 10.0
    usage_url: str = DEFAULT_USAGE_URL
    usage_token: str | None = None
    rate_limit_default_minutes: int = 30
    claude_dir: Path = field(default_factory=_default_claude_dir)

    def __post_init__(self):
        if self.db_path is None:
            self.db_path = self.home_dir / "sorc.db"
        if self.worktree_dir is None:
            self.worktree_dir = self.home_dir / "worktrees"
        if self.socket_path is None:
            self.socket_path = self.home_dir / "status.sock"
        if self.config_dir is None:
            self.config_dir = self.home_dir / "config"

    @classmethod
    def from_env(cls) -> "Config":
        home = Path(h) if (h := os.environ.get("SORC_HOME")) else _default_home()
        config = cls(home_dir=home)

        if db := os.environ.get("SORC_DB_PATH"):
            config.db_path = Path(db)

        if wt_dir := os.environ.get("SORC_WORKTREE_DIR"):
            config.worktree_dir = Path(wt_dir)

        if sock := os.environ.get("SORC_SOCKET_PATH"):
            config.socket_path = Path(sock)

        if cfg_dir := os.environ.get("SORC_CONFIG_DIR"):
            config.config_dir = Path(cfg_dir)

        if agent := os.environ.get("SORC_AGENT_COMMAND"):
            config.agent_command = agent

        config.notify_command = os.environ.get("SORC_NOTIFY_COMMAND") or None

        if template := os.environ.get("SORC_NOTIFY_TEMPLATE"):
            config.notify_template = template

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        if tick := os.environ.get("SORC_TICK_INTERVAL"):
            config.tick_interval = float(tick)

        if usage_iv := os.environ.get("SORC_USAGE_POLL_INTERVAL"):
            config.usage_poll_interval = float(usage_iv)

        if pr_iv := os.environ.get("SORC_PR_POLL_INTERVAL"):
            config.pr_poll_interval = float(pr_iv)

        if timeout := os.environ.get("SORC_POLL_TIMEOUT"):
            config.poll_timeout = float(timeout)

        if url := os.environ.get("SORC_USAGE_URL"):
            config.usage_url = url

        config.usage_token = os.environ.get("SORC_USAGE_TOKEN") or None

        if minutes := os.environ.get("SORC_RATE_LIMIT_MINUTES"):
            config.rate_limit_default_minutes = int(minutes)

        if claude_dir := os.environ.get("SORC_CLAUDE_DIR"):
            config.claude_dir = Path(claude_dir)

        return config


def get_config() -> Config:
    return Config.from_env()
