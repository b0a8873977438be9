"""Fire-and-forget notifications for tasks entering review."""

import logging
import shlex
import subprocess
import threading

from session_orchestrator.integrations import slack as slack_mod

logger = logging.getLogger(__name__)


class Notifier:
    """Runs a local command and/or posts to Slack. Never raises, never waits."""

    def __init__(
        self,
        command: str | None = None,
        template: str = "completed {task}",
        slack_token: str | None = None,
    ):
        self.command = command
        self.template = template
        self.slack_token = slack_token

    @classmethod
    def from_config(cls, config) -> "Notifier":
        return cls(
            command=config.notify_command,
            template=config.notify_template,
            slack_token=config.slack_bot_token,
        )

    def render(self, title: str) -> str:
        return self.template.replace("{task}", title)

    def task_in_review(self, title: str, pr_url: str | None = None, slack_channel: str | None = None):
        if self.command:
            self._run_command(self.render(title))
        if self.slack_token and slack_channel:
            thread = threading.Thread(
                target=self._post_slack,
                args=(slack_channel, title, pr_url),
                name="slack-notify",
                daemon=True,
            )
            thread.start()

    def _run_command(self, message: str):
        try:
            argv = shlex.split(self.command) + [message]
            subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except (OSError, ValueError):
            logger.exception("Notification command failed: %s", self.command)

    def _post_slack(self, channel: str, title: str, pr_url: str | None):
        try:
            slack_mod.send_message(
                self.slack_token,
                channel,
                f"Ready for review: {title}",
                slack_mod.format_review_request(title, pr_url),
            )
        except (slack_mod.SlackError, OSError):
            logger.exception("Failed to send Slack notification for '%s'", title)
