"""Review announcements posted through the Slack Web API."""

import logging

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a review announcement cannot be posted."""


def get_client(token: str | None) -> WebClient | None:
    if not token:
        return None
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> str:
    """Post to a channel and return the message timestamp."""
    client = get_client(token)
    if client is None:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Posting to {channel} failed: {e.response.get('error', e)}") from e

    logger.debug("Posted review announcement to %s", channel)
    return response["ts"]


def format_review_request(title: str, pr_url: str | None = None) -> list[dict]:
    """Blocks announcing that a task is waiting on a human reviewer."""
    lines = [":eyes: *Ready for review*", f"*{title}*"]
    if pr_url:
        lines.append(f"<{pr_url}|View Pull Request>")
    blocks = [{"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}}]
    if not pr_url:
        blocks.append(
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": "No pull request was reported for this task."}],
            }
        )
    return blocks
