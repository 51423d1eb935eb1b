"""Slack Web API integration: the default notification sink."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


_TYPE_EMOJI = {
    "info": ":information_source:",
    "success": ":white_check_mark:",
    "warning": ":warning:",
    "error": ":x:",
}


def format_notification(title: str, message: str, type: str = "info", priority: str = "normal") -> list[dict]:
    """Format a notification as Slack blocks."""
    emoji = _TYPE_EMOJI.get(type, ":grey_question:")
    header = f"{emoji} *{title}*"
    if priority == "high":
        header += " :rotating_light:"
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"{header}\n{message}"},
        }
    ]


class SlackNotifier:
    """Posts engine notifications to a single Slack channel."""

    def __init__(self, token: str, channel: str):
        self.token = token
        self.channel = channel

    def notify(
        self,
        title: str,
        message: str,
        type: str = "info",
        priority: str = "normal",
        category: str = "plan_orchestrator",
        source: str = "plan_orchestrator",
    ) -> None:
        try:
            send_message(
                self.token,
                self.channel,
                f"{title}: {message}",
                blocks=format_notification(title, message, type, priority),
            )
        except Exception as e:
            raise SlackError(f"Failed to post notification to {self.channel}: {e}") from e


class LogNotifier:
    """Notification sink used when Slack is not configured."""

    def notify(
        self,
        title: str,
        message: str,
        type: str = "info",
        priority: str = "normal",
        category: str = "plan_orchestrator",
        source: str = "plan_orchestrator",
    ) -> None:
        logger.info("[%s/%s] %s: %s", category, type, title, message)
