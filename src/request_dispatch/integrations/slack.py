"""Slack Web API integration: mirrors lifecycle notifications into a channel."""

import logging
from dataclasses import dataclass

from request_dispatch.db.models import Notification

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
    client=None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = client or get_client(token)
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


EVENT_EMOJI = {
    "PROJECT_REQUEST": ":inbox_tray:",
    "PM_ASSIGNED": ":bust_in_silhouette:",
    "ENGINEER_ASSIGNED": ":hammer_and_wrench:",
    "ENGINEER_ACCEPTED": ":large_blue_circle:",
    "STATUS_REVIEW": ":eyes:",
    "CLIENT_RATED": ":star:",
    "PROJECT_CLOSED": ":white_check_mark:",
    "PROJECT_REOPENED": ":arrows_counterclockwise:",
    "CLIENT_REOPEN_REQUEST": ":raising_hand:",
}


def format_notification(notification: Notification) -> list[dict]:
    """Format a lifecycle notification as Slack blocks."""
    emoji = EVENT_EMOJI.get(notification.type, ":grey_question:")
    refs = []
    if notification.request_id:
        refs.append(f"Request: `{notification.request_id}`")
    if notification.task_id:
        refs.append(f"Task: `{notification.task_id}`")
    refs.append(f"For: {notification.user_id}")

    text = f"{emoji} *{notification.title}*"
    if notification.body:
        text += f"\n{notification.body}"
    text += "\n" + " | ".join(refs)

    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": text},
        }
    ]


class SlackSink:
    """Event bus sink posting every notification to one channel."""

    def __init__(self, token: str | None, channel: str, client=None):
        self.token = token
        self.channel = channel
        self.client = client or get_client(token)

    def deliver(self, notification: Notification):
        send_message(
            self.token,
            self.channel,
            f"{notification.title}: {notification.body}",
            blocks=format_notification(notification),
            client=self.client,
        )
        logger.debug("Posted %s for %s to Slack", notification.type, notification.user_id)
