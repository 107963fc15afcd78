"""Slack Web API integration."""

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
    logger.info("Posted to Slack channel %s", channel)

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_run_notification(outcome: str, spec: str, detail: str = "") -> list[dict]:
    """Format a run outcome as Slack blocks."""
    outcome_emoji = {
        "complete": ":white_check_mark:",
        "stuck": ":warning:",
        "failed": ":x:",
    }
    emoji = outcome_emoji.get(outcome, ":grey_question:")
    text = f"{emoji} *Run {outcome}*\nSpec: `{spec}`"
    if detail:
        text += f"\n{detail[:200]}"

    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": text},
        }
    ]
