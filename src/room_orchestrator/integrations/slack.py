"""Slack Web API integration."""

from dataclasses import dataclass


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


def format_alert(
    room: str,
    severity: str,
    message: str,
    task_ids: list[str] | None = None,
    contract_ids: list[str] | None = None,
) -> list[dict]:
    """Format a room alert as Slack blocks."""
    severity_emoji = {
        "low": ":large_blue_circle:",
        "medium": ":large_orange_circle:",
        "high": ":red_circle:",
    }
    emoji = severity_emoji.get(severity, ":grey_question:")

    lines = [f"{emoji} *{severity.capitalize()} alert* in room `{room}`", message]
    if task_ids:
        lines.append("Tasks: " + ", ".join(f"`{t}`" for t in task_ids))
    if contract_ids:
        lines.append("Contracts: " + ", ".join(f"`{c}`" for c in contract_ids))

    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(lines)},
        }
    ]
