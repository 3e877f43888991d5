"""Slack notifications for task lifecycle events."""

import logging
from dataclasses import dataclass

from taskgraph.core.events import Event, EventBus, EventType

logger = logging.getLogger(__name__)

NOTIFY_EVENTS = (EventType.TASK_COMPLETED, EventType.TASK_CANCELLED, EventType.AGENT_SYNCED)


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

    response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_event_notification(event: Event) -> tuple[str, list[dict]]:
    """Plain-text fallback and Slack blocks for an event."""
    emoji = {
        EventType.TASK_COMPLETED: ":white_check_mark:",
        EventType.TASK_CANCELLED: ":no_entry_sign:",
        EventType.AGENT_SYNCED: ":large_blue_circle:",
    }.get(event.type, ":grey_question:")
    headline = {
        EventType.TASK_COMPLETED: "Task completed",
        EventType.TASK_CANCELLED: "Task cancelled",
        EventType.AGENT_SYNCED: "Agent started task",
    }.get(event.type, event.type.value)

    details = f"Status: *{event.status or '-'}*"
    if event.agent_id:
        details += f" | Agent: {event.agent_id}"
    if event.epic:
        details += f" | Epic: {event.epic}"

    text = f"{headline}: #{event.task_id} {event.title or ''}".rstrip()
    blocks = [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *{headline}*\n*{event.title or ''}* (`#{event.task_id}`)\n{details}",
            },
        }
    ]
    return text, blocks


class SlackNotifier:
    """Event subscriber that posts selected events to one channel."""

    def __init__(self, token: str, channel: str, client=None):
        self.channel = channel
        self.client = client or get_client(token)

    def __call__(self, event: Event):
        # Errors propagate to the bus, which logs and drops them.
        text, blocks = format_event_notification(event)
        msg = send_message(None, self.channel, text, blocks, client=self.client)
        logger.debug("Posted %s for #%s to %s", event.type.value, event.task_id, msg.channel)

    def attach(self, bus: EventBus) -> "SlackNotifier":
        bus.subscribe(self, NOTIFY_EVENTS)
        return self
