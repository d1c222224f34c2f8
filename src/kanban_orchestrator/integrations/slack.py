"""Slack Web API integration."""

import logging
import threading
from dataclasses import dataclass

from kanban_orchestrator.core.events import Event, EventBus

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


def format_agent_notification(ticket_id: str, outcome: str, detail: str | None = None) -> list[dict]:
    """Format an agent lifecycle notice as Slack blocks."""
    headings = {
        "completed": ":white_check_mark: *Agent finished, ready for review*",
        "blocked": ":raising_hand: *Agent needs input*",
        "failed": ":red_circle: *Agent failed*",
    }
    heading = headings.get(outcome, ":grey_question: *Agent update*")
    text = f"{heading}\nTicket: `{ticket_id}`\nBranch: `ticket/{ticket_id}`"
    if detail:
        text += f"\n>{detail}"
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": text},
        }
    ]


class SlackNotifier:
    """Posts agent completion, blocked and failed notices to one channel.

    Does nothing unless both a token and a channel are configured. Posting
    happens off the event loop and failures are only logged.
    """

    EVENTS = {
        "agent.completed": "completed",
        "agent.blocked": "blocked",
        "agent.failed": "failed",
    }

    def __init__(self, token: str | None, channel: str | None, background: bool = True):
        self.token = token
        self.channel = channel
        self.background = background

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.channel)

    def attach(self, events: EventBus):
        if not self.enabled:
            logger.debug("Slack notifications disabled")
            return
        events.subscribe(self.handle)

    def handle(self, event: Event):
        outcome = self.EVENTS.get(event.type)
        if outcome is None:
            return
        ticket_id = event.payload.get("ticket_id") or event.ticket_id or "?"
        detail = event.payload.get("question") or event.payload.get("error")
        if self.background:
            threading.Thread(
                target=self._post, args=(ticket_id, outcome, detail), name="slack-notify", daemon=True
            ).start()
        else:
            self._post(ticket_id, outcome, detail)

    def _post(self, ticket_id: str, outcome: str, detail: str | None):
        blocks = format_agent_notification(ticket_id, outcome, detail)
        try:
            send_message(self.token, self.channel, f"Agent {outcome}: {ticket_id}", blocks=blocks)
        except Exception:
            logger.exception("Slack notification for ticket %s failed", ticket_id)
