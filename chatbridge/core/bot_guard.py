"""
Bot-loop guard.

The relay's own replies re-enter the live-chat platform as ordinary
messages; without this guard they would be re-ingested as visitor input
and answered forever.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable

from chatbridge.core.domain import InboundMessage

MESSAGE_EVENT_TYPE = "Message"


class SenderClass(str, Enum):
    AGENT_SELF = "agent_self"
    KNOWN_BOT = "known_bot"
    ASSISTANT_PATTERN = "assistant_pattern"
    VISITOR = "visitor"


def classify_sender(
    message: InboundMessage,
    bot_usernames: Iterable[str],
    assistant_patterns: Iterable[str],
) -> SenderClass:
    """Classify the sender; checks run in order and the first match wins."""
    if message.agent is not None and message.sender_id == message.agent.id:
        return SenderClass.AGENT_SELF

    if message.sender_username and message.sender_username in set(bot_usernames):
        return SenderClass.KNOWN_BOT

    name = (message.sender_name or "").lower()
    if name and any(pattern.lower() in name for pattern in assistant_patterns):
        return SenderClass.ASSISTANT_PATTERN

    return SenderClass.VISITOR


def is_eligible(message: InboundMessage) -> bool:
    """Ordinary visitor text message with content."""
    return (
        message.event_type == MESSAGE_EVENT_TYPE
        and message.visitor_id is not None
        and message.sender_id == message.visitor_id
        and bool(message.text.strip())
    )
