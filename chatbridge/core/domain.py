from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Any


# ============================================================================
# INBOUND
# ============================================================================

@dataclass(frozen=True)
class AgentRef:
    """Agent currently assigned to a live-chat conversation"""
    id: str
    username: Optional[str] = None


@dataclass(frozen=True)
class InboundMessage:
    """
    One live-chat event, reduced to the message the bridge evaluates.
    This is the domain model that represents an incoming message.
    """
    conversation_id: str
    message_id: str
    sender_id: str
    text: str
    event_type: str
    room_id: str
    visitor_id: Optional[str] = None
    visitor_token: Optional[str] = None
    visitor_email: Optional[str] = None
    sender_username: Optional[str] = None
    sender_name: Optional[str] = None
    timestamp: Optional[str] = None
    agent: Optional[AgentRef] = None
    label: Optional[str] = None

    @property
    def session_id(self) -> str:
        """Stable NLU session identity: the visitor's contact token, else the sender id."""
        return self.visitor_token or self.sender_id


# ============================================================================
# BACKGROUND WORK
# ============================================================================

@dataclass(frozen=True)
class RelayTask:
    """Unit of background work handed to the dispatcher"""
    text: str
    room_id: str
    conversation_id: str
    session_id: str
    sender_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    label: Optional[str] = None

    @classmethod
    def from_message(cls, message: InboundMessage) -> "RelayTask":
        return cls(
            text=message.text.strip(),
            room_id=message.room_id,
            conversation_id=message.conversation_id,
            session_id=message.session_id,
            sender_id=message.sender_id,
            display_name=message.sender_name,
            email=message.visitor_email,
            label=message.label,
        )


# ============================================================================
# RESULTS
# ============================================================================

class Outcome(str, Enum):
    """What the webhook pipeline decided for one event"""
    NO_MESSAGES = "no_messages"
    DUPLICATE = "deduplication"
    BOT = "bot_detection"
    NOT_ELIGIBLE = "not_eligible"
    ACCEPTED = "accepted"


@dataclass
class BridgeOutcome:
    outcome: Outcome
    message: Optional[InboundMessage] = None
    task: Optional[RelayTask] = None
    background_processing: bool = False


@dataclass
class NluResult:
    """Reply from the conversational agent (never raised, always returned)"""
    success: bool
    response: Optional[str] = None
    intent: Optional[str] = None
    confidence: Optional[float] = None
    error: Optional[str] = None


@dataclass
class RelayResult:
    """Result of one call to the live-chat platform"""
    success: bool
    status: int = 0
    message_id: Optional[str] = None
    timestamp: Optional[str] = None
    error: Optional[str] = None
    body: Optional[str] = None  # Raw response body, preserved for diagnostics
    data: dict[str, Any] = field(default_factory=dict)
