# chatbridge/transport/schemas.py
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from chatbridge.core.domain import AgentRef, InboundMessage


class _LivechatModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LivechatUser(_LivechatModel):
    id: str = Field(alias="_id")
    username: str | None = None
    name: str | None = None


class LivechatMessage(_LivechatModel):
    id: str = Field(alias="_id")
    u: LivechatUser
    msg: str = ""
    ts: Any = None
    rid: str | None = None


class LivechatEmail(_LivechatModel):
    address: str


class LivechatVisitor(_LivechatModel):
    id: str = Field(alias="_id")
    token: str | None = None
    name: str | None = None
    username: str | None = None
    email: list[LivechatEmail] = Field(default_factory=list)


class LivechatAgent(_LivechatModel):
    id: str = Field(alias="_id")
    username: str | None = None
    name: str | None = None


class LivechatWebhookPayload(_LivechatModel):
    """Rocket.Chat Omnichannel webhook body (only the fields the bridge reads)"""
    id: str = Field(alias="_id", min_length=1)
    type: str = ""
    label: str | None = None
    visitor: LivechatVisitor | None = None
    agent: LivechatAgent | None = None
    messages: list[LivechatMessage]

    def latest_message(self) -> InboundMessage | None:
        """Domain view of the most recent message, or None if the list is empty."""
        if not self.messages:
            return None

        latest = self.messages[-1]
        visitor = self.visitor
        return InboundMessage(
            conversation_id=self.id,
            message_id=latest.id,
            sender_id=latest.u.id,
            text=latest.msg or "",
            event_type=self.type,
            room_id=latest.rid or self.id,
            visitor_id=visitor.id if visitor else None,
            visitor_token=visitor.token if visitor else None,
            visitor_email=visitor.email[0].address if visitor and visitor.email else None,
            sender_username=latest.u.username,
            sender_name=latest.u.name,
            timestamp=str(latest.ts) if latest.ts is not None else None,
            agent=AgentRef(id=self.agent.id, username=self.agent.username) if self.agent else None,
            label=self.label,
        )


class ChatVerifyIn(BaseModel):
    token: str | None = None
    sessionId: str | None = None
    refreshAttempt: bool = False


class ChatBridgeIn(BaseModel):
    message: str | None = None
    userId: str | None = None
    roomId: str | None = None
    sessionId: str | None = None
    sessionToken: str | None = None
