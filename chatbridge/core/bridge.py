"""
Live-chat ↔ NLU bridge.

``evaluate`` runs the request-path gates for one inbound message
(dedup → bot-loop guard → admission) and, when they pass, hands a
``RelayTask`` to the dispatcher.  ``relay`` is the background half:
typing indicator, NLU round-trip, reply.
"""
from __future__ import annotations

import time
from typing import TYPE_CHECKING, Iterable, Protocol

from chatbridge.core.bot_guard import SenderClass, classify_sender, is_eligible
from chatbridge.core.domain import (
    BridgeOutcome,
    InboundMessage,
    NluResult,
    Outcome,
    RelayResult,
    RelayTask,
)
from chatbridge.infra.dedup_cache import DedupCache, make_dedup_key
from chatbridge.infra.logging_config import get_logger, LogContext
from chatbridge.infra.metrics import AppMetrics

if TYPE_CHECKING:
    from chatbridge.infra.dispatcher import RelayDispatcher

logger = get_logger(__name__)


class NluClient(Protocol):
    async def detect_intent(
        self,
        text: str,
        session_id: str,
        user_email: str | None = None,
        user_name: str | None = None,
    ) -> NluResult: ...


class ChatSender(Protocol):
    async def set_typing(self, room_id: str, typing: bool) -> RelayResult: ...

    async def post_message(self, room_id: str, text: str, alias: str) -> RelayResult: ...


class LivechatBridge:
    def __init__(
        self,
        dedup: DedupCache,
        nlu: NluClient,
        sender: ChatSender,
        *,
        bot_usernames: Iterable[str] = (),
        assistant_patterns: Iterable[str] = (),
        reply_alias: str = "Virtual Assistant",
        auto_response: bool = True,
    ):
        self.dedup = dedup
        self.nlu = nlu
        self.sender = sender
        self.bot_usernames = frozenset(bot_usernames)
        self.assistant_patterns = tuple(assistant_patterns)
        self.reply_alias = reply_alias
        self.auto_response = auto_response
        self.dispatcher: RelayDispatcher | None = None

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def evaluate(self, message: InboundMessage, request_id: str | None = None) -> BridgeOutcome:
        log_ctx = LogContext(
            logger,
            conversation_id=message.conversation_id,
            room_id=message.room_id,
            request_id=request_id,
        )

        if not self.dedup.check_and_mark(make_dedup_key(message.message_id, message.sender_id)):
            AppMetrics.message_skipped(Outcome.DUPLICATE.value)
            return BridgeOutcome(Outcome.DUPLICATE, message=message)

        sender_class = classify_sender(message, self.bot_usernames, self.assistant_patterns)
        if sender_class is not SenderClass.VISITOR:
            log_ctx.info(
                f"Skipping bot/agent message to avoid loops: class={sender_class.value}, "
                f"username={message.sender_username}"
            )
            AppMetrics.message_skipped(Outcome.BOT.value)
            return BridgeOutcome(Outcome.BOT, message=message)

        if not is_eligible(message):
            log_ctx.info(
                f"Message does not require processing: type={message.event_type}, "
                f"is_visitor={message.sender_id == message.visitor_id}, "
                f"has_content={bool(message.text.strip())}"
            )
            AppMetrics.message_skipped(Outcome.NOT_ELIGIBLE.value)
            return BridgeOutcome(Outcome.NOT_ELIGIBLE, message=message)

        task = RelayTask.from_message(message)
        started = False
        if self.auto_response and self.dispatcher is not None:
            started = self.dispatcher.submit(task)

        log_ctx.info(
            f"Visitor message accepted: length={len(task.text)}, "
            f"has_email={task.email is not None}, background={started}"
        )
        return BridgeOutcome(
            Outcome.ACCEPTED,
            message=message,
            task=task,
            background_processing=started,
        )

    # ------------------------------------------------------------------
    # Background path
    # ------------------------------------------------------------------

    async def relay(self, task: RelayTask) -> RelayResult | None:
        """
        Typing on → NLU → typing off → post reply.

        Typing is switched off exactly once, even when the NLU call raises.
        Returns the post-message result, or None when there was nothing to post.
        """
        log_ctx = LogContext(
            logger,
            conversation_id=task.conversation_id,
            room_id=task.room_id,
            session_id=task.session_id,
        )
        started_at = time.time()

        typing = await self.sender.set_typing(task.room_id, True)
        if not typing.success:
            log_ctx.warning(f"Typing indicator not started: {typing.error}")

        try:
            nlu_result = await self.nlu.detect_intent(
                task.text,
                task.session_id,
                user_email=task.email,
                user_name=task.display_name,
            )
        finally:
            stopped = await self.sender.set_typing(task.room_id, False)
            if not stopped.success:
                log_ctx.warning(f"Typing indicator not stopped: {stopped.error}")

        nlu_ms = (time.time() - started_at) * 1000

        if not nlu_result.success or not nlu_result.response:
            AppMetrics.relay_failed("nlu")
            log_ctx.warning(
                f"No valid response from NLU agent: error={nlu_result.error}, elapsed={nlu_ms:.0f}ms"
            )
            return None

        posted = await self.sender.post_message(task.room_id, nlu_result.response, self.reply_alias)
        total_ms = (time.time() - started_at) * 1000

        if not posted.success:
            AppMetrics.relay_failed("outbound")
            log_ctx.error(
                f"Reply not delivered: status={posted.status}, error={posted.error}, "
                f"body={(posted.body or '')[:200]}"
            )
            return posted

        log_ctx.info(
            f"Relay complete: intent={nlu_result.intent}, confidence={nlu_result.confidence}, "
            f"msg_id={posted.message_id}, nlu={nlu_ms:.0f}ms, total={total_ms:.0f}ms"
        )
        return posted
