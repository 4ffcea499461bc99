# chatbridge/transport/chat_bridge.py
"""
POST /chat-bridge: direct, synchronous relay for the protected chat widget.

Unlike the webhook path this answers with the agent's reply, so the
caller waits for NLU and the Rocket.Chat post.

Checks, in order:
1. message / userId / roomId present               → else 400
2. sessionToken passes Turnstile verification      → else 403 SESSION_INVALID
3. per (userId, client ip) rate limit              → else 429 RATE_LIMITED
"""
from __future__ import annotations

import time

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from chatbridge.core.bridge import ChatSender, NluClient
from chatbridge.infra.logging_config import get_logger, LogContext
from chatbridge.infra.metrics import inc_counter
from chatbridge.infra.rate_limiter import InMemoryRateLimiter
from chatbridge.transport.schemas import ChatBridgeIn
from chatbridge.transport.security import _get_client_ip
from chatbridge.transport.turnstile_verifier import ChallengeVerifier

logger = get_logger(__name__)

VALIDATION_SESSION_ID = "chat_bridge_validation"
FALLBACK_RESPONSE = "I'm having trouble processing your request right now."


class ChatBridgeService:
    """Collaborators of the direct chat bridge, built once at startup."""

    def __init__(
        self,
        verifier: ChallengeVerifier,
        limiter: InMemoryRateLimiter,
        nlu: NluClient,
        sender: ChatSender,
        reply_alias: str = "Intellectif Bot",
    ):
        self.verifier = verifier
        self.limiter = limiter
        self.nlu = nlu
        self.sender = sender
        self.reply_alias = reply_alias

    async def session_valid(self, session_token: str | None) -> bool:
        if not session_token:
            logger.warning("Chat bridge: no session token provided")
            return False
        outcome = await self.verifier.verify(
            session_token,
            session_id=VALIDATION_SESSION_ID,
            refresh_attempt=False,
        )
        return outcome.success


async def chat_bridge_handler(request: Request, service: ChatBridgeService) -> JSONResponse:
    start_time = time.time()
    request_id = getattr(request.state, "request_id", None)

    try:
        body = ChatBridgeIn.model_validate(await request.json())
    except (ValueError, ValidationError):
        body = ChatBridgeIn()

    if not body.message or not body.userId or not body.roomId:
        logger.warning("Chat bridge: missing required fields")
        return JSONResponse(
            {"success": False, "error": "message, userId, and roomId are required"},
            status_code=400,
        )

    log_ctx = LogContext(logger, room_id=body.roomId, session_id=body.sessionId, request_id=request_id)

    if not await service.session_valid(body.sessionToken):
        log_ctx.warning(f"Chat bridge: session not verified, has_token={body.sessionToken is not None}")
        inc_counter("chat_bridge_rejected", reason="session_invalid")
        return JSONResponse(
            {
                "success": False,
                "error": "Chat session not verified. Please refresh the page.",
                "errorCode": "SESSION_INVALID",
            },
            status_code=403,
        )

    client_id = f"{body.userId}_{_get_client_ip(request)}"
    allowed, retry_after = service.limiter.is_allowed(client_id)
    if not allowed:
        inc_counter("chat_bridge_rejected", reason="rate_limited")
        return JSONResponse(
            {
                "success": False,
                "error": "Too many messages. Please wait before sending another message.",
                "errorCode": "RATE_LIMITED",
                "retryAfter": retry_after,
            },
            status_code=429,
            headers={"Retry-After": str(retry_after)},
        )

    nlu_started = time.time()
    nlu_result = await service.nlu.detect_intent(body.message, body.sessionId or body.userId)
    nlu_ms = round((time.time() - nlu_started) * 1000)

    if not nlu_result.success:
        log_ctx.error(f"Chat bridge: NLU processing failed: {nlu_result.error}")
        inc_counter("chat_bridge_errors", stage="nlu")
        return JSONResponse(
            {"success": False, "error": "Failed to get response from Dialogflow"},
            status_code=500,
        )

    post_started = time.time()
    reply = nlu_result.response or FALLBACK_RESPONSE
    posted = await service.sender.post_message(body.roomId, reply, service.reply_alias)
    post_ms = round((time.time() - post_started) * 1000)

    if not posted.success:
        log_ctx.error(f"Chat bridge: Rocket.Chat post failed: status={posted.status}, error={posted.error}")
        inc_counter("chat_bridge_errors", stage="outbound")
        return JSONResponse(
            {"success": False, "error": "Failed to send response to Rocket.Chat"},
            status_code=500,
        )

    total_ms = round((time.time() - start_time) * 1000)
    log_ctx.info(
        f"Chat bridge completed: msg_id={posted.message_id}, nlu={nlu_ms}ms, "
        f"post={post_ms}ms, total={total_ms}ms"
    )
    inc_counter("chat_bridge_completed")

    return JSONResponse({
        "success": True,
        "dialogflowResponse": nlu_result.response,
        "intent": nlu_result.intent,
        "confidence": nlu_result.confidence,
        "rocketChatMessageId": posted.message_id,
        "processingInfo": {
            "totalDuration": total_ms,
            "dialogflowDuration": nlu_ms,
            "rocketChatDuration": post_ms,
            "protected": True,
        },
    })
