# chatbridge/transport/rocketchat_webhook.py
"""
Rocket.Chat Omnichannel webhook handler.

Handles:
- POST /webhooks/rocketchat: live-chat events (visitor / agent messages)

Behaviour:
- 400 only for structurally invalid payloads
- 200 for every business outcome (duplicate, bot/agent, no-op, accepted)
  so the platform never retries a delivery it should not
- Fast 200: NLU and reply run on the relay dispatcher, never inline
"""
from __future__ import annotations

import json
import time

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from chatbridge.core.bridge import LivechatBridge
from chatbridge.core.domain import Outcome
from chatbridge.infra.logging_config import get_logger, LogContext
from chatbridge.infra.metrics import AppMetrics, inc_counter
from chatbridge.transport.schemas import LivechatWebhookPayload

logger = get_logger(__name__)

INVALID_PAYLOAD = "Invalid RocketChat webhook payload structure"


def _invalid_payload(detail: str) -> JSONResponse:
    AppMetrics.webhook_rejected("invalid_payload")
    return JSONResponse(
        {"success": False, "message": INVALID_PAYLOAD, "error": detail},
        status_code=400,
    )


async def rocketchat_webhook_handler(request: Request, bridge: LivechatBridge) -> JSONResponse:
    """
    Handle one Rocket.Chat webhook delivery (POST).

    Args:
        request: FastAPI request
        bridge: Bridge that owns the dedup cache and the relay dispatcher
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", None)

    try:
        raw = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Rocket.Chat webhook: invalid JSON payload")
        return _invalid_payload("Malformed JSON")

    try:
        payload = LivechatWebhookPayload.model_validate(raw)
    except ValidationError as exc:
        logger.warning(f"Rocket.Chat webhook: payload validation failed ({exc.error_count()} errors)")
        return _invalid_payload(INVALID_PAYLOAD)

    AppMetrics.webhook_received(payload.type or "unknown")

    log_ctx = LogContext(logger, conversation_id=payload.id, request_id=request_id)
    log_ctx.info(
        f"Rocket.Chat webhook received: type={payload.type}, "
        f"messages={len(payload.messages)}, has_agent={payload.agent is not None}"
    )

    message = payload.latest_message()
    if message is None:
        log_ctx.warning("Rocket.Chat webhook: no messages in payload")
        return JSONResponse({"success": True, "message": "No messages to process"})

    outcome = bridge.evaluate(message, request_id=request_id)

    if outcome.outcome is Outcome.DUPLICATE:
        return JSONResponse({
            "success": True,
            "message": "Duplicate message skipped",
            "skipped": True,
            "reason": Outcome.DUPLICATE.value,
        })

    if outcome.outcome is Outcome.BOT:
        return JSONResponse({
            "success": True,
            "message": "Bot/agent message skipped to avoid loops",
            "skipped": True,
            "reason": Outcome.BOT.value,
        })

    if outcome.outcome is Outcome.NOT_ELIGIBLE:
        return JSONResponse({
            "success": True,
            "message": "Message processed but no response required",
            "processed": False,
        })

    task = outcome.task
    elapsed_ms = round((time.time() - start_time) * 1000)
    inc_counter("webhook_ack_total", background=str(outcome.background_processing).lower())
    log_ctx.info(
        f"Rocket.Chat webhook acknowledged: elapsed={elapsed_ms}ms, "
        f"background={outcome.background_processing}"
    )

    return JSONResponse({
        "success": True,
        "message": "RocketChat webhook received and processing",
        "data": {
            "conversationId": payload.id,
            "messageProcessed": task.text,
            "userId": task.sender_id,
            "roomId": task.room_id,
            "sessionId": task.session_id,
            "webhookResponseTime": elapsed_ms,
            "backgroundProcessing": outcome.background_processing,
        },
    })
