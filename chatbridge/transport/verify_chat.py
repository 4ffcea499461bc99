# chatbridge/transport/verify_chat.py
"""
POST /turnstile/verify-chat: chat widget token verification.

Body: {"token": str, "sessionId"?: str, "refreshAttempt"?: bool}
"""
from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from chatbridge.infra.logging_config import get_logger, LogContext
from chatbridge.transport.schemas import ChatVerifyIn
from chatbridge.transport.security import _get_client_ip
from chatbridge.transport.turnstile_verifier import ChallengeVerifier

logger = get_logger(__name__)


async def verify_chat_handler(request: Request, verifier: ChallengeVerifier) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)

    try:
        body = ChatVerifyIn.model_validate(await request.json())
    except (ValueError, ValidationError):
        logger.warning("Chat verification: unreadable request body")
        return JSONResponse({"success": False, "error": "Token is required"}, status_code=400)

    if not body.token:
        logger.warning("Chat verification: missing token in request")
        return JSONResponse({"success": False, "error": "Token is required"}, status_code=400)

    client_ip = _get_client_ip(request)
    log_ctx = LogContext(logger, session_id=body.sessionId, request_id=request_id)
    log_ctx.info(
        f"Chat verification requested: token_length={len(body.token)}, "
        f"refresh={body.refreshAttempt}"
    )

    outcome = await verifier.verify(
        body.token,
        session_id=body.sessionId,
        refresh_attempt=body.refreshAttempt,
        remote_ip=client_ip,
    )
    return JSONResponse(outcome.body, status_code=outcome.status_code)
