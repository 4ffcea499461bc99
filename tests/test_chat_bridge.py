# tests/test_chat_bridge.py
"""Tests for chatbridge/transport/chat_bridge.py — direct protected relay."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatbridge.core.domain import NluResult, RelayResult
from chatbridge.infra.rate_limiter import InMemoryRateLimiter
from chatbridge.transport.chat_bridge import (
    VALIDATION_SESSION_ID,
    ChatBridgeService,
    chat_bridge_handler,
)
from chatbridge.transport.turnstile_verifier import VerificationOutcome

VALID_BODY = {
    "message": "What are your hours?",
    "userId": "user-1",
    "roomId": "room-1",
    "sessionId": "session_1_abc",
    "sessionToken": "tok",
}


def _request(body, client_ip: str = "203.0.113.5") -> MagicMock:
    request = MagicMock()
    request.state.request_id = "req-1"
    request.json = AsyncMock(return_value=body)
    request.client.host = client_ip
    request.headers = {}
    return request


def _service(
    verified: bool = True,
    nlu_result: NluResult | None = None,
    post_result: RelayResult | None = None,
    limiter: InMemoryRateLimiter | None = None,
) -> ChatBridgeService:
    verifier = MagicMock()
    verifier.verify = AsyncMock(
        return_value=VerificationOutcome(200, {"success": verified})
    )
    nlu = MagicMock()
    nlu.detect_intent = AsyncMock(
        return_value=nlu_result or NluResult(success=True, response="We open at 9.", intent="hours", confidence=0.8)
    )
    sender = MagicMock()
    sender.post_message = AsyncMock(
        return_value=post_result or RelayResult(success=True, status=200, message_id="msg-1")
    )
    return ChatBridgeService(
        verifier=verifier,
        limiter=limiter if limiter is not None else InMemoryRateLimiter(max_requests=10, window_seconds=60, block_seconds=300),
        nlu=nlu,
        sender=sender,
        reply_alias="Intellectif Bot",
    )


def _body(response) -> dict:
    return json.loads(response.body)


class TestChatBridgeHandler:
    @pytest.mark.asyncio
    async def test_success(self):
        service = _service()
        response = await chat_bridge_handler(_request(VALID_BODY), service)

        assert response.status_code == 200
        body = _body(response)
        assert body["success"] is True
        assert body["dialogflowResponse"] == "We open at 9."
        assert body["intent"] == "hours"
        assert body["rocketChatMessageId"] == "msg-1"
        assert body["processingInfo"]["protected"] is True

        service.verifier.verify.assert_awaited_once_with(
            "tok", session_id=VALIDATION_SESSION_ID, refresh_attempt=False,
        )
        service.nlu.detect_intent.assert_awaited_once_with("What are your hours?", "session_1_abc")
        service.sender.post_message.assert_awaited_once_with("room-1", "We open at 9.", "Intellectif Bot")

    @pytest.mark.asyncio
    async def test_nlu_session_falls_back_to_user(self):
        service = _service()
        body = dict(VALID_BODY)
        del body["sessionId"]

        await chat_bridge_handler(_request(body), service)

        assert service.nlu.detect_intent.await_args.args[1] == "user-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["message", "userId", "roomId"])
    async def test_missing_field_returns_400(self, field):
        service = _service()
        body = dict(VALID_BODY)
        del body[field]

        response = await chat_bridge_handler(_request(body), service)

        assert response.status_code == 400
        service.verifier.verify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_token_is_session_invalid(self):
        service = _service()
        body = dict(VALID_BODY)
        del body["sessionToken"]

        response = await chat_bridge_handler(_request(body), service)

        assert response.status_code == 403
        assert _body(response)["errorCode"] == "SESSION_INVALID"
        service.verifier.verify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_token_is_session_invalid(self):
        service = _service(verified=False)
        response = await chat_bridge_handler(_request(VALID_BODY), service)

        assert response.status_code == 403
        assert _body(response)["errorCode"] == "SESSION_INVALID"
        service.nlu.detect_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limited_after_limit(self):
        service = _service(limiter=InMemoryRateLimiter(max_requests=2, window_seconds=60, block_seconds=300))

        for _ in range(2):
            assert (await chat_bridge_handler(_request(VALID_BODY), service)).status_code == 200
        response = await chat_bridge_handler(_request(VALID_BODY), service)

        assert response.status_code == 429
        body = _body(response)
        assert body["errorCode"] == "RATE_LIMITED"
        assert 0 < body["retryAfter"] <= 301
        assert response.headers["Retry-After"] == str(body["retryAfter"])

    @pytest.mark.asyncio
    async def test_rate_limit_is_per_user_and_ip(self):
        service = _service(limiter=InMemoryRateLimiter(max_requests=1, window_seconds=60))

        assert (await chat_bridge_handler(_request(VALID_BODY), service)).status_code == 200
        assert (await chat_bridge_handler(_request(VALID_BODY, client_ip="198.51.100.1"), service)).status_code == 200
        other_user = dict(VALID_BODY, userId="user-2")
        assert (await chat_bridge_handler(_request(other_user), service)).status_code == 200
        assert (await chat_bridge_handler(_request(VALID_BODY), service)).status_code == 429

    @pytest.mark.asyncio
    async def test_nlu_failure_returns_500(self):
        service = _service(nlu_result=NluResult(success=False, error="config_error"))
        response = await chat_bridge_handler(_request(VALID_BODY), service)

        assert response.status_code == 500
        assert _body(response)["error"] == "Failed to get response from Dialogflow"
        service.sender.post_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_post_failure_returns_500(self):
        service = _service(post_result=RelayResult(success=False, status=401, error="Rocket.Chat API error: 401"))
        response = await chat_bridge_handler(_request(VALID_BODY), service)

        assert response.status_code == 500
        assert _body(response)["error"] == "Failed to send response to Rocket.Chat"
