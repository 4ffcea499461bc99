# tests/test_turnstile_verifier.py
"""Tests for chatbridge/transport/turnstile_verifier.py and the /turnstile/verify-chat handler."""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from chatbridge.infra.metrics import get_metrics_collector
from chatbridge.transport.turnstile_verifier import (
    RETRY_AFTER_MS,
    ChallengeVerifier,
    VerificationOutcome,
    classify_error_codes,
    make_idempotency_key,
)
from chatbridge.transport.verify_chat import verify_chat_handler


def _mock_session(status: int = 200, body: dict | str | None = None, raises: Exception | None = None) -> MagicMock:
    if body is None:
        body = {"success": True, "challenge_ts": "2024-05-01T10:00:00Z", "hostname": "example.com", "action": "chat"}
    resp = MagicMock()
    resp.status = status
    resp.text = AsyncMock(return_value=body if isinstance(body, str) else json.dumps(body))

    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    if raises is not None:
        session.post = MagicMock(side_effect=raises)
    else:
        session.post = MagicMock(return_value=ctx)
    return session


def _verifier(session: MagicMock, secret: str = "0x4AAAAAAA-secret") -> ChallengeVerifier:
    return ChallengeVerifier(
        secret_key=secret,
        verify_url="https://challenges.example.com/siteverify",
        timeout=20.0,
        session_factory=lambda: session,
    )


class TestClassifyErrorCodes:
    def test_expired_or_duplicate(self):
        assert classify_error_codes(["timeout-or-duplicate"]) == ("Chat verification expired or already used", True)

    def test_bad_secret_not_retryable(self):
        assert classify_error_codes(["invalid-input-secret"]) == ("Chat verification configuration error", False)

    def test_bad_request(self):
        assert classify_error_codes(["bad-request"]) == ("Invalid chat verification request", True)

    def test_unknown(self):
        assert classify_error_codes(["invalid-input-response"]) == ("Chat verification failed", True)
        assert classify_error_codes([]) == ("Chat verification failed", True)

    def test_expired_takes_precedence(self):
        message, _ = classify_error_codes(["bad-request", "timeout-or-duplicate"])
        assert message == "Chat verification expired or already used"


class TestIdempotencyKey:
    def test_format(self):
        key = make_idempotency_key("session_1_abc")
        prefix, _, rest = key.partition("session_1_abc_")
        assert prefix == "chat_"
        millis, suffix = rest.split("_")
        assert millis.isdigit()
        assert len(suffix) == 9

    def test_anonymous(self):
        assert make_idempotency_key(None).startswith("chat_anon_")


class TestChallengeVerifier:
    @pytest.mark.asyncio
    async def test_success(self):
        session = _mock_session()
        outcome = await _verifier(session).verify("tok", session_id="s1", refresh_attempt=True, remote_ip="203.0.113.5")

        assert outcome.status_code == 200
        assert outcome.success is True
        assert outcome.body["challengeTs"] == "2024-05-01T10:00:00Z"
        assert outcome.body["hostname"] == "example.com"
        assert outcome.body["sessionInfo"]["verified"] is True
        assert outcome.body["sessionInfo"]["refreshAttempt"] is True

        form = session.post.call_args.kwargs["data"]
        assert form["secret"] == "0x4AAAAAAA-secret"
        assert form["response"] == "tok"
        assert form["remoteip"] == "203.0.113.5"
        assert form["idempotency_key"].startswith("chat_s1_")

        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["chat_verifications_total{kind=refresh,status=success}"] == 1

    @pytest.mark.asyncio
    async def test_rejected_token(self):
        session = _mock_session(body={"success": False, "error-codes": ["timeout-or-duplicate"]})
        outcome = await _verifier(session).verify("tok")

        assert outcome.status_code == 200
        assert outcome.body == {
            "success": False,
            "error": "Chat verification expired or already used",
            "errorCodes": ["timeout-or-duplicate"],
            "canRetry": True,
        }

    @pytest.mark.asyncio
    async def test_rejected_bad_secret_not_retryable(self):
        session = _mock_session(body={"success": False, "error-codes": ["invalid-input-secret"]})
        outcome = await _verifier(session).verify("tok")
        assert outcome.body["canRetry"] is False

    @pytest.mark.asyncio
    async def test_missing_secret(self):
        session = _mock_session()
        outcome = await _verifier(session, secret="").verify("tok")

        assert outcome.status_code == 500
        assert outcome.body == {"success": False, "error": "Server configuration error"}
        session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_service_error_status(self):
        session = _mock_session(status=502, body="Bad Gateway")
        outcome = await _verifier(session).verify("tok")

        assert outcome.status_code == 500
        assert outcome.body == {"success": False, "error": "Verification service error"}

    @pytest.mark.asyncio
    async def test_timeout(self):
        session = _mock_session(raises=asyncio.TimeoutError())
        outcome = await _verifier(session).verify("tok")

        assert outcome.status_code == 503
        assert outcome.body["canRetry"] is True
        assert outcome.body["retryAfter"] == RETRY_AFTER_MS

    @pytest.mark.asyncio
    async def test_connection_error(self):
        session = _mock_session(raises=aiohttp.ClientConnectionError("reset"))
        outcome = await _verifier(session).verify("tok")

        assert outcome.status_code == 500
        assert outcome.body["canRetry"] is True

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        session = _mock_session(body="<html>oops</html>")
        outcome = await _verifier(session).verify("tok")
        assert outcome.status_code == 500

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ["[true]", "true", "42", "null"])
    async def test_non_object_json_body(self, body):
        session = _mock_session(body=body)
        outcome = await _verifier(session).verify("tok")

        assert outcome.status_code == 500
        assert outcome.body == {"success": False, "error": "Verification service error"}


class TestVerifyChatHandler:
    def _request(self, body) -> MagicMock:
        request = MagicMock()
        request.state.request_id = "req-1"
        request.json = AsyncMock(return_value=body)
        request.client.host = "198.51.100.7"
        request.headers = {}
        return request

    @pytest.mark.asyncio
    async def test_missing_token_returns_400(self):
        verifier = MagicMock()
        verifier.verify = AsyncMock()

        response = await verify_chat_handler(self._request({"sessionId": "s1"}), verifier)

        assert response.status_code == 400
        assert json.loads(response.body) == {"success": False, "error": "Token is required"}
        verifier.verify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unreadable_body_returns_400(self):
        request = self._request(None)
        request.json = AsyncMock(side_effect=json.JSONDecodeError("Expecting value", "", 0))
        verifier = MagicMock()
        verifier.verify = AsyncMock()

        response = await verify_chat_handler(request, verifier)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_outcome_passed_through(self):
        verifier = MagicMock()
        verifier.verify = AsyncMock(return_value=VerificationOutcome(503, {"success": False, "canRetry": True}))

        response = await verify_chat_handler(
            self._request({"token": "tok", "sessionId": "s1", "refreshAttempt": True}),
            verifier,
        )

        assert response.status_code == 503
        assert json.loads(response.body)["canRetry"] is True
        verifier.verify.assert_awaited_once_with(
            "tok", session_id="s1", refresh_attempt=True, remote_ip="198.51.100.7",
        )
