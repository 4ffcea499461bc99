# chatbridge/transport/turnstile_verifier.py
"""
Cloudflare Turnstile verification for the chat widget.

The browser obtains a challenge token and posts it to
/turnstile/verify-chat; this module checks it against the siteverify API.

Outcome mapping (status code / body):
- 200 success=True             token accepted
- 200 success=False            token rejected (error codes classified)
- 500 "Server configuration"   secret key not configured
- 500 "Verification service"   siteverify answered non-2xx
- 503 canRetry, retryAfter     siteverify timed out
- 500 canRetry                 connection error
"""
from __future__ import annotations

import asyncio
import json
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import aiohttp

from chatbridge.config import settings
from chatbridge.infra.http_client import get_verifier_session
from chatbridge.infra.logging_config import get_logger, mask_identifier
from chatbridge.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)

RETRY_AFTER_MS = 5000
_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class VerificationOutcome:
    """HTTP-ready result of one verification attempt"""
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return bool(self.body.get("success"))


def classify_error_codes(error_codes: list[str]) -> tuple[str, bool]:
    """Map siteverify error codes to (message, can_retry)."""
    if "timeout-or-duplicate" in error_codes:
        return "Chat verification expired or already used", True
    if "invalid-input-secret" in error_codes:
        return "Chat verification configuration error", False
    if "bad-request" in error_codes:
        return "Invalid chat verification request", True
    return "Chat verification failed", True


def make_idempotency_key(session_id: str | None) -> str:
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"chat_{session_id or 'anon'}_{int(time.time() * 1000)}_{suffix}"


class ChallengeVerifier:
    """Server-side Turnstile token check"""

    def __init__(
        self,
        secret_key: str | None = None,
        verify_url: str | None = None,
        timeout: float | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] = get_verifier_session,
    ):
        self._secret_key = secret_key if secret_key is not None else settings.turnstile_chat_secret_key
        self.verify_url = verify_url or settings.turnstile_verify_url
        self.timeout = timeout if timeout is not None else settings.turnstile_verify_timeout_seconds
        self._session_factory = session_factory

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    async def verify(
        self,
        token: str,
        session_id: str | None = None,
        refresh_attempt: bool = False,
        remote_ip: str | None = None,
    ) -> VerificationOutcome:
        start_time = time.time()

        if not self.configured:
            logger.error("Chat verification: turnstile_chat_secret_key not configured")
            inc_counter("turnstile_config_error")
            return VerificationOutcome(500, {"success": False, "error": "Server configuration error"})

        form = {
            "secret": self._secret_key,
            "response": token,
            "remoteip": remote_ip or "unknown",
            "idempotency_key": make_idempotency_key(session_id),
        }

        try:
            session = self._session_factory()
            async with session.post(
                self.verify_url,
                data=form,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                body_text = await resp.text()
                status = resp.status
        except asyncio.TimeoutError:
            duration_ms = round((time.time() - start_time) * 1000)
            logger.error(f"Chat verification: siteverify timeout after {duration_ms}ms")
            inc_counter("turnstile_errors", error_type="timeout")
            return VerificationOutcome(503, {
                "success": False,
                "error": "Chat verification service temporarily unavailable",
                "canRetry": True,
                "retryAfter": RETRY_AFTER_MS,
            })
        except aiohttp.ClientError as exc:
            logger.error(f"Chat verification: siteverify connection error: {exc}")
            inc_counter("turnstile_errors", error_type="connection")
            return VerificationOutcome(500, {
                "success": False,
                "error": "Chat verification internal error",
                "canRetry": True,
            })

        duration_ms = round((time.time() - start_time) * 1000)

        if not 200 <= status < 300:
            logger.error(f"Chat verification: siteverify error status={status}, body={body_text[:200]}")
            inc_counter("turnstile_errors", error_type="http", status=status)
            return VerificationOutcome(500, {"success": False, "error": "Verification service error"})

        try:
            result = json.loads(body_text)
        except ValueError:
            result = None
        if not isinstance(result, dict):
            logger.error(f"Chat verification: siteverify returned a non-object body, status={status}")
            inc_counter("turnstile_errors", error_type="invalid_json")
            return VerificationOutcome(500, {"success": False, "error": "Verification service error"})

        if not result.get("success"):
            error_codes = list(result.get("error-codes") or [])
            message, can_retry = classify_error_codes(error_codes)
            logger.warning(
                f"Chat verification failed: codes={error_codes}, "
                f"session={mask_identifier(session_id) if session_id else 'none'}, "
                f"refresh={refresh_attempt}, duration={duration_ms}ms"
            )
            AppMetrics.verification_result(False, refresh_attempt)
            return VerificationOutcome(200, {
                "success": False,
                "error": message,
                "errorCodes": error_codes,
                "canRetry": can_retry,
            })

        logger.info(
            f"Chat verification succeeded: hostname={result.get('hostname')}, "
            f"refresh={refresh_attempt}, duration={duration_ms}ms"
        )
        AppMetrics.verification_result(True, refresh_attempt)
        return VerificationOutcome(200, {
            "success": True,
            "challengeTs": result.get("challenge_ts"),
            "hostname": result.get("hostname"),
            "action": result.get("action"),
            "sessionInfo": {
                "verified": True,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "duration": round((time.time() - start_time) * 1000),
                "refreshAttempt": refresh_attempt,
            },
        })
