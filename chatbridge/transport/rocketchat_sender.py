# chatbridge/transport/rocketchat_sender.py
"""
Rocket.Chat REST API outbound relay.

Uses the REST API to:
- Start / stop the typing indicator in a room
- Post the assistant's reply into a room
- List live-chat agents (availability check)

Every call returns a ``RelayResult`` instead of raising.  Non-2xx
responses keep the raw body for diagnostics; nothing is retried here,
retry policy belongs to the caller.  Missing service credentials
short-circuit with a configuration error before any network call.

HTTP session lifecycle:
- Uses the shared sender session from chatbridge.infra.http_client.
- Call close_all_sessions() during application shutdown.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import aiohttp

from chatbridge.config import settings
from chatbridge.core.domain import RelayResult
from chatbridge.infra.http_client import get_sender_session
from chatbridge.infra.logging_config import get_logger, mask_identifier
from chatbridge.infra.metrics import inc_counter

logger = get_logger(__name__)

CONFIG_ERROR = "config_error: missing Rocket.Chat credentials"


class RocketChatSender:
    """Authenticated client for the Rocket.Chat REST endpoints the bridge uses."""

    def __init__(
        self,
        base_url: str | None = None,
        auth_token: str | None = None,
        user_id: str | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] = get_sender_session,
    ):
        self.base_url = (base_url or settings.rocketchat_base_url).rstrip("/")
        self._auth_token = auth_token if auth_token is not None else settings.rocketchat_auth_token
        self._user_id = user_id if user_id is not None else settings.rocketchat_user_id
        self._session_factory = session_factory

    @property
    def configured(self) -> bool:
        return bool(self._auth_token and self._user_id)

    def _url(self, method: str) -> str:
        return f"{self.base_url}/api/v1/{method}"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Auth-Token": self._auth_token or "",
            "X-User-Id": self._user_id or "",
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def set_typing(self, room_id: str, typing: bool) -> RelayResult:
        """Start or stop the typing indicator in ``room_id``."""
        method = "rooms.startTyping" if typing else "rooms.stopTyping"
        result = await self._request("POST", method, {"roomId": room_id})
        if result.success:
            logger.debug(f"Typing indicator {'started' if typing else 'stopped'}: room={mask_identifier(room_id)}")
        return result

    async def post_message(self, room_id: str, text: str, alias: str) -> RelayResult:
        """Post ``text`` into ``room_id`` under ``alias``."""
        result = await self._request(
            "POST",
            "chat.postMessage",
            {"roomId": room_id, "text": text, "alias": alias},
        )
        if result.success:
            message = result.data.get("message") or {}
            result.message_id = message.get("_id")
            result.timestamp = message.get("ts")
            logger.info(
                f"Rocket.Chat message sent: room={mask_identifier(room_id)}, "
                f"msg_id={result.message_id}, length={len(text)}"
            )
            inc_counter("rocketchat_outbound_sent")
        return result

    async def list_livechat_agents(self) -> RelayResult:
        """Fetch live-chat agents with their ``statusLivechat``."""
        return await self._request("GET", "livechat/users/agent")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _request(self, http_method: str, method: str, payload: dict | None = None) -> RelayResult:
        if not self.configured:
            logger.error(f"Rocket.Chat {method} skipped: credentials not configured")
            inc_counter("rocketchat_outbound_config_error")
            return RelayResult(success=False, error=CONFIG_ERROR)

        url = self._url(method)
        try:
            session = self._session_factory()
            async with session.request(
                http_method,
                url,
                json=payload if http_method != "GET" else None,
                headers=self._headers(),
            ) as resp:
                body_text = await _safe_response_text(resp)

                if 200 <= resp.status < 300:
                    return RelayResult(
                        success=True,
                        status=resp.status,
                        body=body_text,
                        data=_parse_json(body_text),
                    )

                logger.error(
                    f"Rocket.Chat API error: method={method}, status={resp.status}, "
                    f"body={body_text[:300]}"
                )
                inc_counter("rocketchat_outbound_error", method=method, status=resp.status)
                return RelayResult(
                    success=False,
                    status=resp.status,
                    error=f"Rocket.Chat API error: {resp.status}",
                    body=body_text,
                )

        except aiohttp.ClientError as exc:
            logger.error(f"Rocket.Chat API connection error: method={method}, error={exc}")
            inc_counter("rocketchat_outbound_connection_error", method=method)
            return RelayResult(success=False, status=0, error=f"connection_error: {exc}")
        except asyncio.TimeoutError as exc:
            logger.error(f"Rocket.Chat API timeout: method={method}")
            inc_counter("rocketchat_outbound_connection_error", method=method)
            return RelayResult(success=False, status=0, error=f"timeout: {exc}")


async def _safe_response_text(resp: aiohttp.ClientResponse) -> str:
    """Read response body as text; an unreadable body yields an empty string."""
    try:
        return await resp.text()
    except (aiohttp.ClientError, UnicodeDecodeError):
        logger.warning(f"Rocket.Chat API returned unreadable body: status={resp.status}")
        return ""


def _parse_json(body_text: str) -> dict[str, Any]:
    try:
        data = json.loads(body_text) if body_text else {}
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
