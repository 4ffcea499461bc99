# chatbridge/client/protection.py
"""
Chat protection: proof-of-humanity token lifecycle.

States:
    unverified → verifying → verified ⇄ refreshing
    refreshing → cleared (refresh failure or retry budget spent)
    any        → unverified (explicit clear)

- A verified session is refreshed proactively ``refresh_interval`` after
  its ``last_refresh``; an already-due session is refreshed after a short
  delay.  Only one refresh runs at a time and the next timer is armed only
  once the previous attempt has resolved.
- A refresh that fails (challenge, verification or transport) or would exceed the
  retry budget clears the session.
- Session info is always re-read from the shared store, never from
  in-memory state alone.

Usage:
    manager = ChatProtectionManager(api, challenge, store)
    await manager.start()
    await manager.verify_token(token_from_widget)
    ...
    await manager.close()
"""
from __future__ import annotations

import asyncio
import secrets
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

import aiohttp

from chatbridge.client.session_store import ChatSession, ChatSessionStore
from chatbridge.infra.logging_config import get_logger, mask_identifier

logger = get_logger(__name__)

DEFAULT_RETRY_DELAY_SECONDS = 5.0
NETWORK_ERROR = "Network error during verification"
_ALPHABET = string.ascii_lowercase + string.digits


def make_session_id() -> str:
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class ChallengeError(Exception):
    """The challenge provider could not produce a token"""
    pass


class ChallengeSource(Protocol):
    """Headless challenge client that produces fresh tokens for background refresh."""

    async def obtain_token(self) -> str: ...

    async def close(self) -> None: ...


class ProtectionStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    REFRESHING = "refreshing"
    CLEARED = "cleared"


@dataclass
class ProtectionState:
    status: ProtectionStatus = ProtectionStatus.UNVERIFIED
    error: Optional[str] = None
    can_retry: bool = True
    session_info: dict[str, Any] = field(default_factory=lambda: {"has_session": False, "is_valid": False})
    last_refresh: Optional[float] = None
    refresh_count: int = 0

    @property
    def is_verified(self) -> bool:
        return self.status in (ProtectionStatus.VERIFIED, ProtectionStatus.REFRESHING)

    @property
    def is_loading(self) -> bool:
        return self.status is ProtectionStatus.VERIFYING


class VerificationApiClient:
    """POSTs tokens to the server-side verification endpoint."""

    def __init__(
        self,
        verify_url: str,
        timeout: float = 20.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.verify_url = verify_url
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    async def verify(self, token: str, session_id: str, refresh_attempt: bool) -> dict[str, Any]:
        """
        Returns the endpoint's JSON body (also for non-2xx answers).

        Raises:
            aiohttp.ClientError, asyncio.TimeoutError: transport failure
            ValueError: body is not JSON
        """
        session = self._get_session()
        async with session.post(
            self.verify_url,
            json={"token": token, "sessionId": session_id, "refreshAttempt": refresh_attempt},
        ) as resp:
            data = await resp.json(content_type=None)

        if not isinstance(data, dict):
            raise ValueError("verification endpoint returned a non-object body")
        return data

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class ChatProtectionManager:
    def __init__(
        self,
        api: VerificationApiClient,
        challenge: ChallengeSource,
        store: ChatSessionStore | None = None,
        *,
        session_id: str | None = None,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ):
        self.api = api
        self.challenge = challenge
        self.store = store or ChatSessionStore()
        self.session_id = session_id or make_session_id()
        self.retry_delay_seconds = retry_delay_seconds
        self.state = ProtectionState()
        self._refresh_task: asyncio.Task | None = None
        self._refresh_in_flight = False
        self._closed = False

    @property
    def refresh_scheduled(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Adopt a valid stored session, or wait for a widget token."""
        session = self.store.get()
        if session is None:
            logger.info("Chat protection: no valid session, awaiting verification")
            self.state = ProtectionState(status=ProtectionStatus.VERIFYING)
            return False

        self._apply_session(session)
        self._schedule_refresh(session)
        return True

    async def close(self) -> None:
        """Stop the refresh timer; results of in-flight calls are ignored from now on."""
        self._closed = True
        self._cancel_refresh_timer()
        await self.api.close()
        await self.challenge.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def verify_token(self, token: str, is_refresh: bool = False) -> bool:
        if self._closed:
            return False

        self.state.status = ProtectionStatus.REFRESHING if is_refresh else ProtectionStatus.VERIFYING
        self.state.error = None

        try:
            data = await self.api.verify(token, self.session_id, is_refresh)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            if self._closed:
                return False
            logger.error(
                f"Chat protection: verification error: {exc.__class__.__name__}: {exc}, "
                f"session={mask_identifier(self.session_id)}, refresh={is_refresh}"
            )
            if is_refresh:
                # A refresh that cannot reach the verifier is a failed refresh; no timer is re-armed
                self._expire(NETWORK_ERROR)
                return False
            # The token was never judged, so whatever is stored stays and the state mirrors it
            self.state = ProtectionState(
                status=ProtectionStatus.UNVERIFIED,
                error=NETWORK_ERROR,
                can_retry=True,
                session_info=self.store.info(),
            )
            return False

        if self._closed:
            return False

        if data.get("success"):
            session = self.store.refresh(token) if is_refresh else self.store.store(token)
            self._apply_session(session)
            self._schedule_refresh(session)
            logger.info(
                f"Chat protection: token verified, refresh={is_refresh}, "
                f"refresh_count={session.refresh_count}"
            )
            return True

        logger.warning(
            f"Chat protection: verification rejected: error={data.get('error')}, "
            f"codes={data.get('errorCodes')}, refresh={is_refresh}"
        )
        self.store.clear()
        self._cancel_refresh_timer()
        self.state = ProtectionState(
            status=ProtectionStatus.CLEARED if is_refresh else ProtectionStatus.UNVERIFIED,
            error=data.get("error") or "Verification failed",
            can_retry=bool(data.get("canRetry", True)),
        )
        return False

    async def refresh_token(self) -> bool:
        """Obtain a fresh token from the challenge source and verify it as a refresh."""
        if self._closed:
            return False
        if self._refresh_in_flight:
            logger.debug("Chat protection: refresh already in flight")
            return False

        session = self.store.get()
        if session is None:
            logger.warning("Chat protection: no session to refresh")
            self._sync_from_store()
            return False

        if session.refresh_count >= self.store.config.max_retries:
            logger.warning(
                f"Chat protection: max refresh attempts reached "
                f"({session.refresh_count}/{self.store.config.max_retries})"
            )
            self._expire("Maximum refresh attempts reached")
            return False

        self._refresh_in_flight = True
        self.state.status = ProtectionStatus.REFRESHING
        try:
            try:
                token = await self.challenge.obtain_token()
            except (ChallengeError, asyncio.TimeoutError) as exc:
                if self._closed:
                    return False
                logger.error(f"Chat protection: background challenge failed: {exc}")
                self._expire("Background refresh failed")
                return False

            if self._closed:
                return False
            if not token:
                logger.error("Chat protection: background challenge returned no token")
                self._expire("Background refresh failed")
                return False

            return await self.verify_token(token, is_refresh=True)
        finally:
            self._refresh_in_flight = False

    def clear_session(self) -> None:
        """Explicit clear: drop the stored session and return to unverified."""
        self.store.clear()
        self._cancel_refresh_timer()
        self.state = ProtectionState(status=ProtectionStatus.UNVERIFIED)

    def retry_verification(self) -> None:
        """Dismiss the last error so the widget can be shown again."""
        self.state.error = None
        if not self.state.is_verified:
            self.state.status = ProtectionStatus.UNVERIFIED

    def get_session_token(self) -> str | None:
        session = self.store.get()
        self.state.session_info = self.store.info()
        return session.token if session else None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _apply_session(self, session: ChatSession) -> None:
        self.state = ProtectionState(
            status=ProtectionStatus.VERIFIED,
            session_info=self.store.info(),
            last_refresh=session.last_refresh,
            refresh_count=session.refresh_count,
        )

    def _sync_from_store(self) -> None:
        session = self.store.get()
        if session is None:
            self.state = ProtectionState(status=ProtectionStatus.UNVERIFIED, error=self.state.error)
        else:
            self._apply_session(session)

    def _expire(self, reason: str) -> None:
        self.store.clear()
        self._cancel_refresh_timer()
        self.state = ProtectionState(status=ProtectionStatus.CLEARED, error=reason)

    def _schedule_refresh(self, session: ChatSession) -> None:
        if self._closed:
            return
        self._cancel_refresh_timer()

        if self.store.should_refresh(session):
            delay = self.retry_delay_seconds
        else:
            delay = self.store.seconds_until_refresh(session)

        logger.debug(f"Chat protection: next refresh in {delay / 60:.1f}min")
        self._refresh_task = asyncio.create_task(self._refresh_after(delay), name="chat-token-refresh")
        self._refresh_task.add_done_callback(_log_task_exception)

    def _cancel_refresh_timer(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        # The timer task itself re-arms the next timer; never cancel it from inside
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _refresh_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.refresh_token()


def _log_task_exception(task: asyncio.Task) -> None:
    """Callback: log unhandled exceptions from the refresh timer."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            f"Background task {task.get_name()!r} failed: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )
