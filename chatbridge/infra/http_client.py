# chatbridge/infra/http_client.py
"""
Process-wide aiohttp sessions, one per outbound profile.

Profiles
~~~~~~~~
- ``sender``:   Rocket.Chat REST (total 15 s, connect 5 s, 20 connections)
- ``verifier``: Turnstile siteverify (total 25 s, connect 5 s, 10 connections)

Sessions are created lazily on first use inside the running loop and
recreated if something closed them.  ``close_all_sessions()`` belongs in
the application's shutdown path.
"""
from __future__ import annotations

from dataclasses import dataclass

import aiohttp

from chatbridge.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionProfile:
    total_timeout: float
    connect_timeout: float
    pool_limit: int


SENDER_PROFILE = SessionProfile(total_timeout=15, connect_timeout=5, pool_limit=20)
VERIFIER_PROFILE = SessionProfile(total_timeout=25, connect_timeout=5, pool_limit=10)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _session_for(name: str, profile: SessionProfile) -> aiohttp.ClientSession:
    session = _sessions.get(name)
    if session is not None and not session.closed:
        return session

    session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=profile.total_timeout, connect=profile.connect_timeout),
        connector=aiohttp.TCPConnector(
            limit=profile.pool_limit,
            keepalive_timeout=30,
            enable_cleanup_closed=True,
        ),
    )
    _sessions[name] = session
    logger.debug(f"HTTP session '{name}' opened: limit={profile.pool_limit}")
    return session


def get_sender_session() -> aiohttp.ClientSession:
    return _session_for("sender", SENDER_PROFILE)


def get_verifier_session() -> aiohttp.ClientSession:
    return _session_for("verifier", VERIFIER_PROFILE)


async def close_all_sessions() -> None:
    while _sessions:
        name, session = _sessions.popitem()
        if not session.closed:
            await session.close()
            logger.debug(f"HTTP session '{name}' closed")
