# chatbridge/client/session_store.py
"""
Chat session storage for the proof-of-humanity token.

One session lives in a single storage slot under a fixed key.  Every
successful verify/refresh overwrites the slot; any read that finds a
session that is expired, malformed, out of order or over its refresh
budget clears it, as does a token that is too short.

Storage backends:
- MemorySessionStorage: per-process slot (tests, single context)
- FileSessionStorage: JSON file shared by every process pointing at the
  same directory (the equivalent of browser storage shared by tabs)

Known limitation: processes sharing a FileSessionStorage slot do not
coordinate; concurrent refreshes race and the last write wins.
"""
from __future__ import annotations

import json
import os
import tempfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from chatbridge.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ChatSession:
    token: str
    verified_at: float
    expires_at: float
    refresh_count: int
    last_refresh: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ChatSession"]:
        """Build from stored JSON, or None if the shape is wrong."""
        if not isinstance(data, dict):
            return None

        token = data.get("token")
        verified_at = data.get("verified_at")
        expires_at = data.get("expires_at")
        if not isinstance(token, str) or not token:
            return None
        if not _is_number(verified_at):
            return None
        if not _is_number(expires_at):
            return None

        refresh_count = data.get("refresh_count", 0)
        last_refresh = data.get("last_refresh", verified_at)
        if not isinstance(refresh_count, int) or isinstance(refresh_count, bool):
            return None
        if not _is_number(last_refresh):
            return None

        # expires_at > last_refresh >= verified_at
        if refresh_count < 0:
            return None
        if last_refresh < verified_at or expires_at <= last_refresh:
            return None

        return cls(
            token=token,
            verified_at=float(verified_at),
            expires_at=float(expires_at),
            refresh_count=refresh_count,
            last_refresh=float(last_refresh),
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class ChatSessionConfig:
    token_lifetime_seconds: float = 2 * 60 * 60
    refresh_interval_seconds: float = 30 * 60
    max_retries: int = 3
    min_token_length: int = 50
    storage_key: str = "intellectif_chat_session"

    @classmethod
    def from_settings(cls, s=None) -> "ChatSessionConfig":
        if s is None:
            from chatbridge.config import settings as s
        return cls(
            token_lifetime_seconds=s.chat_token_lifetime_seconds,
            refresh_interval_seconds=s.chat_refresh_interval_seconds,
            max_retries=s.chat_max_refresh_retries,
            min_token_length=s.chat_min_token_length,
            storage_key=s.chat_storage_key,
        )


# ============================================================================
# STORAGE BACKENDS
# ============================================================================

class SessionStorage(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemorySessionStorage:
    def __init__(self):
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileSessionStorage:
    """One JSON file per key under ``directory``; writes are atomic replaces."""

    def __init__(self, directory: str | os.PathLike):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get_item(self, key: str) -> str | None:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set_item(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
            os.replace(tmp_path, self._path(key))
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def remove_item(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


# ============================================================================
# STORE
# ============================================================================

class ChatSessionStore:
    """Validated access to the single chat session slot."""

    def __init__(
        self,
        storage: SessionStorage | None = None,
        config: ChatSessionConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage if storage is not None else MemorySessionStorage()
        self.config = config or ChatSessionConfig.from_settings()
        self._clock = clock

    def store(self, token: str) -> ChatSession:
        """Save a freshly verified token, replacing whatever is stored."""
        now = self._clock()
        session = ChatSession(
            token=token,
            verified_at=now,
            expires_at=now + self.config.token_lifetime_seconds,
            refresh_count=0,
            last_refresh=now,
        )
        self._write(session)
        logger.info(
            f"Chat session stored: token_length={len(token)}, "
            f"expires_in={self.config.token_lifetime_seconds / 60:.0f}min"
        )
        return session

    def get(self) -> ChatSession | None:
        """Current session, or None.  Invalid sessions are cleared on read."""
        try:
            raw = self.storage.get_item(self.config.storage_key)
        except OSError as exc:
            logger.warning(f"Chat session read failed: {exc}")
            return None
        if not raw:
            return None

        try:
            session = ChatSession.from_dict(json.loads(raw))
        except ValueError:
            logger.warning("Chat session corrupted (malformed JSON), clearing")
            self.clear()
            return None

        if session is None:
            logger.warning("Chat session structurally invalid, clearing")
            self.clear()
            return None

        if session.refresh_count > self.config.max_retries:
            logger.warning(
                f"Chat session refresh_count out of range: {session.refresh_count} "
                f"> max_retries={self.config.max_retries}, clearing"
            )
            self.clear()
            return None

        now = self._clock()
        if now > session.expires_at:
            logger.info(f"Chat session expired {(now - session.expires_at) / 60:.1f}min ago, clearing")
            self.clear()
            return None

        if len(session.token) < self.config.min_token_length:
            logger.warning(
                f"Chat session token too short: length={len(session.token)}, "
                f"min={self.config.min_token_length}"
            )
            self.clear()
            return None

        return session

    def should_refresh(self, session: ChatSession) -> bool:
        return self._clock() - session.last_refresh >= self.config.refresh_interval_seconds

    def seconds_until_refresh(self, session: ChatSession) -> float:
        return max(0.0, session.last_refresh + self.config.refresh_interval_seconds - self._clock())

    def refresh(self, new_token: str) -> ChatSession:
        """
        Replace the token of the current session.

        Bumps refresh_count and extends expires_at; with no current
        session this is a fresh store.
        """
        current = self.get()
        if current is None:
            return self.store(new_token)

        now = self._clock()
        session = ChatSession(
            token=new_token,
            verified_at=current.verified_at,
            expires_at=now + self.config.token_lifetime_seconds,
            refresh_count=current.refresh_count + 1,
            last_refresh=now,
        )
        self._write(session)
        logger.info(f"Chat session refreshed: refresh_count={session.refresh_count}")
        return session

    def clear(self) -> None:
        try:
            self.storage.remove_item(self.config.storage_key)
        except OSError as exc:
            logger.warning(f"Chat session clear failed: {exc}")

    def has_valid(self) -> bool:
        return self.get() is not None

    def info(self) -> dict[str, Any]:
        """Summary for diagnostics: presence, validity, minutes left, refresh count."""
        session = self.get()
        if session is None:
            return {"has_session": False, "is_valid": False}

        return {
            "has_session": True,
            "is_valid": True,
            "expires_in_minutes": round((session.expires_at - self._clock()) / 60),
            "refresh_count": session.refresh_count,
        }

    def _write(self, session: ChatSession) -> None:
        self.storage.set_item(self.config.storage_key, json.dumps(session.to_dict()))
