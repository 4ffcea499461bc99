# chatbridge/client/__init__.py
"""
Client side of the chat protection: the stored proof-of-humanity session
and the manager that verifies and refreshes it.

Canonical imports:
    from chatbridge.client import ChatProtectionManager, ChatSessionStore
"""
from chatbridge.client.session_store import (  # noqa: F401
    ChatSession,
    ChatSessionConfig,
    ChatSessionStore,
    FileSessionStorage,
    MemorySessionStorage,
    SessionStorage,
)
from chatbridge.client.protection import (  # noqa: F401
    ChallengeError,
    ChallengeSource,
    ChatProtectionManager,
    ProtectionState,
    ProtectionStatus,
    VerificationApiClient,
    make_session_id,
)
