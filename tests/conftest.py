# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from chatbridge.infra.metrics import get_metrics_collector  # noqa: E402


class FakeClock:
    """Manually advanced clock for time-dependent components"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are process-wide; start every test from zero"""
    get_metrics_collector().reset()
    yield


@pytest.fixture
def sample_webhook_payload():
    """Visitor message with no assigned agent"""
    return {
        "_id": "conv-123",
        "type": "Message",
        "label": "Website chat",
        "visitor": {
            "_id": "v1",
            "token": "visitor-token-abc",
            "name": "Joe Visitor",
            "username": "guest-42",
            "email": [{"address": "joe@example.com"}],
        },
        "messages": [
            {
                "_id": "m1",
                "u": {"_id": "v1", "username": "joe", "name": "Joe Visitor"},
                "msg": "hello",
                "ts": "2024-05-01T10:00:00.000Z",
                "rid": "room-1",
            }
        ],
    }


@pytest.fixture
def long_token():
    """Turnstile-like token above the minimum stored length"""
    return "0." + "a" * 120
