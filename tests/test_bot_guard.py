# tests/test_bot_guard.py
"""Tests for chatbridge/core/bot_guard.py — sender classification and admission."""
from __future__ import annotations

from dataclasses import replace

import pytest

from chatbridge.core.bot_guard import SenderClass, classify_sender, is_eligible
from chatbridge.core.domain import AgentRef, InboundMessage

BOT_USERNAMES = frozenset({"dialogflow.bot", "intellectif.bot", "virtual-assistant"})
PATTERNS = ("virtual assistant", "intellectif bot")


def _message(**overrides) -> InboundMessage:
    base = InboundMessage(
        conversation_id="conv-1",
        message_id="m1",
        sender_id="v1",
        text="hello",
        event_type="Message",
        room_id="room-1",
        visitor_id="v1",
        sender_username="joe",
        sender_name="Joe",
    )
    return replace(base, **overrides)


class TestClassifySender:
    def test_ordinary_visitor(self):
        assert classify_sender(_message(), BOT_USERNAMES, PATTERNS) is SenderClass.VISITOR

    def test_assigned_agent_is_agent_self(self):
        msg = _message(sender_id="agent-7", agent=AgentRef(id="agent-7", username="alice"))
        assert classify_sender(msg, BOT_USERNAMES, PATTERNS) is SenderClass.AGENT_SELF

    def test_other_agent_assigned_does_not_match(self):
        msg = _message(agent=AgentRef(id="agent-7"))
        assert classify_sender(msg, BOT_USERNAMES, PATTERNS) is SenderClass.VISITOR

    @pytest.mark.parametrize("username", ["dialogflow.bot", "intellectif.bot", "virtual-assistant"])
    def test_known_bot_usernames(self, username):
        msg = _message(sender_username=username)
        assert classify_sender(msg, BOT_USERNAMES, PATTERNS) is SenderClass.KNOWN_BOT

    @pytest.mark.parametrize("name", ["Virtual Assistant", "VIRTUAL ASSISTANT", "Our Intellectif Bot (beta)"])
    def test_assistant_display_name_patterns(self, name):
        msg = _message(sender_name=name)
        assert classify_sender(msg, BOT_USERNAMES, PATTERNS) is SenderClass.ASSISTANT_PATTERN

    def test_agent_check_wins_over_username(self):
        msg = _message(
            sender_id="agent-7",
            sender_username="dialogflow.bot",
            agent=AgentRef(id="agent-7"),
        )
        assert classify_sender(msg, BOT_USERNAMES, PATTERNS) is SenderClass.AGENT_SELF

    def test_username_check_wins_over_pattern(self):
        msg = _message(sender_username="intellectif.bot", sender_name="Virtual Assistant")
        assert classify_sender(msg, BOT_USERNAMES, PATTERNS) is SenderClass.KNOWN_BOT

    def test_missing_name_and_username(self):
        msg = _message(sender_username=None, sender_name=None)
        assert classify_sender(msg, BOT_USERNAMES, PATTERNS) is SenderClass.VISITOR

    def test_username_match_is_exact(self):
        msg = _message(sender_username="dialogflow.bot.fan")
        assert classify_sender(msg, BOT_USERNAMES, PATTERNS) is SenderClass.VISITOR


class TestIsEligible:
    def test_visitor_text_message(self):
        assert is_eligible(_message()) is True

    def test_non_message_event(self):
        assert is_eligible(_message(event_type="LivechatSession")) is False

    def test_sender_not_visitor(self):
        assert is_eligible(_message(sender_id="someone-else")) is False

    def test_no_visitor_recorded(self):
        assert is_eligible(_message(visitor_id=None)) is False

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_blank_text(self, text):
        assert is_eligible(_message(text=text)) is False
