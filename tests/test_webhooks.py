# tests/test_webhooks.py
"""Tests for chatbridge/transport/rocketchat_webhook.py and the payload schemas."""
from __future__ import annotations

import asyncio
import copy
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatbridge.core.bridge import LivechatBridge
from chatbridge.core.domain import NluResult, RelayResult
from chatbridge.infra.dedup_cache import DedupCache
from chatbridge.infra.dispatcher import RelayDispatcher
from chatbridge.infra.metrics import get_metrics_collector
from chatbridge.transport.rocketchat_webhook import INVALID_PAYLOAD, rocketchat_webhook_handler
from chatbridge.transport.schemas import LivechatWebhookPayload


def _make_request(body=None, raises: Exception | None = None) -> MagicMock:
    request = MagicMock()
    request.state.request_id = "req-1"
    if raises is not None:
        request.json = AsyncMock(side_effect=raises)
    else:
        request.json = AsyncMock(return_value=body)
    return request


def _make_bridge(clock, submit_result: bool = True) -> LivechatBridge:
    bridge = LivechatBridge(
        DedupCache(cooldown_seconds=2.0, clock=clock),
        MagicMock(),
        MagicMock(),
        bot_usernames=("dialogflow.bot", "intellectif.bot", "virtual-assistant"),
        assistant_patterns=("virtual assistant", "intellectif bot"),
    )
    bridge.dispatcher = MagicMock()
    bridge.dispatcher.submit.return_value = submit_result
    return bridge


def _body(response) -> dict:
    return json.loads(response.body)


# ============================================================================
# Schema
# ============================================================================

class TestLivechatWebhookPayload:
    def test_latest_message_uses_last_entry(self, sample_webhook_payload):
        payload = copy.deepcopy(sample_webhook_payload)
        payload["messages"].insert(0, {"_id": "m0", "u": {"_id": "v1"}, "msg": "earlier"})

        msg = LivechatWebhookPayload.model_validate(payload).latest_message()

        assert msg.message_id == "m1"
        assert msg.text == "hello"
        assert msg.visitor_id == "v1"
        assert msg.visitor_token == "visitor-token-abc"
        assert msg.visitor_email == "joe@example.com"
        assert msg.sender_username == "joe"
        assert msg.room_id == "room-1"
        assert msg.agent is None

    def test_room_falls_back_to_conversation(self, sample_webhook_payload):
        payload = copy.deepcopy(sample_webhook_payload)
        del payload["messages"][0]["rid"]
        msg = LivechatWebhookPayload.model_validate(payload).latest_message()
        assert msg.room_id == "conv-123"

    def test_agent_parsed(self, sample_webhook_payload):
        payload = copy.deepcopy(sample_webhook_payload)
        payload["agent"] = {"_id": "agent-7", "username": "alice"}
        msg = LivechatWebhookPayload.model_validate(payload).latest_message()
        assert msg.agent.id == "agent-7"
        assert msg.agent.username == "alice"

    def test_empty_messages(self, sample_webhook_payload):
        payload = dict(sample_webhook_payload, messages=[])
        assert LivechatWebhookPayload.model_validate(payload).latest_message() is None

    def test_unknown_fields_ignored(self, sample_webhook_payload):
        payload = dict(sample_webhook_payload, department={"_id": "d1"}, customFields={})
        assert LivechatWebhookPayload.model_validate(payload).id == "conv-123"


# ============================================================================
# Handler
# ============================================================================

class TestRocketChatWebhookHandler:
    @pytest.mark.asyncio
    async def test_visitor_message_acknowledged(self, clock, sample_webhook_payload):
        bridge = _make_bridge(clock)
        response = await rocketchat_webhook_handler(_make_request(sample_webhook_payload), bridge)

        assert response.status_code == 200
        body = _body(response)
        assert body["success"] is True
        assert body["message"] == "RocketChat webhook received and processing"
        data = body["data"]
        assert data["conversationId"] == "conv-123"
        assert data["messageProcessed"] == "hello"
        assert data["userId"] == "v1"
        assert data["roomId"] == "room-1"
        assert data["sessionId"] == "visitor-token-abc"
        assert data["backgroundProcessing"] is True
        assert isinstance(data["webhookResponseTime"], int)
        bridge.dispatcher.submit.assert_called_once()

    @pytest.mark.asyncio
    async def test_session_id_without_visitor_token(self, clock, sample_webhook_payload):
        payload = copy.deepcopy(sample_webhook_payload)
        del payload["visitor"]["token"]
        response = await rocketchat_webhook_handler(_make_request(payload), _make_bridge(clock))
        assert _body(response)["data"]["sessionId"] == "v1"

    @pytest.mark.asyncio
    async def test_background_false_when_dispatcher_rejects(self, clock, sample_webhook_payload):
        bridge = _make_bridge(clock, submit_result=False)
        response = await rocketchat_webhook_handler(_make_request(sample_webhook_payload), bridge)
        assert _body(response)["data"]["backgroundProcessing"] is False

    @pytest.mark.asyncio
    async def test_ack_returned_before_nlu_resolves(self, clock, sample_webhook_payload):
        nlu_started = asyncio.Event()
        release_nlu = asyncio.Event()

        async def slow_detect_intent(*args, **kwargs):
            nlu_started.set()
            await release_nlu.wait()
            return NluResult(success=True, response="Hi there")

        nlu = MagicMock()
        nlu.detect_intent = AsyncMock(side_effect=slow_detect_intent)
        sender = MagicMock()
        sender.set_typing = AsyncMock(return_value=RelayResult(success=True, status=200))
        sender.post_message = AsyncMock(return_value=RelayResult(success=True, status=200, message_id="m-out"))

        bridge = LivechatBridge(
            DedupCache(cooldown_seconds=2.0, clock=clock),
            nlu,
            sender,
            bot_usernames=("dialogflow.bot",),
            assistant_patterns=("virtual assistant",),
        )
        dispatcher = RelayDispatcher(bridge.relay, workers=1, queue_size=10)
        await dispatcher.start()
        bridge.dispatcher = dispatcher
        try:
            response = await rocketchat_webhook_handler(_make_request(sample_webhook_payload), bridge)

            assert response.status_code == 200
            assert _body(response)["data"]["backgroundProcessing"] is True

            await asyncio.wait_for(nlu_started.wait(), timeout=1.0)
            assert nlu.detect_intent.await_count == 1
            sender.post_message.assert_not_awaited()

            release_nlu.set()
            await asyncio.wait_for(dispatcher.drain(), timeout=1.0)

            sender.post_message.assert_awaited_once_with("room-1", "Hi there", "Virtual Assistant")
        finally:
            await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_redelivery_is_skipped(self, clock, sample_webhook_payload):
        bridge = _make_bridge(clock)
        await rocketchat_webhook_handler(_make_request(sample_webhook_payload), bridge)
        clock.advance(1.0)
        response = await rocketchat_webhook_handler(_make_request(sample_webhook_payload), bridge)

        assert response.status_code == 200
        assert _body(response) == {
            "success": True,
            "message": "Duplicate message skipped",
            "skipped": True,
            "reason": "deduplication",
        }
        assert bridge.dispatcher.submit.call_count == 1

    @pytest.mark.asyncio
    async def test_agent_message_is_skipped(self, clock, sample_webhook_payload):
        payload = copy.deepcopy(sample_webhook_payload)
        payload["agent"] = {"_id": "agent-7", "username": "alice"}
        payload["messages"][0]["u"] = {"_id": "agent-7", "username": "alice", "name": "Alice"}

        bridge = _make_bridge(clock)
        response = await rocketchat_webhook_handler(_make_request(payload), bridge)

        assert response.status_code == 200
        assert _body(response) == {
            "success": True,
            "message": "Bot/agent message skipped to avoid loops",
            "skipped": True,
            "reason": "bot_detection",
        }
        bridge.dispatcher.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_message_event_not_processed(self, clock, sample_webhook_payload):
        payload = dict(sample_webhook_payload, type="LivechatSession")
        response = await rocketchat_webhook_handler(_make_request(payload), _make_bridge(clock))

        assert response.status_code == 200
        assert _body(response) == {
            "success": True,
            "message": "Message processed but no response required",
            "processed": False,
        }

    @pytest.mark.asyncio
    async def test_empty_messages_is_noop(self, clock, sample_webhook_payload):
        payload = dict(sample_webhook_payload, messages=[])
        response = await rocketchat_webhook_handler(_make_request(payload), _make_bridge(clock))

        assert response.status_code == 200
        assert _body(response) == {"success": True, "message": "No messages to process"}

    @pytest.mark.asyncio
    async def test_invalid_json_returns_400(self, clock):
        request = _make_request(raises=json.JSONDecodeError("Expecting value", "", 0))
        response = await rocketchat_webhook_handler(request, _make_bridge(clock))

        assert response.status_code == 400
        body = _body(response)
        assert body["success"] is False
        assert body["message"] == INVALID_PAYLOAD

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"type": "Message", "messages": []},                 # no conversation id
        {"_id": "", "messages": []},                         # empty conversation id
        {"_id": "conv-1"},                                   # no messages
        {"_id": "conv-1", "messages": "not-a-list"},         # messages not a list
        ["not", "an", "object"],
    ])
    async def test_structurally_invalid_payload_returns_400(self, clock, payload):
        response = await rocketchat_webhook_handler(_make_request(payload), _make_bridge(clock))

        assert response.status_code == 400
        assert _body(response)["success"] is False
        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["webhook_rejected_total{reason=invalid_payload}"] == 1

    @pytest.mark.asyncio
    async def test_event_counted_by_type(self, clock, sample_webhook_payload):
        await rocketchat_webhook_handler(_make_request(sample_webhook_payload), _make_bridge(clock))
        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["webhook_events_total{event_type=Message}"] == 1
