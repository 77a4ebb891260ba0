"""
Tests for the WebSocket layer used by cloud compute jobs.

Tests:
- Message serialization and parsing
- Subscription bookkeeping and client message handling
- Job notification helpers
- The /ws and /ws/job/{job_id} endpoints

Run tests:
    pytest tests/test_websocket_manager.py -v
"""

import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

# Ensure the project root is in the path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from websocket.manager import (
    MessageType,
    WebSocketManager,
    WebSocketMessage,
    job_channel,
    notify_job_cancelled,
    notify_job_completed,
    notify_job_failed,
    notify_job_metrics,
    notify_job_progress,
    notify_job_started,
)


def make_socket():
    socket = MagicMock()
    socket.accept = AsyncMock()
    socket.send_text = AsyncMock()
    return socket


def sent_messages(socket):
    return [json.loads(call.args[0]) for call in socket.send_text.call_args_list]


# ============================================================================
# Message Serialization Tests
# ============================================================================


class TestWebSocketMessage:
    """Test message serialization and parsing."""

    def test_to_json(self):
        msg = WebSocketMessage(
            type=MessageType.JOB_PROGRESS,
            channel="job:abc",
            data={"job_id": "abc", "progress": 50.0},
        )
        parsed = json.loads(msg.to_json())
        assert parsed["type"] == "job_progress"
        assert parsed["channel"] == "job:abc"
        assert parsed["data"]["progress"] == 50.0
        assert "timestamp" in parsed

    def test_from_json(self):
        json_str = json.dumps({
            "type": "subscribe",
            "channel": "job:abc",
            "data": {},
            "timestamp": "2026-01-01T00:00:00",
        })
        msg = WebSocketMessage.from_json(json_str)
        assert msg.type == MessageType.SUBSCRIBE
        assert msg.channel == "job:abc"
        assert msg.timestamp == "2026-01-01T00:00:00"

    def test_from_json_rejects_non_object(self):
        with pytest.raises(ValueError):
            WebSocketMessage.from_json("[1, 2]")

    def test_from_json_rejects_unknown_type(self):
        with pytest.raises(ValueError):
            WebSocketMessage.from_json('{"type": "explode"}')

    def test_job_channel(self):
        assert job_channel("abc") == "job:abc"


# ============================================================================
# Manager Tests
# ============================================================================


class TestWebSocketManager:
    """Test connection and subscription bookkeeping."""

    def test_connect_sends_confirmation(self):
        manager = WebSocketManager()
        socket = make_socket()

        asyncio.run(manager.connect(socket, "client-1"))

        socket.accept.assert_awaited_once()
        assert manager.get_connection_count() == 1
        message = sent_messages(socket)[0]
        assert message["type"] == "connected"
        assert message["data"]["client_id"] == "client-1"

    def test_subscribe_and_unsubscribe(self):
        manager = WebSocketManager()
        socket = make_socket()

        async def scenario():
            await manager.connect(socket)
            await manager.subscribe(socket, "job:1")
            assert manager.get_channel_subscribers("job:1") == 1
            await manager.unsubscribe(socket, "job:1")

        asyncio.run(scenario())

        assert manager.get_channel_subscribers("job:1") == 0
        types = [m["type"] for m in sent_messages(socket)]
        assert types == ["connected", "subscribed", "unsubscribed"]

    def test_disconnect_drops_subscriptions(self):
        manager = WebSocketManager()
        socket = make_socket()

        async def scenario():
            await manager.connect(socket)
            await manager.subscribe(socket, "job:1")
            await manager.disconnect(socket)

        asyncio.run(scenario())

        assert manager.get_connection_count() == 0
        assert manager.get_channel_subscribers("job:1") == 0

    def test_broadcast_to_channel(self):
        manager = WebSocketManager()
        subscribed, other = make_socket(), make_socket()

        async def scenario():
            await manager.connect(subscribed)
            await manager.connect(other)
            await manager.subscribe(subscribed, "job:1")
            return await manager.broadcast_to_channel(
                "job:1", WebSocketMessage(type=MessageType.JOB_CANCELLED, channel="job:1")
            )

        assert asyncio.run(scenario()) == 1
        assert sent_messages(subscribed)[-1]["type"] == "job_cancelled"
        assert sent_messages(other)[-1]["type"] == "connected"

    def test_failed_send_disconnects(self):
        manager = WebSocketManager()
        socket = make_socket()

        async def scenario():
            await manager.connect(socket)
            await manager.subscribe(socket, "job:1")
            socket.send_text.side_effect = RuntimeError("closed")
            return await manager.broadcast_to_channel(
                "job:1", WebSocketMessage(type=MessageType.PING, channel="job:1")
            )

        assert asyncio.run(scenario()) == 0
        assert manager.get_connection_count() == 0


class TestHandleMessage:
    """Test handling of client messages."""

    def test_ping(self):
        manager = WebSocketManager()
        response = asyncio.run(manager.handle_message(make_socket(), '{"type": "ping"}'))
        assert response.type == MessageType.PONG

    def test_invalid_json(self):
        manager = WebSocketManager()
        response = asyncio.run(manager.handle_message(make_socket(), "not json"))
        assert response.type == MessageType.ERROR
        assert response.data["error"].startswith("Invalid message format")

    def test_subscribe_from_data(self):
        manager = WebSocketManager()
        socket = make_socket()

        response = asyncio.run(
            manager.handle_message(socket, '{"type": "subscribe", "data": {"channel": "job:7"}}')
        )

        assert response is None
        assert manager.get_channel_subscribers("job:7") == 1

    def test_subscribe_requires_channel(self):
        manager = WebSocketManager()
        response = asyncio.run(manager.handle_message(make_socket(), '{"type": "unsubscribe"}'))
        assert response.type == MessageType.ERROR
        assert response.data["error"] == "unsubscribe requires a channel"


# ============================================================================
# Notification Helper Tests
# ============================================================================


class TestJobNotificationHelpers:
    """Test job notification helper functions."""

    def _broadcast(self, coro):
        with patch("websocket.manager.ws_manager") as mock_manager:
            mock_manager.broadcast_to_channel = AsyncMock(return_value=1)
            asyncio.run(coro)

            mock_manager.broadcast_to_channel.assert_called_once()
            channel, message = mock_manager.broadcast_to_channel.call_args[0]
            return channel, message

    def test_notify_job_started(self):
        channel, message = self._broadcast(notify_job_started("job123", {"id": "job123"}))
        assert channel == "job:job123"
        assert message.type == MessageType.JOB_STARTED
        assert message.data == {"id": "job123"}

    def test_notify_job_progress(self):
        _, message = self._broadcast(notify_job_progress("job123", 40.0, "Processing Viewer 2"))
        assert message.type == MessageType.JOB_PROGRESS
        assert message.data["progress"] == 40.0
        assert message.data["message"] == "Processing Viewer 2"
        assert message.data["metrics"] == {}

    def test_notify_job_completed(self):
        _, message = self._broadcast(notify_job_completed("job123", {"success": True}))
        assert message.type == MessageType.JOB_COMPLETED
        assert message.data["result"] == {"success": True}

    def test_notify_job_failed(self):
        _, message = self._broadcast(notify_job_failed("job123", "boom"))
        assert message.type == MessageType.JOB_FAILED
        assert message.data["error"] == "boom"
        assert "traceback" not in message.data

    def test_notify_job_cancelled(self):
        _, message = self._broadcast(notify_job_cancelled("job123"))
        assert message.type == MessageType.JOB_CANCELLED

    def test_notify_job_metrics(self):
        _, message = self._broadcast(notify_job_metrics("job123", {"node_ms": 12}))
        assert message.type == MessageType.JOB_METRICS
        assert message.data["metrics"] == {"node_ms": 12}


# ============================================================================
# Endpoint Tests
# ============================================================================


class TestWebSocketEndpoints:
    """Test the FastAPI WebSocket routes."""

    def test_main_websocket_ping(self, client):
        with client.websocket_connect("/ws?client_id=ui") as ws:
            connected = ws.receive_json()
            assert connected["type"] == "connected"
            assert connected["data"]["client_id"] == "ui"

            ws.send_text(json.dumps({"type": "ping", "channel": "system"}))
            assert ws.receive_json()["type"] == "pong"

    def test_main_websocket_subscribe(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text(json.dumps({"type": "subscribe", "channel": "job:abc"}))
            subscribed = ws.receive_json()

        assert subscribed["type"] == "subscribed"
        assert subscribed["data"]["channel"] == "job:abc"

    def test_job_websocket_autosubscribes(self, client):
        with client.websocket_connect("/ws/job/abc") as ws:
            assert ws.receive_json()["type"] == "connected"
            subscribed = ws.receive_json()

        assert subscribed["type"] == "subscribed"
        assert subscribed["channel"] == "job:abc"

    def test_stats(self, client):
        data = client.get("/api/ws/stats").json()
        assert "total_connections" in data
