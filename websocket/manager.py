"""
WebSocket connection manager for the NeuroData Hub backend.

Clients subscribe to channels; the cloud worker publishes job state to
``job:{job_id}`` so the workflow canvas can follow a cloud run live.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from fastapi import WebSocket

from api.shared.logger import get_logger

logger = get_logger(__name__)


class MessageType(str, Enum):
    """Types of WebSocket messages."""

    # Job-related messages
    JOB_STARTED = "job_started"
    JOB_PROGRESS = "job_progress"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"
    JOB_METRICS = "job_metrics"

    # Client requests
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"

    # System messages
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


def job_channel(job_id: str) -> str:
    return f"job:{job_id}"


@dataclass
class WebSocketMessage:
    """Represents a WebSocket message."""

    type: MessageType
    channel: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str | None = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now().isoformat()

    def to_json(self) -> str:
        """Convert message to JSON string."""
        return json.dumps(
            {
                "type": self.type.value,
                "channel": self.channel,
                "data": self.data,
                "timestamp": self.timestamp,
            },
            default=str,
        )

    @classmethod
    def from_json(cls, json_str: str) -> "WebSocketMessage":
        """Create message from JSON string.

        Raises:
            ValueError: On malformed JSON or an unknown message type.
        """
        data = json.loads(json_str)
        if not isinstance(data, dict):
            raise ValueError("message must be a JSON object")
        return cls(
            type=MessageType(data.get("type", "error")),
            channel=data.get("channel", ""),
            data=data.get("data") or {},
            timestamp=data.get("timestamp"),
        )


class WebSocketManager:
    """
    Manages WebSocket connections for real-time job updates.

    Supports channel-based subscriptions for targeted message delivery.
    """

    def __init__(self):
        self._connections: set[WebSocket] = set()
        # channel -> subscribed sockets
        self._channels: dict[str, set[WebSocket]] = {}
        # socket -> {client_id, connected_at, subscriptions}
        self._connection_info: dict[WebSocket, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, client_id: str | None = None) -> None:
        """
        Accept a new WebSocket connection and confirm it.

        Args:
            websocket: The WebSocket connection
            client_id: Optional client identifier
        """
        await websocket.accept()

        async with self._lock:
            self._connections.add(websocket)
            self._connection_info[websocket] = {
                "client_id": client_id,
                "connected_at": datetime.now().isoformat(),
                "subscriptions": set(),
            }

        await self.send_to_connection(
            websocket,
            WebSocketMessage(
                type=MessageType.CONNECTED,
                channel="system",
                data={
                    "client_id": client_id,
                    "message": "Connected to NeuroData Hub WebSocket server",
                },
            ),
        )

    async def disconnect(self, websocket: WebSocket) -> None:
        """Forget a connection and all of its subscriptions."""
        async with self._lock:
            subscriptions = self._connection_info.get(websocket, {}).get("subscriptions", set())
            for channel in subscriptions:
                self._drop_subscriber(channel, websocket)

            self._connections.discard(websocket)
            self._connection_info.pop(websocket, None)

    def _drop_subscriber(self, channel: str, websocket: WebSocket) -> None:
        subscribers = self._channels.get(channel)
        if subscribers is None:
            return
        subscribers.discard(websocket)
        if not subscribers:
            del self._channels[channel]

    async def subscribe(self, websocket: WebSocket, channel: str) -> None:
        """Subscribe a connection to a channel and acknowledge it."""
        async with self._lock:
            self._channels.setdefault(channel, set()).add(websocket)
            if websocket in self._connection_info:
                self._connection_info[websocket]["subscriptions"].add(channel)

        await self.send_to_connection(
            websocket,
            WebSocketMessage(type=MessageType.SUBSCRIBED, channel=channel, data={"channel": channel}),
        )

    async def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        """Unsubscribe a connection from a channel and acknowledge it."""
        async with self._lock:
            self._drop_subscriber(channel, websocket)
            if websocket in self._connection_info:
                self._connection_info[websocket]["subscriptions"].discard(channel)

        await self.send_to_connection(
            websocket,
            WebSocketMessage(type=MessageType.UNSUBSCRIBED, channel=channel, data={"channel": channel}),
        )

    async def send_to_connection(self, websocket: WebSocket, message: WebSocketMessage) -> bool:
        """
        Send a message to a specific connection.

        Returns:
            True if sent successfully, False otherwise (the connection is dropped)
        """
        try:
            await websocket.send_text(message.to_json())
            return True
        except Exception as e:
            logger.warning("Error sending WebSocket message: %s", e)
            await self.disconnect(websocket)
            return False

    async def _send_all(self, targets: Iterable[WebSocket], message: WebSocketMessage) -> int:
        payload = message.to_json()
        sent_count = 0
        disconnected = []

        for websocket in targets:
            try:
                await websocket.send_text(payload)
                sent_count += 1
            except Exception:
                disconnected.append(websocket)

        for ws in disconnected:
            await self.disconnect(ws)

        return sent_count

    async def broadcast_to_channel(self, channel: str, message: WebSocketMessage) -> int:
        """
        Broadcast a message to all subscribers of a channel.

        Returns:
            Number of connections that received the message
        """
        async with self._lock:
            subscribers = list(self._channels.get(channel, set()))
        return await self._send_all(subscribers, message)

    def get_channel_subscribers(self, channel: str) -> int:
        return len(self._channels.get(channel, set()))

    def get_connection_count(self) -> int:
        """Get the total number of active connections."""
        return len(self._connections)

    async def handle_message(self, websocket: WebSocket, message_text: str) -> WebSocketMessage | None:
        """
        Handle an incoming client message.

        Args:
            websocket: Source WebSocket connection
            message_text: Raw message text

        Returns:
            Response message or None
        """
        try:
            message = WebSocketMessage.from_json(message_text)
        except ValueError as e:
            return WebSocketMessage(
                type=MessageType.ERROR,
                channel="system",
                data={"error": f"Invalid message format: {e}"},
            )

        if message.type == MessageType.PING:
            return WebSocketMessage(
                type=MessageType.PONG,
                channel="system",
                data={"timestamp": datetime.now().isoformat()},
            )

        if message.type in (MessageType.SUBSCRIBE, MessageType.UNSUBSCRIBE):
            channel = message.data.get("channel") or message.channel
            if not channel:
                return WebSocketMessage(
                    type=MessageType.ERROR,
                    channel="system",
                    data={"error": f"{message.type.value} requires a channel"},
                )
            if message.type == MessageType.SUBSCRIBE:
                await self.subscribe(websocket, channel)
            else:
                await self.unsubscribe(websocket, channel)
            return None

        return None


# Global WebSocket manager instance
ws_manager = WebSocketManager()


# ============= Helper Functions for Job Updates =============


async def _notify_job(job_id: str, message_type: MessageType, data: dict[str, Any]) -> None:
    channel = job_channel(job_id)
    await ws_manager.broadcast_to_channel(channel, WebSocketMessage(type=message_type, channel=channel, data=data))


async def notify_job_started(job_id: str, job_data: dict[str, Any]) -> None:
    """Notify subscribers that a job has started."""
    await _notify_job(job_id, MessageType.JOB_STARTED, job_data)


async def notify_job_progress(
    job_id: str,
    progress: float,
    message: str = "",
    metrics: dict[str, Any] | None = None,
) -> None:
    """
    Notify subscribers of job progress update.

    Args:
        job_id: Job identifier
        progress: Progress percentage (0-100)
        message: Progress message, e.g. the node being processed
        metrics: Optional metrics data
    """
    await _notify_job(
        job_id,
        MessageType.JOB_PROGRESS,
        {"job_id": job_id, "progress": progress, "message": message, "metrics": metrics or {}},
    )


async def notify_job_completed(job_id: str, result: dict[str, Any]) -> None:
    await _notify_job(job_id, MessageType.JOB_COMPLETED, {"job_id": job_id, "result": result})


async def notify_job_failed(job_id: str, error: str) -> None:
    await _notify_job(job_id, MessageType.JOB_FAILED, {"job_id": job_id, "error": error})


async def notify_job_cancelled(job_id: str) -> None:
    await _notify_job(job_id, MessageType.JOB_CANCELLED, {"job_id": job_id})


async def notify_job_metrics(job_id: str, metrics: dict[str, Any]) -> None:
    """Notify subscribers of per-node timing and counts."""
    await _notify_job(job_id, MessageType.JOB_METRICS, {"job_id": job_id, "metrics": metrics})
