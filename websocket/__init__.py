"""
WebSocket module for the NeuroData Hub backend.

Provides real-time cloud job status updates via WebSocket connections.
"""

from .manager import (
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
    ws_manager,
)

__all__ = [
    "WebSocketManager",
    "WebSocketMessage",
    "MessageType",
    "ws_manager",
    "job_channel",
    "notify_job_started",
    "notify_job_progress",
    "notify_job_completed",
    "notify_job_failed",
    "notify_job_cancelled",
    "notify_job_metrics",
]
