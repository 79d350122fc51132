"""
WebSocket module for the audio diagnostics backend.

Provides real-time diagnostics, missing-feature popup and regeneration job
updates via WebSocket connections.
"""

from .manager import (
    DIAGNOSTICS_CHANNEL,
    WebSocketManager,
    WebSocketMessage,
    MessageType,
    ws_manager,
    notify_job_started,
    notify_job_completed,
    notify_job_failed,
    notify_diagnostics_updated,
    notify_missing_popup,
)

__all__ = [
    "DIAGNOSTICS_CHANNEL",
    "WebSocketManager",
    "WebSocketMessage",
    "MessageType",
    "ws_manager",
    "notify_job_started",
    "notify_job_completed",
    "notify_job_failed",
    "notify_diagnostics_updated",
    "notify_missing_popup",
]
