"""
WebSocket connection manager for the audio diagnostics backend.

Pushes diagnostics updates to the UI:
- ``diagnostics`` channel: recomputed diffs, missing-feature popup changes
  and every regeneration job transition
- ``job:<id>`` channels: transitions of a single regeneration job
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import orjson
from fastapi import WebSocket

from api.shared.logger import get_logger

logger = get_logger(__name__)

DIAGNOSTICS_CHANNEL = "diagnostics"


class MessageType(str, Enum):
    """Types of WebSocket messages."""

    # Regeneration jobs
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"

    # Diagnostics
    DIAGNOSTICS_UPDATED = "diagnostics_updated"
    MISSING_POPUP = "missing_popup"

    # System messages
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
    CONNECTED = "connected"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


@dataclass
class WebSocketMessage:
    """Represents a WebSocket message."""

    type: MessageType
    channel: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now().isoformat()

    def to_json(self) -> str:
        return orjson.dumps({
            "type": self.type.value,
            "channel": self.channel,
            "data": self.data,
            "timestamp": self.timestamp,
        }).decode("utf-8")

    @classmethod
    def from_json(cls, json_str: str) -> "WebSocketMessage":
        """Parse an incoming message.

        Raises:
            ValueError: On invalid JSON or an unknown message type.
        """
        data = orjson.loads(json_str)
        if not isinstance(data, dict):
            raise ValueError("Message must be a JSON object")
        return cls(
            type=MessageType(data.get("type", "error")),
            channel=data.get("channel", ""),
            data=data.get("data") or {},
            timestamp=data.get("timestamp"),
        )


class WebSocketManager:
    """
    Manages WebSocket connections for real-time updates.

    Supports channel-based subscriptions for targeted message delivery.
    """

    def __init__(self):
        self._connections: Set[WebSocket] = set()
        # channel -> subscribed connections
        self._channels: Dict[str, Set[WebSocket]] = {}
        self._connection_info: Dict[WebSocket, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, client_id: Optional[str] = None) -> None:
        """Accept a connection and confirm it to the client."""
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
                    "message": "Connected to audio diagnostics WebSocket server",
                },
            ),
        )

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            subscriptions = self._connection_info.get(websocket, {}).get("subscriptions", set())
            for channel in subscriptions:
                if channel in self._channels:
                    self._channels[channel].discard(websocket)
                    if not self._channels[channel]:
                        del self._channels[channel]

            self._connections.discard(websocket)
            self._connection_info.pop(websocket, None)

    async def subscribe(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            self._channels.setdefault(channel, set()).add(websocket)
            if websocket in self._connection_info:
                self._connection_info[websocket]["subscriptions"].add(channel)

        await self.send_to_connection(
            websocket,
            WebSocketMessage(type=MessageType.SUBSCRIBED, channel=channel, data={"channel": channel}),
        )

    async def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            if channel in self._channels:
                self._channels[channel].discard(websocket)
                if not self._channels[channel]:
                    del self._channels[channel]

            if websocket in self._connection_info:
                self._connection_info[websocket]["subscriptions"].discard(channel)

        await self.send_to_connection(
            websocket,
            WebSocketMessage(type=MessageType.UNSUBSCRIBED, channel=channel, data={"channel": channel}),
        )

    async def send_to_connection(self, websocket: WebSocket, message: WebSocketMessage) -> bool:
        """Send to one connection; drops the connection on failure."""
        try:
            await websocket.send_text(message.to_json())
            return True
        except Exception as e:
            logger.warning("Error sending WebSocket message: %s", e)
            await self.disconnect(websocket)
            return False

    async def broadcast_to_channel(self, channel: str, message: WebSocketMessage) -> int:
        """Send to every subscriber of ``channel``; returns the delivery count."""
        async with self._lock:
            subscribers = list(self._channels.get(channel, set()))
        return await self._send_all(subscribers, message)

    async def broadcast_to_all(self, message: WebSocketMessage) -> int:
        async with self._lock:
            connections = list(self._connections)
        return await self._send_all(connections, message)

    async def _send_all(self, targets: List[WebSocket], message: WebSocketMessage) -> int:
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

    def get_channel_subscribers(self, channel: str) -> int:
        return len(self._channels.get(channel, set()))

    def get_connection_count(self) -> int:
        return len(self._connections)

    async def handle_message(self, websocket: WebSocket, message_text: str) -> Optional[WebSocketMessage]:
        """Handle an incoming message; returns the reply to send, if any."""
        try:
            message = WebSocketMessage.from_json(message_text)
        except (orjson.JSONDecodeError, ValueError) as e:
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


# ============= Helper Functions for Diagnostics Updates =============


async def _broadcast_job(job_id: str, message_type: MessageType, data: Dict[str, Any]) -> None:
    for channel in (f"job:{job_id}", DIAGNOSTICS_CHANNEL):
        await ws_manager.broadcast_to_channel(
            channel,
            WebSocketMessage(type=message_type, channel=channel, data=data),
        )


async def notify_job_started(job_id: str, job_data: Dict[str, Any]) -> None:
    """Notify subscribers that a regeneration job is running."""
    await _broadcast_job(job_id, MessageType.JOB_STARTED, job_data)


async def notify_job_completed(job_id: str, job_data: Dict[str, Any]) -> None:
    await _broadcast_job(job_id, MessageType.JOB_COMPLETED, {"job_id": job_id, "job": job_data})


async def notify_job_failed(job_id: str, error: str, traceback: Optional[str] = None) -> None:
    """
    Notify subscribers that a regeneration job has failed.

    Args:
        job_id: Job identifier
        error: Error message
        traceback: Optional error traceback
    """
    await _broadcast_job(
        job_id,
        MessageType.JOB_FAILED,
        {"job_id": job_id, "error": error, "traceback": traceback},
    )


async def notify_diagnostics_updated(diagnostics: Dict[str, Any]) -> None:
    """Push a recomputed diagnostics snapshot."""
    await ws_manager.broadcast_to_channel(
        DIAGNOSTICS_CHANNEL,
        WebSocketMessage(type=MessageType.DIAGNOSTICS_UPDATED, channel=DIAGNOSTICS_CHANNEL, data=diagnostics),
    )


async def notify_missing_popup(visible: bool, suppressed: bool, missing: List[str]) -> None:
    await ws_manager.broadcast_to_channel(
        DIAGNOSTICS_CHANNEL,
        WebSocketMessage(
            type=MessageType.MISSING_POPUP,
            channel=DIAGNOSTICS_CHANNEL,
            data={"visible": visible, "suppressed": suppressed, "missing": missing},
        ),
    )
