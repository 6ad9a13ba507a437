"""
WebSocket event streaming for voice pipelines.
Forwards every PipelineEvent of a session to its connected clients.
"""

import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from edusync.models import PipelineEvent, PipelineEventType
from edusync.orchestration.voice_pipeline import VoicePipeline

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Manages WebSocket connections subscribed to pipeline events.

    Responsibilities:
    - Track active connections (connection_id → websocket)
    - Subscribe each connection to its pipeline's events
    - Serialize events and send them in emission order
    - Cleanup subscriptions after disconnect
    """

    def __init__(self):
        """Initialize connection manager."""
        # Active connections: connection_id → WebSocket
        self.active_connections: Dict[str, WebSocket] = {}

        # Connection metadata: connection_id → metadata dict
        self.connection_metadata: Dict[str, dict] = {}

        # Pipeline unsubscribe callbacks: connection_id → callable
        self._unsubscribers: Dict[str, Callable[[], None]] = {}

        logger.info("ConnectionManager initialized")

    async def connect(self, session_id: str, websocket: WebSocket, pipeline: VoicePipeline) -> str:
        """
        Accept a WebSocket and stream the pipeline's events to it until it closes.

        Pipeline subscribers are synchronous, so events are queued and sent
        from this coroutine.

        Returns:
            connection_id of the closed connection
        """
        await websocket.accept()

        connection_id = str(uuid.uuid4())
        queue: asyncio.Queue[Optional[PipelineEvent]] = asyncio.Queue()

        self.active_connections[connection_id] = websocket
        self.connection_metadata[connection_id] = {
            "session_id": session_id,
            "connected_at": int(time.time() * 1000),
            "client_info": websocket.client,
            "total_messages": 0,
        }
        self._unsubscribers[connection_id] = pipeline.on_event(queue.put_nowait)

        logger.info(
            f"Event stream connected: session_id={session_id}, "
            f"connection_id={connection_id}, "
            f"total_connections={len(self.active_connections)}"
        )

        receiver = asyncio.create_task(self._wait_for_close(websocket, queue))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                if not await self.send_event(connection_id, event):
                    break
                if event.type == PipelineEventType.SESSION_END:
                    await websocket.close()
                    break
        finally:
            receiver.cancel()
            await self.disconnect(connection_id)

        return connection_id

    async def _wait_for_close(self, websocket: WebSocket, queue: asyncio.Queue) -> None:
        """Drain client frames; a disconnect wakes the sender loop."""
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            queue.put_nowait(None)

    async def disconnect(self, connection_id: str):
        """
        Handle WebSocket disconnection and cleanup.

        Args:
            connection_id: Connection ID to disconnect
        """
        if connection_id not in self.active_connections:
            logger.warning(f"Attempted to disconnect non-existent connection: {connection_id}")
            return

        self.active_connections.pop(connection_id, None)
        unsubscribe = self._unsubscribers.pop(connection_id, None)
        if unsubscribe is not None:
            unsubscribe()

        metadata = self.connection_metadata.pop(connection_id, {})
        if metadata:
            duration_ms = int(time.time() * 1000) - metadata.get("connected_at", 0)
            logger.info(
                f"Event stream disconnected: session_id={metadata.get('session_id')}, "
                f"duration_ms={duration_ms}, "
                f"total_messages={metadata.get('total_messages', 0)}, "
                f"remaining_connections={len(self.active_connections)}"
            )

    async def send_event(self, connection_id: str, event: PipelineEvent) -> bool:
        """Send one pipeline event as JSON."""
        return await self.send_message(connection_id, event.model_dump(mode="json"))

    async def send_message(self, connection_id: str, message: dict) -> bool:
        """
        Send JSON message to a specific connection.

        Returns:
            True if sent successfully, False otherwise
        """
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            logger.warning(f"Attempted to send message to non-existent connection: {connection_id}")
            return False

        try:
            await websocket.send_json(message)

            if connection_id in self.connection_metadata:
                self.connection_metadata[connection_id]["total_messages"] += 1

            logger.debug(f"Message sent to {connection_id}: type={message.get('type', 'unknown')}")
            return True

        except WebSocketDisconnect:
            logger.warning(f"WebSocket disconnected while sending to: {connection_id}")
            return False
        except Exception as e:
            logger.error(f"Error sending message to {connection_id}: {e}", exc_info=True)
            return False

    def get_connection_count(self, session_id: Optional[str] = None) -> int:
        """Count connections, optionally for one session."""
        if session_id is None:
            return len(self.active_connections)
        return sum(
            1 for metadata in self.connection_metadata.values()
            if metadata.get("session_id") == session_id
        )


# Global connection manager instance
connection_manager = ConnectionManager()
