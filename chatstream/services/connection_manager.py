"""
CONNECTION MANAGER MODULE
=========================

Owns every open WebSocket. For each connection it keeps a ConnectionContext
and keeps reading messages while a turn is streaming, so it can:
  - reject a second message that arrives before the current turn finished
    ({"error": "turn_in_progress"}; the running turn is not touched), and
  - notice the disconnect right away and cancel the running turn, which also
    closes the provider stream. An interrupted turn is never saved.

Each accepted message runs as its own asyncio task through a fresh
TurnProcessor. Failures inside a turn never reach this loop.
"""

import asyncio
import logging
from typing import Dict, Optional, Union

from fastapi import WebSocket, WebSocketDisconnect

from chatstream.errors import TransportFailure
from chatstream.models import ErrorFrame
from chatstream.services.chat_store import ChatStore
from chatstream.services.image_store import ImageStore
from chatstream.services.llm_service import CompletionStreamClient
from chatstream.services.turn_processor import ConnectionContext, Transport, TurnProcessor
from config import IMAGE_FOLDER, MAX_PAYLOAD_BYTES

logger = logging.getLogger("chatstream")

TURN_IN_PROGRESS = "turn_in_progress"


class WebSocketTransport:
    """Sends text frames; a closed socket surfaces as TransportFailure."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send_text(self, data: str) -> None:
        try:
            await self.websocket.send_text(data)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            raise TransportFailure(f"send failed: {e!r}") from e


class ConnectionManager:

    def __init__(
        self,
        completion_client: CompletionStreamClient,
        chat_store: ChatStore,
        image_store: Optional[ImageStore] = None,
        image_folder: str = IMAGE_FOLDER,
        max_payload_bytes: int = MAX_PAYLOAD_BYTES,
    ):
        self.completion_client = completion_client
        self.chat_store = chat_store
        self.image_store = image_store
        self.image_folder = image_folder
        self.max_payload_bytes = max_payload_bytes
        self.connections: Dict[str, ConnectionContext] = {}

    @property
    def active_connections(self) -> int:
        return len(self.connections)

    def new_processor(self, context: ConnectionContext, transport: Transport) -> TurnProcessor:
        return TurnProcessor(
            context,
            transport,
            self.completion_client,
            self.chat_store,
            image_store=self.image_store,
            image_folder=self.image_folder,
            max_payload_bytes=self.max_payload_bytes,
        )

    async def handle(self, websocket: WebSocket) -> None:
        """Serve one connection until the client disconnects."""
        await websocket.accept()
        context = ConnectionContext()
        transport = WebSocketTransport(websocket)
        self.connections[context.connection_id] = context
        logger.info("[%s] Client connected (%s open)", context.connection_id, self.active_connections)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue
                await self.dispatch(raw, context, transport)
        finally:
            await self.abandon_turn(context)
            self.connections.pop(context.connection_id, None)
            logger.info("[%s] Client disconnected (%s open)", context.connection_id, self.active_connections)

    async def dispatch(
        self,
        raw: Union[str, bytes],
        context: ConnectionContext,
        transport: Transport,
    ) -> bool:
        """Start a turn for raw, or reject it if one is already running. True if started."""
        if not context.begin_turn():
            logger.warning("[%s] Message rejected: a turn is already in progress", context.connection_id)
            frame = ErrorFrame(
                error=TURN_IN_PROGRESS,
                detail="wait for [END] or [ERROR] before sending the next message",
            )
            try:
                await transport.send_text(frame.model_dump_json())
            except TransportFailure:
                logger.info("[%s] Could not deliver rejection; client is gone", context.connection_id)
            return False

        processor = self.new_processor(context, transport)
        context.task = asyncio.create_task(processor.run(raw))
        return True

    async def abandon_turn(self, context: ConnectionContext) -> None:
        """Cancel the running turn (if any) and wait until it has unwound."""
        task = context.task
        if task is None or task.done():
            return
        logger.info("[%s] Cancelling in-flight turn", context.connection_id)
        task.cancel()
        await asyncio.wait({task})
