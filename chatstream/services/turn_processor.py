"""
TURN PROCESSOR MODULE
=====================

Runs one chat turn for one WebSocket connection, start to finish.

STATES:
  IDLE -> VALIDATING -> BUILDING_HISTORY -> STREAMING -> FINALIZING -> COMPLETED
  Any step may end in FAILED instead.

  VALIDATING        Size check, JSON parse, prompt-or-image check. An inline
                    base64 image is uploaded here so later steps only see URLs.
  BUILDING_HISTORY  history + new prompt -> chat model messages (pure).
  STREAMING         Each fragment is appended to the connection's reply
                    buffer and sent to the client immediately, one frame each.
  FINALIZING        Send [END], persist user + assistant turns, send
                    {"chatId": ..., "done": true}.

WHAT THE CLIENT SEES:
  success             text*, [END], {"chatId": id, "done": true}
  malformed input     {"error": "malformed_input", ...}, [ERROR]
  upload/provider     text*, [ERROR]              (nothing persisted)
  persistence error   text*, [END], [ERROR]       (tokens delivered, transcript lost)
  client gone         nothing more is sent

No exception leaves run(): every failure becomes a TurnResult and the
connection stays usable. Task cancellation (disconnect) is not caught, so a
cancelled turn is never persisted.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol, Tuple, Union
from uuid import uuid4

from pydantic import ValidationError

from chatstream.errors import (
    ErrorKind,
    MalformedInput,
    TransportFailure,
    TurnError,
)
from chatstream.models import (
    ASSISTANT_ROLE,
    USER_ROLE,
    ErrorFrame,
    Turn,
    TurnComplete,
    TurnRequest,
)
from chatstream.services.chat_store import ChatStore, make_title
from chatstream.services.image_store import ImageStore
from chatstream.services.llm_service import CompletionStreamClient
from chatstream.services.message_adapter import build_provider_messages
from config import IMAGE_FOLDER, MAX_PAYLOAD_BYTES

logger = logging.getLogger("chatstream")

END_SENTINEL = "[END]"
ERROR_SENTINEL = "[ERROR]"


class Transport(Protocol):
    """Anything that can send one text frame to the client."""

    async def send_text(self, data: str) -> None:
        ...


class TurnState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    BUILDING_HISTORY = "building_history"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TurnResult:
    state: TurnState
    error: Optional[ErrorKind] = None
    chat_id: Optional[str] = None
    # True when the requested chatId didn't exist and a new chat was created.
    persistence_miss: bool = False


# ==============================================================================
# CONNECTION CONTEXT
# ==============================================================================

@dataclass
class ConnectionContext:
    """
    Per-connection state. Lives from connect to disconnect.

    busy is the one-turn-at-a-time guard: begin_turn() takes it (or refuses
    without touching anything), end_turn() clears the reply buffer and
    releases it.
    """
    connection_id: str = field(default_factory=lambda: uuid4().hex[:8])
    chat_id: Optional[str] = None
    reply_buffer: List[str] = field(default_factory=list)
    busy: bool = False
    task: Optional["asyncio.Task[TurnResult]"] = None

    def begin_turn(self) -> bool:
        if self.busy:
            return False
        self.busy = True
        self.reply_buffer = []
        return True

    def end_turn(self) -> None:
        self.reply_buffer = []
        self.busy = False
        self.task = None

    @property
    def reply_text(self) -> str:
        return "".join(self.reply_buffer)


# ==============================================================================
# TURN PROCESSOR
# ==============================================================================

def describe_validation_error(error: ValidationError) -> str:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        messages.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(messages)


class TurnProcessor:
    """One instance per turn. The connection's guard must already be held."""

    def __init__(
        self,
        context: ConnectionContext,
        transport: Transport,
        completion_client: CompletionStreamClient,
        chat_store: ChatStore,
        image_store: Optional[ImageStore] = None,
        image_folder: str = IMAGE_FOLDER,
        max_payload_bytes: int = MAX_PAYLOAD_BYTES,
    ):
        self.context = context
        self.transport = transport
        self.completion_client = completion_client
        self.chat_store = chat_store
        self.image_store = image_store
        self.image_folder = image_folder
        self.max_payload_bytes = max_payload_bytes
        self.state = TurnState.IDLE

    def _enter(self, state: TurnState) -> None:
        logger.debug("[%s] %s -> %s", self.context.connection_id, self.state.value, state.value)
        self.state = state

    def _fail(self, kind: ErrorKind) -> TurnResult:
        self._enter(TurnState.FAILED)
        return TurnResult(state=TurnState.FAILED, error=kind)

    async def run(self, raw: Union[str, bytes]) -> TurnResult:
        cid = self.context.connection_id
        try:
            return await self._run(raw)
        except MalformedInput as e:
            logger.warning("[%s] Rejected malformed turn: %s", cid, e)
            frame = ErrorFrame(error=e.kind.value, detail=str(e)).model_dump_json()
            await self._send_failure(frame)
            return self._fail(e.kind)
        except TransportFailure:
            logger.info("[%s] Client went away during %s; turn dropped", cid, self.state.value)
            return self._fail(ErrorKind.TRANSPORT_FAILURE)
        except TurnError as e:
            logger.error("[%s] Turn failed during %s (%s): %s", cid, self.state.value, e.kind.value, e)
            await self._send_failure()
            return self._fail(e.kind)
        except Exception as e:
            logger.error("[%s] Unexpected error during %s: %s", cid, self.state.value, e, exc_info=True)
            await self._send_failure()
            return self._fail(ErrorKind.INTERNAL)
        finally:
            self.context.end_turn()

    async def _send_failure(self, *frames: str) -> None:
        """Send the given frames then [ERROR]; give up quietly if the client is gone."""
        try:
            for frame in frames:
                await self.transport.send_text(frame)
            await self.transport.send_text(ERROR_SENTINEL)
        except TransportFailure:
            logger.info("[%s] Could not deliver [ERROR]; client is gone", self.context.connection_id)

    async def _run(self, raw: Union[str, bytes]) -> TurnResult:
        # --- VALIDATING ---
        self._enter(TurnState.VALIDATING)
        request = self.parse(raw)
        image_url = await self._resolve_image(request)

        # --- BUILDING_HISTORY ---
        self._enter(TurnState.BUILDING_HISTORY)
        messages = build_provider_messages(request.history, request.prompt, image_url)

        # --- STREAMING ---
        self._enter(TurnState.STREAMING)
        async with aclosing(self.completion_client.stream(messages)) as fragments:
            async for fragment in fragments:
                self.context.reply_buffer.append(fragment)
                await self.transport.send_text(fragment)

        # --- FINALIZING ---
        self._enter(TurnState.FINALIZING)
        await self.transport.send_text(END_SENTINEL)
        chat_id, persistence_miss = await self._persist(request, image_url, self.context.reply_text)
        self.context.chat_id = chat_id
        await self.transport.send_text(TurnComplete(chat_id=chat_id).model_dump_json(by_alias=True))

        self._enter(TurnState.COMPLETED)
        logger.info(
            "[%s] Turn completed: chat=%s fragments=%s chars=%s",
            self.context.connection_id,
            chat_id,
            len(self.context.reply_buffer),
            len(self.context.reply_text),
        )
        return TurnResult(state=TurnState.COMPLETED, chat_id=chat_id, persistence_miss=persistence_miss)

    def parse(self, raw: Union[str, bytes]) -> TurnRequest:
        size = len(raw) if isinstance(raw, bytes) else len(raw.encode("utf-8"))
        if size > self.max_payload_bytes:
            raise MalformedInput(f"payload is {size} bytes; the limit is {self.max_payload_bytes}")
        try:
            return TurnRequest.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedInput(describe_validation_error(e)) from e

    async def _resolve_image(self, request: TurnRequest) -> Optional[str]:
        if not request.has_inline_image:
            return request.image_url
        if self.image_store is None:
            raise MalformedInput("inline images are not accepted by this server")
        return await self.image_store.upload(request.image_base64, self.image_folder)

    async def _persist(self, request: TurnRequest, image_url: Optional[str], reply: str) -> Tuple[str, bool]:
        """Append to the target chat if it exists, else create one. Returns (chat_id, missed)."""
        turns = [
            Turn(role=USER_ROLE, content=request.prompt, image_url=image_url),
            Turn(role=ASSISTANT_ROLE, content=reply),
        ]

        persistence_miss = False
        target = request.chat_id or self.context.chat_id
        if target:
            if await self.chat_store.append(target, turns):
                return target, False
            logger.warning(
                "[%s] Chat %s not found; saving this turn as a new chat",
                self.context.connection_id,
                target,
            )
            persistence_miss = True

        chat_id = await self.chat_store.create(make_title(request.prompt), turns)
        return chat_id, persistence_miss
