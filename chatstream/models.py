"""
DATA MODELS MODULE
==================

This file defines the Pydantic models used on the WebSocket, on the HTTP API
and inside the chat store. FastAPI uses them to validate incoming JSON and to
serialize responses; the turn processor uses them to validate every inbound
turn; the chat store uses them when saving/loading conversations.

JSON field names follow the wire format the browser client already speaks
(imageUrl, chatId, createdAt); Python code uses snake_case attributes.

MODELS:
  Turn              - One role-tagged message (user or assistant), optional image URL.
  Conversation      - Persisted chat: id, title, ordered turns, timestamps.
  ChatPreview       - id + title + createdAt, for the chat list.
  TurnRequest       - One inbound WebSocket message (prompt, image, chatId, history).
  TurnComplete      - Handshake frame sent after a successful turn.
  ErrorFrame        - JSON frame describing a rejected message.
  UploadImageRequest / UploadImageResponse - Body of POST /api/upload-image.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from config import MAX_MESSAGE_LENGTH

# ==============================================================================
# ROLES
# ==============================================================================

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
Role = Literal["user", "assistant"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_chat_id() -> str:
    """32-char hex id; also safe to use as a file name."""
    return uuid.uuid4().hex


def _blank_to_none(value):
    # Browsers send "" or null interchangeably for "no image" / "no chat yet".
    if isinstance(value, str) and not value.strip():
        return None
    return value


# ==============================================================================
# CONVERSATION MODELS
# ==============================================================================

class Turn(BaseModel):
    """
    A single message in a conversation (user or assistant).
    Only user turns may carry an image; the image is stored as a URL, never bytes.
    """
    model_config = ConfigDict(populate_by_name=True)

    role: Role
    content: str = ""
    image_url: Optional[str] = Field(default=None, alias="imageUrl")

    @field_validator("image_url", mode="before")
    @classmethod
    def _empty_image_is_none(cls, value):
        return _blank_to_none(value)

    @model_validator(mode="after")
    def _assistant_has_no_image(self) -> "Turn":
        if self.role == ASSISTANT_ROLE and self.image_url:
            raise ValueError("assistant turns cannot carry an image")
        return self


class Conversation(BaseModel):
    """Full persisted chat. The title is fixed when the chat is created."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_chat_id)
    title: str
    messages: List[Turn] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=_utcnow, alias="updatedAt")

    def preview(self) -> "ChatPreview":
        return ChatPreview(id=self.id, title=self.title, created_at=self.created_at)


class ChatPreview(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    created_at: datetime = Field(alias="createdAt")


# ==============================================================================
# WEBSOCKET FRAMES
# ==============================================================================

class TurnRequest(BaseModel):
    """
    One inbound WebSocket message.

    - prompt: the user's text. May be empty only when an image is attached.
    - imageUrl: an already uploaded image (e.g. from POST /api/upload-image).
    - imageBase64: an image sent inline; uploaded before the turn is built.
    - chatId: continue this conversation. Unknown ids start a new one.
    - history: prior turns, oldest first, as the client displays them.
    """
    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(default="", max_length=MAX_MESSAGE_LENGTH)
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    image_base64: Optional[str] = Field(default=None, alias="imageBase64")
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    history: List[Turn] = Field(default_factory=list)

    @field_validator("prompt", mode="before")
    @classmethod
    def _null_prompt_is_empty(cls, value):
        return "" if value is None else value

    @field_validator("image_url", "image_base64", "chat_id", mode="before")
    @classmethod
    def _blank_fields_are_none(cls, value):
        return _blank_to_none(value)

    @field_validator("history", mode="before")
    @classmethod
    def _null_history_is_empty(cls, value):
        return [] if value is None else value

    @model_validator(mode="after")
    def _needs_prompt_or_image(self) -> "TurnRequest":
        if not self.prompt and not (self.image_url or self.image_base64):
            raise ValueError("a prompt or an image is required")
        return self

    @property
    def has_inline_image(self) -> bool:
        return self.image_base64 is not None and self.image_url is None


class TurnComplete(BaseModel):
    """Sent once after [END] when the turn was persisted."""
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(alias="chatId")
    done: bool = True


class ErrorFrame(BaseModel):
    error: str
    detail: str = ""


# ==============================================================================
# HTTP REQUEST/RESPONSE MODELS
# ==============================================================================

class UploadImageRequest(BaseModel):
    # Bare base64 or a data: URL. Missing/empty returns 422.
    base64: str = Field(..., min_length=1)


class UploadImageResponse(BaseModel):
    url: str
