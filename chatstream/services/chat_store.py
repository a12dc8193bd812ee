"""
CHAT STORE MODULE
=================

Persistence for conversations. The turn processor only ever calls create()
and append(); the HTTP API calls list_previews() and get().

IMPLEMENTATIONS:
  JsonChatStore     - One JSON file per conversation in database/chats_data/
                      (id.json). Survives restarts. Default.
  InMemoryChatStore - A dict; used in tests and for throwaway servers.

CONTRACT:
  - create(title, turns) -> new conversation id
  - append(chat_id, turns) -> True, or False when the id doesn't exist
    (ids that aren't valid file names count as "doesn't exist")
  - list_previews() -> [ChatPreview], newest first
  - get(chat_id) -> Conversation or None
  Read/write errors raise PersistenceFailure. A single append writes all the
  given turns or none of them.
"""

import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from chatstream.errors import PersistenceFailure
from chatstream.models import ChatPreview, Conversation, Turn
from config import DEFAULT_TITLE, TITLE_MAX_LENGTH

logger = logging.getLogger("chatstream")

# Ids end up in file paths; anything else (e.g. "../x") is treated as unknown.
_VALID_CHAT_ID = re.compile(r"[A-Za-z0-9_-]{1,64}")


def is_valid_chat_id(chat_id: str) -> bool:
    return bool(chat_id) and _VALID_CHAT_ID.fullmatch(chat_id) is not None


def make_title(prompt: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    """First max_length characters of the prompt; image-only turns get a placeholder."""
    return prompt[:max_length] or DEFAULT_TITLE


# ==============================================================================
# INTERFACE
# ==============================================================================

class ChatStore(ABC):
    """Interface for saving and loading conversations."""

    @abstractmethod
    async def create(self, title: str, turns: Sequence[Turn]) -> str:
        """Creates a conversation holding the given turns and returns its id."""
        pass

    @abstractmethod
    async def append(self, chat_id: str, turns: Sequence[Turn]) -> bool:
        """Appends turns to an existing conversation. False if it doesn't exist."""
        pass

    @abstractmethod
    async def list_previews(self) -> List[ChatPreview]:
        """All conversations as previews, newest first."""
        pass

    @abstractmethod
    async def get(self, chat_id: str) -> Optional[Conversation]:
        """The full conversation, or None."""
        pass


# ==============================================================================
# IN-MEMORY
# ==============================================================================

class InMemoryChatStore(ChatStore):
    """Saves and loads conversations from an in-memory dictionary."""

    def __init__(self):
        self._store: Dict[str, Conversation] = {}

    async def create(self, title: str, turns: Sequence[Turn]) -> str:
        conversation = Conversation(title=title, messages=[t.model_copy() for t in turns])
        self._store[conversation.id] = conversation
        return conversation.id

    async def append(self, chat_id: str, turns: Sequence[Turn]) -> bool:
        conversation = self._store.get(chat_id)
        if conversation is None:
            return False
        conversation.messages.extend(t.model_copy() for t in turns)
        conversation.updated_at = datetime.now(timezone.utc)
        return True

    async def list_previews(self) -> List[ChatPreview]:
        conversations = sorted(self._store.values(), key=lambda c: c.created_at, reverse=True)
        return [c.preview() for c in conversations]

    async def get(self, chat_id: str) -> Optional[Conversation]:
        conversation = self._store.get(chat_id)
        return conversation.model_copy(deep=True) if conversation else None


# ==============================================================================
# JSON FILES
# ==============================================================================

class JsonChatStore(ChatStore):
    """
    Saves each conversation to <directory>/<id>.json.

    File I/O runs in the threadpool so a slow disk never blocks the event loop
    (and with it every other connection's token stream). Writes go through a
    temp file + os.replace so a crash can't leave half a conversation on disk.

    Each create/append is one blocking call made under a threading.Lock.
    Cancelling the awaiting task does not stop a thread that already started,
    so the lock must be held by the thread itself: a write that has begun
    finishes before the next read of the same store.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()

    def _path(self, chat_id: str) -> Optional[Path]:
        if not is_valid_chat_id(chat_id):
            return None
        return self.directory / f"{chat_id}.json"

    # --- blocking helpers (run in threadpool) ---

    def _read(self, path: Path) -> Optional[Conversation]:
        if not path.exists():
            return None
        return Conversation.model_validate_json(path.read_text(encoding="utf-8"))

    def _write(self, conversation: Conversation) -> None:
        path = self.directory / f"{conversation.id}.json"
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(conversation.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def _create_sync(self, conversation: Conversation) -> None:
        with self._write_lock:
            self._write(conversation)

    def _append_sync(self, path: Path, turns: Sequence[Turn]) -> bool:
        with self._write_lock:
            conversation = self._read(path)
            if conversation is None:
                return False
            conversation.messages.extend(turns)
            conversation.updated_at = datetime.now(timezone.utc)
            self._write(conversation)
            return True

    def _read_all(self) -> List[Conversation]:
        conversations = []
        # Sorted by path so the order is always the same across runs (before the date sort).
        for path in sorted(self.directory.glob("*.json")):
            try:
                conversations.append(self._read(path))
            except (OSError, ValidationError) as e:
                logger.warning("Skipping unreadable chat file %s: %s", path.name, e)
        return [c for c in conversations if c is not None]

    # --- ChatStore ---

    async def create(self, title: str, turns: Sequence[Turn]) -> str:
        conversation = Conversation(title=title, messages=list(turns))
        try:
            await run_in_threadpool(self._create_sync, conversation)
        except OSError as e:
            logger.error("Failed to save new chat %s: %s", conversation.id, e)
            raise PersistenceFailure(str(e)) from e
        return conversation.id

    async def append(self, chat_id: str, turns: Sequence[Turn]) -> bool:
        path = self._path(chat_id)
        if path is None:
            return False
        try:
            return await run_in_threadpool(self._append_sync, path, list(turns))
        except (OSError, ValidationError) as e:
            logger.error("Failed to append to chat %s: %s", chat_id, e)
            raise PersistenceFailure(str(e)) from e

    async def list_previews(self) -> List[ChatPreview]:
        try:
            conversations = await run_in_threadpool(self._read_all)
        except OSError as e:
            raise PersistenceFailure(str(e)) from e
        conversations.sort(key=lambda c: c.created_at, reverse=True)
        return [c.preview() for c in conversations]

    async def get(self, chat_id: str) -> Optional[Conversation]:
        path = self._path(chat_id)
        if path is None:
            return None
        try:
            return await run_in_threadpool(self._read, path)
        except (OSError, ValidationError) as e:
            logger.error("Failed to load chat %s: %s", chat_id, e)
            raise PersistenceFailure(str(e)) from e
