"""
Shared pytest fixtures and test doubles for the chat relay.

The doubles stand in for the collaborators the turn processor talks to:
the transport (a WebSocket), the completion stream, the chat store and the
image store. Async code is driven with asyncio.run inside plain tests.
"""

import asyncio
import json
from typing import List, Optional

import pytest

from chatstream.errors import PersistenceFailure, TransportFailure, UploadError
from chatstream.services.chat_store import InMemoryChatStore


# ===== TEST DOUBLES =====


class FakeTransport:
    """Records every frame. fail_after=n makes the (n+1)th send fail."""

    def __init__(self, fail_after: Optional[int] = None):
        self.frames: List[str] = []
        self.fail_after = fail_after

    async def send_text(self, data: str) -> None:
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            raise TransportFailure("client disconnected")
        self.frames.append(data)


class FakeCompletionClient:
    """
    Yields the given fragments, then raises error (if any).
    With a gate, waits for gate.set() before the first fragment.
    """

    def __init__(self, fragments=(), error: Optional[Exception] = None, gate: Optional[asyncio.Event] = None):
        self.fragments = list(fragments)
        self.error = error
        self.gate = gate
        self.calls = []
        self.started = False
        self.closed = False

    async def stream(self, messages):
        self.calls.append(messages)
        self.started = True
        try:
            if self.gate is not None:
                await self.gate.wait()
            for fragment in self.fragments:
                yield fragment
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class FailingChatStore(InMemoryChatStore):
    async def create(self, title, turns):
        raise PersistenceFailure("disk full")

    async def append(self, chat_id, turns):
        raise PersistenceFailure("disk full")


class FakeImageStore:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.uploads = []

    async def upload(self, payload: str, folder: str) -> str:
        if self.fail:
            raise UploadError("provider said no")
        self.uploads.append((payload, folder))
        return f"https://images.test/{folder}/{len(self.uploads)}.jpg"


class FakeWebSocket:
    """Just enough of a Starlette WebSocket for ConnectionManager.handle()."""

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: List[str] = []
        self.accepted = False
        self.closed = False

    async def accept(self):
        self.accepted = True

    async def receive(self):
        return await self.inbox.get()

    async def send_text(self, data: str):
        if self.closed:
            raise RuntimeError("Cannot call 'send' once a close message has been sent.")
        self.sent.append(data)

    def push(self, text: str):
        self.inbox.put_nowait({"type": "websocket.receive", "text": text})

    def push_bytes(self, data: bytes):
        self.inbox.put_nowait({"type": "websocket.receive", "bytes": data})

    def disconnect(self):
        self.closed = True
        self.inbox.put_nowait({"type": "websocket.disconnect", "code": 1000})


# ===== HELPERS =====


def turn_message(prompt="hello", history=None, **extra) -> str:
    """Inbound WebSocket message as the browser client sends it."""
    payload = {"prompt": prompt, "history": history if history is not None else []}
    payload.update(extra)
    return json.dumps(payload)


async def wait_until(predicate, timeout: float = 2.0):
    """Yield to the event loop until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ===== FIXTURES =====


@pytest.fixture
def chat_store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def image_store() -> FakeImageStore:
    return FakeImageStore()


@pytest.fixture
def sample_history():
    return [
        {"role": "user", "content": "What is in this picture?", "imageUrl": "https://images.test/cat.jpg"},
        {"role": "assistant", "content": "A cat on a sofa.", "imageUrl": None},
        {"role": "user", "content": "What colour is it?"},
        {"role": "assistant", "content": "Orange."},
    ]
