"""
Turn processor: the wire framing and persistence rules for one turn.
"""

import asyncio
import json

import pytest

from chatstream.errors import ErrorKind, ProviderStreamError
from chatstream.services.turn_processor import (
    END_SENTINEL,
    ERROR_SENTINEL,
    ConnectionContext,
    TurnProcessor,
    TurnState,
)
from config import DEFAULT_TITLE
from conftest import (
    FailingChatStore,
    FakeCompletionClient,
    FakeImageStore,
    FakeTransport,
    turn_message,
)


def run_turn(raw, client, store, transport=None, context=None, image_store=None, **kwargs):
    context = context or ConnectionContext()
    transport = transport or FakeTransport()
    assert context.begin_turn()
    processor = TurnProcessor(context, transport, client, store, image_store=image_store, **kwargs)
    result = asyncio.run(processor.run(raw))
    return result, transport.frames, context


def stored(store):
    return {c.id: c for c in store._store.values()}


class TestSuccessfulTurn:
    def test_hello_scenario(self, chat_store):
        client = FakeCompletionClient(["Hi", " there"])

        result, frames, context = run_turn(turn_message("hello"), client, chat_store)

        assert result.state == TurnState.COMPLETED
        assert frames[:3] == ["Hi", " there", END_SENTINEL]
        assert json.loads(frames[3]) == {"chatId": result.chat_id, "done": True}
        assert len(frames) == 4

        conversation = stored(chat_store)[result.chat_id]
        assert conversation.title == "hello"
        assert [(m.role, m.content, m.image_url) for m in conversation.messages] == [
            ("user", "hello", None),
            ("assistant", "Hi there", None),
        ]

    def test_context_is_ready_for_next_turn(self, chat_store):
        result, _, context = run_turn(turn_message("hello"), FakeCompletionClient(["a", "b"]), chat_store)

        assert context.busy is False
        assert context.reply_buffer == []
        assert context.chat_id == result.chat_id

    def test_stored_reply_is_fragments_joined(self, chat_store):
        fragments = ["The", " answer", " is", " 42", ".", "\n\n", "Done"]

        result, frames, _ = run_turn(turn_message("q"), FakeCompletionClient(fragments), chat_store)

        assert frames[: len(fragments)] == fragments
        assistant = stored(chat_store)[result.chat_id].messages[-1]
        assert assistant.content == "".join(fragments)

    def test_empty_reply_still_completes(self, chat_store):
        result, frames, _ = run_turn(turn_message("hello"), FakeCompletionClient([]), chat_store)

        assert result.state == TurnState.COMPLETED
        assert frames[0] == END_SENTINEL
        assert stored(chat_store)[result.chat_id].messages[1].content == ""

    def test_whitespace_prompt_is_forwarded(self, chat_store):
        client = FakeCompletionClient(["ok"])

        result, frames, _ = run_turn(turn_message("   "), client, chat_store)

        assert result.state == TurnState.COMPLETED
        assert frames[:2] == ["ok", END_SENTINEL]
        assert client.calls[0][-1].content == "   "
        assert stored(chat_store)[result.chat_id].title == "   "

    def test_history_is_sent_to_the_provider(self, chat_store, sample_history):
        client = FakeCompletionClient(["ok"])

        run_turn(turn_message("And its name?", history=sample_history), client, chat_store)

        messages = client.calls[0]
        assert len(messages) == len(sample_history) + 1
        assert messages[-1].content == "And its name?"

    def test_long_prompt_title_is_truncated(self, chat_store):
        prompt = "x" * 20 + "y" * 30

        result, _, _ = run_turn(turn_message(prompt), FakeCompletionClient(["ok"]), chat_store)

        assert stored(chat_store)[result.chat_id].title == prompt[:30]


class TestChatIds:
    def test_existing_chat_id_appends_two_turns(self, chat_store):
        existing = asyncio.run(chat_store.create("first", []))

        result, frames, _ = run_turn(
            turn_message("again", chatId=existing), FakeCompletionClient(["Sure"]), chat_store
        )

        assert result.chat_id == existing
        assert result.persistence_miss is False
        assert json.loads(frames[-1])["chatId"] == existing
        assert len(chat_store._store) == 1
        assert [m.content for m in stored(chat_store)[existing].messages] == ["again", "Sure"]

    def test_unknown_chat_id_creates_new_chat(self, chat_store):
        result, frames, _ = run_turn(
            turn_message("hello", chatId="f" * 32), FakeCompletionClient(["Hi"]), chat_store
        )

        assert result.state == TurnState.COMPLETED
        assert result.persistence_miss is True
        assert result.chat_id != "f" * 32
        assert json.loads(frames[-1]) == {"chatId": result.chat_id, "done": True}
        assert len(stored(chat_store)[result.chat_id].messages) == 2

    def test_connection_remembers_chat_between_turns(self, chat_store):
        context = ConnectionContext()
        first, _, _ = run_turn(turn_message("one"), FakeCompletionClient(["1"]), chat_store, context=context)
        second, _, _ = run_turn(turn_message("two"), FakeCompletionClient(["2"]), chat_store, context=context)

        assert second.chat_id == first.chat_id
        assert len(chat_store._store) == 1
        assert [m.content for m in stored(chat_store)[first.chat_id].messages] == ["one", "1", "two", "2"]

    def test_request_chat_id_wins_over_connection_chat(self, chat_store):
        other = asyncio.run(chat_store.create("other", []))
        context = ConnectionContext(chat_id=asyncio.run(chat_store.create("current", [])))

        result, _, _ = run_turn(turn_message("hi", chatId=other), FakeCompletionClient(["x"]), chat_store, context=context)

        assert result.chat_id == other
        assert context.chat_id == other


class TestImages:
    def test_image_url_is_attached_to_user_turn(self, chat_store):
        client = FakeCompletionClient(["A cat."])

        result, _, _ = run_turn(
            turn_message("what is this?", imageUrl="https://images.test/cat.jpg"), client, chat_store
        )

        assert client.calls[0][-1].content[1]["image_url"]["url"] == "https://images.test/cat.jpg"
        user, assistant = stored(chat_store)[result.chat_id].messages
        assert user.image_url == "https://images.test/cat.jpg"
        assert assistant.image_url is None

    def test_image_only_turn(self, chat_store):
        result, _, _ = run_turn(
            turn_message("", imageUrl="https://images.test/cat.jpg"), FakeCompletionClient(["A cat."]), chat_store
        )

        conversation = stored(chat_store)[result.chat_id]
        assert conversation.title == DEFAULT_TITLE
        assert conversation.messages[0].content == ""

    def test_inline_image_is_uploaded_first(self, chat_store):
        images = FakeImageStore()
        client = FakeCompletionClient(["Nice."])

        result, _, _ = run_turn(
            turn_message("look", imageBase64="aGVsbG8="), client, chat_store, image_store=images
        )

        assert images.uploads == [("aGVsbG8=", "chat-images")]
        url = "https://images.test/chat-images/1.jpg"
        assert client.calls[0][-1].content[1]["image_url"]["url"] == url
        assert stored(chat_store)[result.chat_id].messages[0].image_url == url

    def test_inline_image_upload_failure(self, chat_store):
        client = FakeCompletionClient(["never"])

        result, frames, _ = run_turn(
            turn_message("look", imageBase64="aGVsbG8="), client, chat_store, image_store=FakeImageStore(fail=True)
        )

        assert result.error == ErrorKind.IMAGE_UPLOAD
        assert frames == [ERROR_SENTINEL]
        assert client.calls == []
        assert chat_store._store == {}

    def test_inline_image_without_image_store_is_malformed(self, chat_store):
        result, frames, _ = run_turn(turn_message("look", imageBase64="aGVsbG8="), FakeCompletionClient(), chat_store)

        assert result.error == ErrorKind.MALFORMED_INPUT
        assert frames[-1] == ERROR_SENTINEL


class TestFailures:
    def test_provider_error_mid_stream(self, chat_store):
        client = FakeCompletionClient(["Hi", " the"], error=ProviderStreamError("connection reset"))

        result, frames, context = run_turn(turn_message("hello"), client, chat_store)

        assert result.state == TurnState.FAILED
        assert result.error == ErrorKind.PROVIDER_STREAM
        assert frames == ["Hi", " the", ERROR_SENTINEL]
        assert chat_store._store == {}
        assert context.reply_buffer == []
        assert context.busy is False
        assert context.chat_id is None

    @pytest.mark.parametrize(
        "raw",
        [
            "this is not json",
            "[]",
            json.dumps({"prompt": "", "history": []}),
            json.dumps({"history": []}),
            json.dumps({"prompt": "hi", "history": [{"role": "assistant", "content": "x", "imageUrl": "https://i.test/x"}]}),
            json.dumps({"prompt": "hi", "history": "not a list"}),
        ],
    )
    def test_malformed_input(self, chat_store, raw):
        client = FakeCompletionClient(["never"])

        result, frames, context = run_turn(raw, client, chat_store)

        assert result.error == ErrorKind.MALFORMED_INPUT
        assert len(frames) == 2
        assert json.loads(frames[0])["error"] == "malformed_input"
        assert frames[1] == ERROR_SENTINEL
        assert client.calls == []
        assert chat_store._store == {}
        assert context.busy is False

    def test_payload_size_limit(self, chat_store):
        result, frames, _ = run_turn(
            turn_message("x" * 200), FakeCompletionClient(["never"]), chat_store, max_payload_bytes=100
        )

        assert result.error == ErrorKind.MALFORMED_INPUT
        assert "limit" in json.loads(frames[0])["detail"]

    def test_bytes_payload_is_accepted(self, chat_store):
        result, frames, _ = run_turn(turn_message("hello").encode("utf-8"), FakeCompletionClient(["Hi"]), chat_store)

        assert result.state == TurnState.COMPLETED
        assert frames[:2] == ["Hi", END_SENTINEL]

    def test_persistence_failure_after_end(self):
        result, frames, context = run_turn(turn_message("hello"), FakeCompletionClient(["Hi"]), FailingChatStore())

        assert result.error == ErrorKind.PERSISTENCE_FAILURE
        assert frames == ["Hi", END_SENTINEL, ERROR_SENTINEL]
        assert context.chat_id is None

    def test_transport_failure_stops_everything(self, chat_store):
        client = FakeCompletionClient(["Hi", " there", "!"])
        transport = FakeTransport(fail_after=1)

        result, frames, context = run_turn(turn_message("hello"), client, chat_store, transport=transport)

        assert result.error == ErrorKind.TRANSPORT_FAILURE
        assert frames == ["Hi"]
        assert client.closed
        assert chat_store._store == {}
        assert context.busy is False

    def test_unexpected_store_error_becomes_error_frame(self):
        class BrokenStore(FailingChatStore):
            async def create(self, title, turns):
                raise KeyError("bug")

        result, frames, _ = run_turn(turn_message("hello"), FakeCompletionClient(["Hi"]), BrokenStore())

        assert result.error == ErrorKind.INTERNAL
        assert frames == ["Hi", END_SENTINEL, ERROR_SENTINEL]
