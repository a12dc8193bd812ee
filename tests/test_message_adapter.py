from langchain_core.messages import AIMessage, HumanMessage

from chatstream.models import Turn
from chatstream.services.message_adapter import build_content, build_provider_messages


def _turns(raw):
    return [Turn.model_validate(item) for item in raw]


def test_empty_history_gives_single_user_message():
    messages = build_provider_messages([], "hello")

    assert len(messages) == 1
    assert isinstance(messages[0], HumanMessage)
    assert messages[0].content == "hello"


def test_output_is_history_plus_new_turn_in_order(sample_history):
    history = _turns(sample_history)

    messages = build_provider_messages(history, "And its name?")

    assert len(messages) == len(history) + 1
    assert [type(m) for m in messages] == [HumanMessage, AIMessage, HumanMessage, AIMessage, HumanMessage]
    assert messages[2].content == "What colour is it?"
    assert messages[3].content == "Orange."
    assert messages[-1].content == "And its name?"


def test_turn_with_image_becomes_text_then_image_parts(sample_history):
    messages = build_provider_messages(_turns(sample_history), "next")

    assert messages[0].content == [
        {"type": "text", "text": "What is in this picture?"},
        {"type": "image_url", "image_url": {"url": "https://images.test/cat.jpg"}},
    ]
    # No image -> plain string content.
    assert messages[1].content == "A cat on a sofa."


def test_new_turn_with_image():
    messages = build_provider_messages([], "describe", "https://images.test/dog.png")

    parts = messages[-1].content
    assert parts[0] == {"type": "text", "text": "describe"}
    assert parts[1]["image_url"]["url"] == "https://images.test/dog.png"


def test_image_only_turn_keeps_empty_text_part():
    assert build_content("", "https://images.test/a.jpg")[0] == {"type": "text", "text": ""}


def test_history_is_not_mutated(sample_history):
    history = _turns(sample_history)
    before = [t.model_dump() for t in history]

    build_provider_messages(history, "more", "https://images.test/b.jpg")

    assert [t.model_dump() for t in history] == before
    assert len(history) == 4
