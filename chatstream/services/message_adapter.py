"""
MESSAGE ADAPTER
===============

Turns the client's history plus the new prompt into the message list sent to
the chat model. Pure function: the history passed in is never modified.

A turn with an image becomes a two-part content list (text first, then the
image URL), which is the multimodal format langchain chat models accept for
both OpenAI and Groq. A turn without an image keeps plain string content.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from chatstream.models import USER_ROLE, Turn


def build_content(text: str, image_url: Optional[str]) -> Union[str, List[Dict[str, Any]]]:
    if not image_url:
        return text
    return [
        {"type": "text", "text": text},
        {"type": "image_url", "image_url": {"url": image_url}},
    ]


def to_provider_message(role: str, text: str, image_url: Optional[str] = None) -> BaseMessage:
    content = build_content(text, image_url)
    if role == USER_ROLE:
        return HumanMessage(content=content)
    return AIMessage(content=content)


def build_provider_messages(
    history: Sequence[Turn],
    prompt: str,
    image_url: Optional[str] = None,
) -> List[BaseMessage]:
    """Prior turns in order, then the new user turn last."""
    messages = [to_provider_message(turn.role, turn.content, turn.image_url) for turn in history]
    messages.append(to_provider_message(USER_ROLE, prompt, image_url))
    return messages
