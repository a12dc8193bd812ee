"""
LLM SERVICE MODULE
==================

Streams a chat completion from the configured provider and yields the reply
as text fragments, one per provider chunk that actually carries text.

PROVIDERS:
  - openai (default): langchain_openai.ChatOpenAI, model OPENAI_MODEL (gpt-4o).
  - groq: langchain_groq.ChatGroq, model GROQ_MODEL (a vision-capable Llama).
  Both are langchain chat models, so the rest of the app only sees
  astream(messages) -> chunks with .content.

STREAM RULES:
  - Chunks with empty content (role headers, usage/metadata chunks) are skipped.
  - Each wait for the next chunk is bounded by idle_timeout; a stall fails the turn.
  - Any provider/network error is re-raised as ProviderStreamError. Fragments
    already yielded stay yielded; the caller decides what to do with them.
  - If the consuming task is cancelled (client disconnected) the underlying
    provider stream is closed, which aborts the HTTP request to the provider.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, List, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, SystemMessage
from langchain_groq import ChatGroq
from langchain_openai import ChatOpenAI

from chatstream.errors import ProviderStreamError

logger = logging.getLogger("chatstream")


# ==============================================================================
# MODEL FACTORY
# ==============================================================================

def build_chat_model(
    provider: str,
    model: str,
    api_key: Optional[str] = None,
) -> BaseChatModel:
    """
    Create the streaming chat model for the given provider name.
    api_key may be empty, in which case the SDK reads its own env variable
    (OPENAI_API_KEY / GROQ_API_KEY).
    """
    provider = (provider or "").strip().lower()
    kwargs = {"model": model, "streaming": True}
    if api_key:
        kwargs["api_key"] = api_key

    if provider == "openai":
        return ChatOpenAI(**kwargs)
    if provider == "groq":
        return ChatGroq(**kwargs)
    raise ValueError(f"Unknown LLM provider: {provider!r} (expected 'openai' or 'groq')")


def chunk_text(chunk: Any) -> str:
    """Text carried by one streamed chunk; "" for metadata-only chunks."""
    content = getattr(chunk, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type", "text") == "text":
                parts.append(part.get("text") or "")
        return "".join(parts)
    return ""


async def _next_chunk(iterator: AsyncIterator[Any]) -> Any:
    return await iterator.__anext__()


# ==============================================================================
# COMPLETION STREAM CLIENT
# ==============================================================================

class CompletionStreamClient:
    """
    Opens one token stream per call to stream(). The returned iterator is
    single-pass and cannot be restarted.
    """

    def __init__(
        self,
        chat_model: BaseChatModel,
        system_prompt: Optional[str] = None,
        idle_timeout: float = 60.0,
    ):
        self.chat_model = chat_model
        self.system_prompt = system_prompt or None
        self.idle_timeout = idle_timeout

    def _with_system_prompt(self, messages: List[BaseMessage]) -> List[BaseMessage]:
        if not self.system_prompt:
            return list(messages)
        return [SystemMessage(content=self.system_prompt), *messages]

    async def stream(self, messages: List[BaseMessage]) -> AsyncIterator[str]:
        """Yield non-empty text fragments in the order the provider sends them."""
        try:
            iterator = self.chat_model.astream(self._with_system_prompt(messages)).__aiter__()
        except Exception as e:
            logger.error("Could not open completion stream: %s", e)
            raise ProviderStreamError(str(e)) from e

        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(_next_chunk(iterator), timeout=self.idle_timeout)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as e:
                    logger.error("Completion stream idle for %ss, giving up", self.idle_timeout)
                    raise ProviderStreamError(f"no data from provider for {self.idle_timeout}s") from e
                except Exception as e:
                    logger.error("Completion stream failed: %s", e)
                    raise ProviderStreamError(str(e)) from e

                text = chunk_text(chunk)
                if text:
                    yield text
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
