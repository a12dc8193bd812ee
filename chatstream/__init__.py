"""
CHAT RELAY APPLICATION PACKAGE
==============================

Streams chat completions to WebSocket clients and stores the conversations.

  from chatstream.main import app, create_app
  from chatstream.models import Turn, Conversation
  from chatstream.services.turn_processor import TurnProcessor

FILE STRUCTURE:
  chatstream/
    __init__.py   - This file; marks 'chatstream' as a package.
    main.py       - FastAPI app factory, HTTP endpoints and the chat WebSocket.
    models.py     - Pydantic models for WebSocket frames, HTTP bodies and stored chats.
    errors.py     - Typed turn failures (malformed input, provider, persistence, ...).
    services/     - Business logic: turn state machine, connections, LLM stream, stores.
    utils/        - Helpers: retry with backoff.
"""
