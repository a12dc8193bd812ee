"""
SERVICES PACKAGE
=================

Business logic lives here. The API layer (chatstream.main) builds these
services once at startup; they don't handle HTTP routing themselves.

MODULES:
    message_adapter    - history + prompt -> chat model messages (text or text+image)
    llm_service        - CompletionStreamClient: provider token stream -> text fragments
    chat_store         - ChatStore interface, JSON-file and in-memory stores
    image_store        - ImageStore interface, local-disk and Cloudinary stores
    turn_processor     - One turn's state machine and the wire framing
    connection_manager - One context per WebSocket; one turn at a time
"""
