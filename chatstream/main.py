"""
CHAT RELAY MAIN API
===================

This module defines the FastAPI application: the chat WebSocket, the small
HTTP API around it, and the startup code that builds the services.

WEBSOCKET:
  /ws (and /)             - One JSON message per turn:
                              {prompt, imageUrl?, imageBase64?, chatId?, history: [...]}
                            The server streams the reply as raw text frames, then
                            [END] and {"chatId": "...", "done": true}, or [ERROR].

ENDPOINTS:
  GET  /                  - Returns API name and list of endpoints.
  GET  /health            - Returns status of all services (for monitoring).
  POST /api/upload-image  - {base64} -> {url}. Store an image, get a URL to send as imageUrl.
  GET  /api/chats         - Saved chats (id, title, createdAt), newest first.
  GET  /api/chats/{id}    - One saved chat with all its messages, or 404.
  GET  /images/...        - Images stored on local disk (when Cloudinary isn't configured).

STARTUP:
  create_app() takes optional pre-built services (tests pass fakes). Whatever is
  not passed in is built in the lifespan function from config.py: the JSON chat
  store, the image store (Cloudinary or local disk) and the streaming LLM client.
  All of them live on app.state; route handlers read them from there.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from chatstream.errors import PersistenceFailure, UploadError
from chatstream.models import ChatPreview, Conversation, UploadImageRequest, UploadImageResponse
from chatstream.services.chat_store import ChatStore, JsonChatStore
from chatstream.services.connection_manager import ConnectionManager
from chatstream.services.image_store import CloudinaryImageStore, ImageStore, LocalImageStore
from chatstream.services.llm_service import CompletionStreamClient, build_chat_model
import config


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("chatstream")


# -------------------------------------------------------------------------
# SERVICE FACTORIES
# -------------------------------------------------------------------------

def build_completion_client() -> CompletionStreamClient:
    """Streaming LLM client for LLM_PROVIDER (openai or groq)."""
    if config.LLM_PROVIDER == "groq":
        model, api_key = config.GROQ_MODEL, config.GROQ_API_KEY
    else:
        model, api_key = config.OPENAI_MODEL, config.OPENAI_API_KEY
    chat_model = build_chat_model(config.LLM_PROVIDER, model, api_key)
    logger.info("LLM provider: %s (model %s)", config.LLM_PROVIDER, model)
    return CompletionStreamClient(
        chat_model,
        system_prompt=config.SYSTEM_PROMPT,
        idle_timeout=config.STREAM_IDLE_TIMEOUT_SECONDS,
    )


def build_image_store(images_dir: Path = config.IMAGES_DIR) -> ImageStore:
    """Cloudinary if all three CLOUDINARY_* settings are present, else local disk."""
    if config.CLOUDINARY_ENABLED:
        logger.info("Image uploads go to Cloudinary (%s)", config.CLOUDINARY_NAME)
        return CloudinaryImageStore(
            config.CLOUDINARY_NAME,
            config.CLOUDINARY_API_KEY,
            config.CLOUDINARY_API_SECRET,
        )
    logger.info("Image uploads are stored locally in %s", images_dir)
    return LocalImageStore(images_dir, config.PUBLIC_BASE_URL)


# -------------------------------------------------------------------------
# APP FACTORY
# -------------------------------------------------------------------------

def create_app(
    completion_client: Optional[CompletionStreamClient] = None,
    chat_store: Optional[ChatStore] = None,
    image_store: Optional[ImageStore] = None,
    images_dir: Path = config.IMAGES_DIR,
) -> FastAPI:
    """Build the FastAPI app. Services not given here are created at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 60)
        logger.info("Chat relay - Starting Up...")
        logger.info("=" * 60)

        try:
            app.state.chat_store = chat_store if chat_store is not None else JsonChatStore(config.CHATS_DATA_DIR)
            app.state.image_store = image_store if image_store is not None else build_image_store(images_dir)
            app.state.completion_client = (
                completion_client if completion_client is not None else build_completion_client()
            )
            app.state.connection_manager = ConnectionManager(
                app.state.completion_client,
                app.state.chat_store,
                image_store=app.state.image_store,
                image_folder=config.IMAGE_FOLDER,
                max_payload_bytes=config.MAX_PAYLOAD_BYTES,
            )
        except Exception as e:
            logger.error(f"Fatal error during startup: {e}", exc_info=True)
            raise

        logger.info("Service Status:")
        logger.info("    - Chat Store: %s", type(app.state.chat_store).__name__)
        logger.info("    - Image Store: %s", type(app.state.image_store).__name__)
        logger.info("    - LLM Stream: Ready")
        logger.info("=" * 60)

        yield

        logger.info("Shutting down chat relay (%s connections open)", app.state.connection_manager.active_connections)

    app = FastAPI(
        title="Chat Relay API",
        description="Streams chat completions over WebSocket and stores the conversations",
        lifespan=lifespan,
    )

    # Allow any origin so a frontend on another port or device can call this API without CORS errors.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    Path(images_dir).mkdir(parents=True, exist_ok=True)
    app.mount("/images", StaticFiles(directory=str(images_dir)), name="images")
    app.include_router(router)
    return app


# =========================================================================
# API ENDPOINTS
# =========================================================================

router = APIRouter()


@router.get("/")
async def root():
    """Return the API name and a short description of each endpoint (for discovery)."""
    return {
        "message": "Chat Relay API",
        "endpoints": {
            "/ws": "WebSocket: stream a chat turn",
            "/api/upload-image": "Upload a base64 image, get its URL",
            "/api/chats": "List saved chats",
            "/api/chats/{chat_id}": "Get one saved chat",
            "/health": "System health check",
        },
    }


@router.get("/health")
async def health(request: Request):
    """Return 'healthy', whether each service is initialized, and open connections."""
    state = request.app.state
    manager = getattr(state, "connection_manager", None)
    return {
        "status": "healthy",
        "chat_store": getattr(state, "chat_store", None) is not None,
        "image_store": getattr(state, "image_store", None) is not None,
        "completion_client": getattr(state, "completion_client", None) is not None,
        "active_connections": manager.active_connections if manager else 0,
    }


@router.post("/api/upload-image", response_model=UploadImageResponse)
async def upload_image(body: UploadImageRequest, request: Request):
    """
    Store one image and return its URL.

    REQUEST BODY:  {"base64": "<bare base64 or data: URL>"}
    RESPONSE:      {"url": "https://..."}
    """
    image_store = getattr(request.app.state, "image_store", None)
    if image_store is None:
        raise HTTPException(status_code=503, detail="Image store not initialized")

    try:
        url = await image_store.upload(body.base64, config.IMAGE_FOLDER)
    except UploadError as e:
        logger.error(f"Image upload failed: {e}")
        raise HTTPException(status_code=500, detail="Upload failed")
    return UploadImageResponse(url=url)


@router.get("/api/chats", response_model=List[ChatPreview])
async def list_chats(request: Request):
    """All saved chats as {id, title, createdAt}, newest first."""
    chat_store = getattr(request.app.state, "chat_store", None)
    if chat_store is None:
        raise HTTPException(status_code=503, detail="Chat store not initialized")

    try:
        return await chat_store.list_previews()
    except PersistenceFailure as e:
        logger.error(f"Error listing chats: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Could not list chats")


@router.get("/api/chats/{chat_id}", response_model=Conversation)
async def get_chat(chat_id: str, request: Request):
    """
    One saved chat with all its messages.

    RESPONSE:
    {
        "id": "...", "title": "...", "createdAt": "...", "updatedAt": "...",
        "messages": [{"role": "user", "content": "Hello", "imageUrl": null}, ...]
    }
    """
    chat_store = getattr(request.app.state, "chat_store", None)
    if chat_store is None:
        raise HTTPException(status_code=503, detail="Chat store not initialized")

    try:
        conversation = await chat_store.get(chat_id)
    except PersistenceFailure as e:
        logger.error(f"Error loading chat {chat_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Could not load chat")
    if conversation is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    return conversation


@router.websocket("/ws")
@router.websocket("/")
async def chat_socket(websocket: WebSocket):
    """The chat stream. Plain ws://host:port/ works too, for older clients."""
    await websocket.app.state.connection_manager.handle(websocket)


# -------------------------------------------------------------------------
# APP INSTANCE (uvicorn chatstream.main:app)
# -------------------------------------------------------------------------
app = create_app()


def run():
    """Start the uvicorn server (same as run.py); used if someone does python -m chatstream.main"""
    uvicorn.run(
        "chatstream.main:app",
        host=config.HOST,
        port=config.PORT,
        reload=True,
        log_level="info"
    )

if __name__ == "__main__":
    run()
