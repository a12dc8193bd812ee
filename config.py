"""
CONFIGURATION MODULE
====================

PURPOSE:
  Central place for all chat relay settings: API keys, model names, storage
  paths, image upload options and the hardening limits applied to every turn.

WHAT THIS FILE DOES:
  - Loads environment variables from .env (so API keys stay out of code).
  - Defines paths to database/chats_data (saved conversations) and
    database/images (uploaded images when Cloudinary is not configured).
  - Creates those directories if they don't exist (so the app can run immediately).
  - Exposes the LLM provider choice (openai or groq), its key and model.
  - Defines the title length, maximum prompt length, maximum raw payload size
    and the idle timeout applied to the provider token stream.

USAGE:
  Import what you need: `from config import CHATS_DATA_DIR, MAX_PAYLOAD_BYTES`
  The app factory (chatstream.main) reads these once at startup and passes
  them into the services it builds.
"""

import os
import logging
from pathlib import Path
from dotenv import load_dotenv


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# ENVIRONMENT
# -----------------------------------------------------------------------------
# Load environment variables from .env file (if it exists).
# This keeps API keys and secrets out of the code and version control.
load_dotenv()


def _int_env(name: str, default: int) -> int:
    """Read an integer setting; fall back to default (with a warning) if it doesn't parse."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


# -----------------------------------------------------------------------------
# BASE PATH
# -----------------------------------------------------------------------------
# Points to the folder containing this file (the project root).
BASE_DIR = Path(__file__).parent

# ============================================================================
# DATABASE PATHS
# ============================================================================
# - chats_data: one JSON file per conversation (id.json)
# - images: uploaded images, served back under /images when stored locally

CHATS_DATA_DIR = BASE_DIR / "database" / "chats_data"
IMAGES_DIR = BASE_DIR / "database" / "images"

# parents=True creates parent folders; exist_ok=True avoids error if already present.
CHATS_DATA_DIR.mkdir(parents=True, exist_ok=True)
IMAGES_DIR.mkdir(parents=True, exist_ok=True)

# ============================================================================
# LLM PROVIDER CONFIGURATION
# ============================================================================
# LLM_PROVIDER selects the streaming chat model: "openai" (default) or "groq".
# Both models below accept image parts in user messages.

LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai").strip().lower()

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")

GROQ_API_KEY = os.getenv("GROQ_API_KEY", "").strip()
GROQ_MODEL = os.getenv("GROQ_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct")

# Optional system message sent before the history on every turn. Empty = none.
SYSTEM_PROMPT = os.getenv("SYSTEM_PROMPT", "").strip()

# Seconds to wait for the next token chunk before the turn is failed.
STREAM_IDLE_TIMEOUT_SECONDS = _int_env("STREAM_IDLE_TIMEOUT_SECONDS", 60)

# ============================================================================
# IMAGE UPLOAD CONFIGURATION
# ============================================================================
# With all three Cloudinary settings present, images go to Cloudinary and the
# returned secure_url is used. Otherwise they are written under IMAGES_DIR and
# served from PUBLIC_BASE_URL/images/... (the URL must be reachable by the
# LLM provider for it to see the image).

CLOUDINARY_NAME = os.getenv("CLOUDINARY_NAME", "").strip()
CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY", "").strip()
CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET", "").strip()
CLOUDINARY_ENABLED = bool(CLOUDINARY_NAME and CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET)

IMAGE_FOLDER = os.getenv("IMAGE_FOLDER", "chat-images").strip() or "chat-images"
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/")

# ============================================================================
# TURN LIMITS
# ============================================================================
# Conversation title = first TITLE_MAX_LENGTH characters of the first prompt.
TITLE_MAX_LENGTH = 30
DEFAULT_TITLE = "Untitled chat"

# Maximum length (characters) for a single prompt.
MAX_MESSAGE_LENGTH = 32_000

# Maximum size of one raw WebSocket message (bytes). Inline base64 images
# count against this, so it matches the 10 MB JSON body limit of the HTTP API.
MAX_PAYLOAD_BYTES = 10 * 1024 * 1024

# ============================================================================
# SERVER
# ============================================================================
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _int_env("PORT", 3000)
