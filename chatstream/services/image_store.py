"""
IMAGE STORE MODULE
==================

Turns a base64 image (bare, or a data: URL) into a URL the LLM provider can
fetch. Used by POST /api/upload-image and by turns that send imageBase64.

IMPLEMENTATIONS:
  LocalImageStore      - Writes the file under database/images/<folder>/ and
                         returns PUBLIC_BASE_URL/images/<folder>/<file>.
                         The app mounts that directory as static files.
  CloudinaryImageStore - Uploads to Cloudinary (when CLOUDINARY_* are set)
                         and returns the secure_url. Needs the optional
                         "cloudinary" extra.

Both raise UploadError on any failure; the message is logged, not returned
to the client.
"""

import base64
import binascii
import logging
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Tuple

from fastapi.concurrency import run_in_threadpool

from chatstream.errors import UploadError
from chatstream.utils.retry import with_retry

logger = logging.getLogger("chatstream")

# The browser client sends JPEG without a data: prefix.
DEFAULT_MIME_TYPE = "image/jpeg"

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}

_SAFE_FOLDER = re.compile(r"[A-Za-z0-9_-]+")


def split_data_url(payload: str) -> Tuple[str, str]:
    """Return (mime_type, base64_data). Bare base64 is assumed to be JPEG."""
    payload = payload.strip()
    if payload.startswith("data:"):
        header, _, data = payload.partition(",")
        mime_type = header[len("data:"):].split(";")[0] or DEFAULT_MIME_TYPE
        return mime_type.lower(), data
    return DEFAULT_MIME_TYPE, payload


def sniff_extension(data: bytes, mime_type: str) -> str:
    """Prefer what the bytes say over what the client claimed."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return ".png"
    if data.startswith(b"\xff\xd8\xff"):
        return ".jpg"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return ".gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ".webp"
    return _EXTENSIONS.get(mime_type, ".jpg")


class ImageStore(ABC):
    """Interface for storing uploaded images."""

    @abstractmethod
    async def upload(self, payload: str, folder: str) -> str:
        """Stores a base64 image and returns its public URL."""
        pass


# ==============================================================================
# LOCAL DISK
# ==============================================================================

class LocalImageStore(ImageStore):

    def __init__(self, directory: Path, base_url: str, mount_path: str = "/images"):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self.mount_path = "/" + mount_path.strip("/")

    def _save(self, folder: str, name: str, data: bytes) -> None:
        target_dir = self.directory / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / name).write_bytes(data)

    async def upload(self, payload: str, folder: str) -> str:
        if not _SAFE_FOLDER.fullmatch(folder or ""):
            raise UploadError(f"invalid folder name: {folder!r}")

        mime_type, encoded = split_data_url(payload)
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise UploadError("image is not valid base64") from e
        if not data:
            raise UploadError("image is empty")

        name = uuid.uuid4().hex + sniff_extension(data, mime_type)
        try:
            await run_in_threadpool(self._save, folder, name, data)
        except OSError as e:
            logger.error("Failed to write image %s/%s: %s", folder, name, e)
            raise UploadError(str(e)) from e

        logger.info("Stored image %s/%s (%s bytes)", folder, name, len(data))
        return f"{self.base_url}{self.mount_path}/{folder}/{name}"


# ==============================================================================
# CLOUDINARY
# ==============================================================================

class CloudinaryImageStore(ImageStore):
    """
    Uploads through the Cloudinary SDK. Transient failures (network errors,
    rate limits, Cloudinary 5xx) are retried; rejections of the request
    itself are not, since sending the same image again can't succeed.
    """

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ):
        import cloudinary
        import cloudinary.exceptions
        import cloudinary.uploader

        cloudinary.config(
            cloud_name=cloud_name,
            api_key=api_key,
            api_secret=api_secret,
            secure=True,
        )
        self._uploader = cloudinary.uploader
        self._permanent_errors = (
            cloudinary.exceptions.BadRequest,
            cloudinary.exceptions.AuthorizationRequired,
            cloudinary.exceptions.NotAllowed,
            cloudinary.exceptions.NotFound,
            cloudinary.exceptions.AlreadyExists,
        )
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def _is_transient(self, error: Exception) -> bool:
        return not isinstance(error, self._permanent_errors)

    async def upload(self, payload: str, folder: str) -> str:
        mime_type, encoded = split_data_url(payload)
        data_url = f"data:{mime_type};base64,{encoded}"

        try:
            result = await run_in_threadpool(
                with_retry,
                lambda: self._uploader.upload(data_url, folder=folder),
                self.max_retries,
                self.retry_delay,
                self._is_transient,
            )
        except Exception as e:
            logger.error("Cloudinary upload failed: %s", e)
            raise UploadError(str(e)) from e

        url = result.get("secure_url") if isinstance(result, dict) else None
        if not url:
            raise UploadError("Cloudinary response has no secure_url")
        return url
