"""
Storage Service
Local file storage for uploaded input images and generated 3D artifacts.
Files are served back through the /uploads route.
"""

import io
import logging
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from PIL import Image, UnidentifiedImageError

from app.core.config import settings

logger = logging.getLogger(__name__)

INPUTS_FOLDER = "3d-inputs"
TEXTURE_INPUTS_FOLDER = "3d-texture-inputs"
MODELS_FOLDER = "models"

# Pillow format name -> stored extension
IMAGE_EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
    "BMP": "bmp",
}


class InvalidImageError(ValueError):
    """Uploaded bytes are not a decodable image."""


def detect_image_extension(data: bytes) -> str:
    """Return the file extension for image bytes, or raise InvalidImageError."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            image_format = img.format
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise InvalidImageError(f"Not a valid image: {e}") from e
    ext = IMAGE_EXTENSIONS.get(image_format or "")
    if not ext:
        raise InvalidImageError(f"Unsupported image format: {image_format}")
    return ext


class StorageService:
    """Service for file storage operations."""

    def __init__(self, base_path: Optional[str] = None, public_base_url: Optional[str] = None):
        self.base_path = Path(base_path or settings.LOCAL_STORAGE_PATH)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")
        logger.info(f"[Storage] Using local storage: {self.base_path}")

    def resolve_path(self, path: str) -> Optional[Path]:
        """Absolute path for a storage-relative path; None if it escapes the root."""
        root = self.base_path.resolve()
        candidate = (root / path).resolve()
        if candidate == root or root not in candidate.parents:
            return None
        return candidate

    def get_public_url(self, path: str) -> str:
        return f"{self.public_base_url}/uploads/{quote(path)}"

    async def upload_bytes(self, data: bytes, path: str) -> str:
        """Save bytes under a storage-relative path and return the public URL."""
        file_path = self.resolve_path(path)
        if file_path is None:
            raise ValueError(f"Invalid storage path: {path}")
        file_path.parent.mkdir(parents=True, exist_ok=True)

        # Write-then-rename so a reader never sees a partial artifact
        tmp_path = file_path.with_name(f".{file_path.name}.{uuid.uuid4().hex[:8]}.tmp")
        with open(tmp_path, "wb") as f:
            f.write(data)
        tmp_path.replace(file_path)

        return self.get_public_url(path)

    async def save_image(self, data: bytes, folder: str = INPUTS_FOLDER) -> str:
        """Validate and store an uploaded image under a random name."""
        ext = detect_image_extension(data)
        filename = f"img-{uuid.uuid4().hex}.{ext}"
        return await self.upload_bytes(data, f"{folder}/{filename}")

    async def get_file(self, path: str) -> bytes:
        """Get file contents."""
        file_path = self.resolve_path(path)
        if file_path is None or not file_path.is_file():
            raise FileNotFoundError(path)
        with open(file_path, "rb") as f:
            return f.read()

    def model_path(self, job_id: str, ext: str) -> str:
        return f"{MODELS_FOLDER}/{job_id}.{ext}"
