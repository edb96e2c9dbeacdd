"""Object storage for cover art and chapter pages."""
import asyncio
import io
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from PIL import Image, UnidentifiedImageError

from config import settings
from exceptions import UploadError, ValidationError

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


@dataclass(frozen=True)
class ImageUpload:
    """Raw image bytes received from a client."""
    data: bytes
    mime_type: str
    filename: Optional[str] = None


@dataclass(frozen=True)
class StoredObject:
    url: str
    width: Optional[int] = None
    height: Optional[int] = None


def validate_upload(upload: ImageUpload, max_bytes: Optional[int] = None, allowed_types: Optional[Sequence[str]] = None):
    """Reject unsupported types and oversized files before anything is stored."""
    max_bytes = max_bytes or settings.max_upload_bytes
    allowed_types = allowed_types or settings.allowed_image_types
    name = upload.filename or "upload"

    if upload.mime_type not in allowed_types:
        raise ValidationError(f"Invalid file type: {name}. Only JPEG, PNG, and WebP are allowed")
    if not upload.data:
        raise ValidationError(f"Empty file: {name}")
    if len(upload.data) > max_bytes:
        raise ValidationError(f"File too large: {name}. Maximum size is {max_bytes // (1024 * 1024)}MB")


class ObjectStore(ABC):
    """Stores bytes and returns a public URL."""

    @abstractmethod
    async def store(self, data: bytes, mime_type: str, folder: str) -> StoredObject:
        ...

    async def store_upload(self, upload: ImageUpload, folder: str) -> StoredObject:
        validate_upload(upload)
        try:
            return await self.store(upload.data, upload.mime_type, folder)
        except (UploadError, ValidationError):
            raise
        except Exception as e:
            logger.error(f"Upload to '{folder}' failed: {e}")
            raise UploadError(f"Upload failed: {e}")

    async def store_many(self, uploads: Sequence[ImageUpload], folder: str) -> List[StoredObject]:
        """Store all uploads, keeping input order. Validates every file first."""
        if not uploads:
            raise ValidationError("No files provided")
        for upload in uploads:
            validate_upload(upload)
        return [await self.store_upload(upload, folder) for upload in uploads]

    async def delete(self, url: str) -> bool:
        """Remove a stored object. Backends that cannot delete keep it and return False."""
        return False

    async def discard(self, urls: Sequence[str]):
        """Remove objects whose database write did not go through."""
        for url in urls:
            if not await self.delete(url):
                logger.warning(f"Orphaned object left in storage: {url}")


class LocalObjectStore(ObjectStore):
    """
    Filesystem-backed store.

    Files land under `root/folder/` and are served below `base_url`.
    """

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None):
        self.root = Path(root or settings.media_root)
        self.base_url = (base_url or settings.media_base_url).rstrip("/")

    async def store(self, data: bytes, mime_type: str, folder: str) -> StoredObject:
        width, height = self._dimensions(data)
        folder = folder.strip("/")
        name = f"{uuid.uuid4().hex}.{EXTENSIONS.get(mime_type, 'bin')}"
        target = self.root / folder / name

        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as e:
            raise UploadError(f"Upload failed: {e}")

        logger.info(f"Stored {len(data)} bytes at {target}")
        return StoredObject(url=f"{self.base_url}/{folder}/{name}", width=width, height=height)

    async def delete(self, url: str) -> bool:
        prefix = f"{self.base_url}/"
        if not url.startswith(prefix):
            return False
        root = self.root.resolve()
        target = (root / url[len(prefix):]).resolve()
        if not target.is_relative_to(root):
            return False

        try:
            await asyncio.to_thread(target.unlink)
        except OSError as e:
            logger.warning(f"Failed to delete {target}: {e}")
            return False

        logger.info(f"Deleted {target}")
        return True

    @staticmethod
    def _dimensions(data: bytes):
        try:
            with Image.open(io.BytesIO(data)) as img:
                return img.size
        except UnidentifiedImageError:
            raise ValidationError("Invalid image data")

    @staticmethod
    def _write(target: Path, data: bytes):
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
