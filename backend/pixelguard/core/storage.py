import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, ImageOps

from pixelguard.core.errors import InvalidRequestError, NotFoundError
from pixelguard.models.schemas import ImageAsset

THUMBNAIL_SIZE = (300, 300)
THUMBNAIL_QUALITY = 80

FORMAT_EXTENSIONS = {
    "JPEG": ".jpg",
    "MPO": ".jpg",
    "PNG": ".png",
    "WEBP": ".webp",
    "TIFF": ".tiff",
    "HEIC": ".heic",
    "HEIF": ".heic",
}

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".tiff": "image/tiff",
    ".heic": "image/heic",
}

_SESSION_ID = re.compile(r"[^a-zA-Z0-9-]")
_FILE_ID = re.compile(r"[^a-zA-Z0-9_-]")


def format_to_ext(fmt: Optional[str]) -> str:
    if not fmt:
        return ".png"
    return FORMAT_EXTENSIONS.get(fmt.upper(), f".{fmt.lower()}")


def ext_to_mime(ext: str) -> str:
    return MIME_TYPES.get(ext.lower(), "application/octet-stream")


class Storage:
    """Local filesystem storage for session images, edited versions and thumbnails."""

    def __init__(self, base_path: str = "./data/sessions", logger: Optional[logging.Logger] = None):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.log = logger or logging.getLogger(__name__)

    def _session_dir(self, session_id: str) -> Path:
        """Get session directory path."""
        sanitized = _SESSION_ID.sub("", session_id or "")
        if not sanitized:
            raise InvalidRequestError("Invalid session id")
        return self.base_path / sanitized

    @staticmethod
    def _file_id(image_id: str) -> str:
        sanitized = _FILE_ID.sub("", image_id or "")
        if not sanitized:
            raise InvalidRequestError("Invalid image id")
        return sanitized

    def thumbnail_path(self, session_id: str, image_id: str) -> Path:
        return self._session_dir(session_id) / f"{self._file_id(image_id)}_thumb.jpg"

    def save_image(
        self,
        session_id: str,
        data: bytes,
        ext: str,
        image_id: Optional[str] = None,
        size: Optional[Tuple[int, int]] = None,
    ) -> ImageAsset:
        """Write image bytes under the session and return the asset record."""
        if image_id is None:
            image_id = str(uuid.uuid4())
        image_id = self._file_id(image_id)

        session_dir = self._session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        ext = ext if ext.startswith(".") else f".{ext}"
        path = session_dir / f"{image_id}{ext.lower()}"
        path.write_bytes(data)

        width, height = size if size else (None, None)
        return ImageAsset(
            id=image_id,
            session_id=session_dir.name,
            path=str(path),
            ext=ext.lower(),
            width=width,
            height=height,
        )

    def save_version(
        self,
        session_id: str,
        image_id: str,
        data: bytes,
        ext: str,
        size: Optional[Tuple[int, int]] = None,
    ) -> ImageAsset:
        """Store an edited version as ``{image_id}_v{uuid}``."""
        version_id = f"{self._file_id(image_id)}_v{uuid.uuid4()}"
        return self.save_image(session_id, data, ext, image_id=version_id, size=size)

    def find_image(self, session_id: str, image_id: str) -> Path:
        session_dir = self._session_dir(session_id)
        file_id = self._file_id(image_id)
        if session_dir.is_dir():
            for candidate in sorted(session_dir.iterdir()):
                if candidate.stem == file_id and candidate.is_file():
                    return candidate
        raise NotFoundError(f"Image not found: {image_id}")

    def load_image(self, session_id: str, image_id: str) -> Tuple[bytes, str]:
        """Return the stored bytes and their extension."""
        path = self.find_image(session_id, image_id)
        return path.read_bytes(), path.suffix.lower()

    def save_thumbnail(self, session_id: str, image_id: str, image: Image.Image) -> Optional[Path]:
        """
        Write a 300x300 cover-cropped JPEG thumbnail.

        Thumbnails are a convenience; failures are logged and skipped.
        """
        path = self.thumbnail_path(session_id, image_id)
        try:
            thumb = ImageOps.exif_transpose(image)
            thumb = ImageOps.fit(thumb.convert("RGB"), THUMBNAIL_SIZE, Image.LANCZOS)
            path.parent.mkdir(parents=True, exist_ok=True)
            thumb.save(path, format="JPEG", quality=THUMBNAIL_QUALITY)
        except (OSError, ValueError) as exc:
            self.log.warning("Failed to generate thumbnail for %s: %s", image_id, exc)
            return None
        return path

    def delete_image(self, session_id: str, image_id: str) -> int:
        """
        Delete an image, its thumbnail and every ``{image_id}_v*`` version.

        Returns the number of files removed.
        """
        session_dir = self._session_dir(session_id)
        file_id = self._file_id(image_id)
        if not session_dir.is_dir():
            return 0

        removed = 0
        for path in sorted(session_dir.iterdir()):
            if not path.is_file():
                continue
            if path.stem in (file_id, f"{file_id}_thumb") or path.name.startswith(f"{file_id}_v"):
                path.unlink()
                removed += 1
        self.log.info("Deleted %d files for image %s", removed, file_id)
        return removed

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and all its images."""
        session_dir = self._session_dir(session_id)
        if session_dir.exists() and session_dir.is_dir():
            shutil.rmtree(session_dir)
            return True
        return False
