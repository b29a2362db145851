"""Uploaded image handling: validate, copy to a private temp file, always clean up."""

import logging
import mimetypes
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional

from app.config import settings
from app.services.errors import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ImageDetails:
    file_path: str
    original_mime_type: str
    filename: str


def _resolve_mime_type(filename: str, content_type: Optional[str]) -> str:
    mime_type = (content_type or "").split(";")[0].strip().lower()
    if mime_type in ("", "application/octet-stream"):
        mime_type = (mimetypes.guess_type(filename)[0] or "").lower()
    if mime_type == "image/jpg":
        mime_type = "image/jpeg"
    return mime_type


@contextmanager
def process_uploaded_image(
    fileobj: Optional[BinaryIO],
    filename: Optional[str] = None,
    content_type: Optional[str] = None,
    max_bytes: Optional[int] = None,
) -> Iterator[Optional[ImageDetails]]:
    """
    Copy an uploaded image into a private temporary file for the duration of the block.

    Yields None when no file was uploaded. The temporary file is removed when
    the block exits, whether or not it raised.

    Args:
        fileobj: Readable binary stream of the upload
        filename: Client-supplied filename (only the basename is kept)
        content_type: Client-supplied MIME type
        max_bytes: Size limit, defaults to MAX_IMAGE_BYTES

    Raises:
        ValidationError: On an unsupported type, an empty file or an oversized file
    """
    if fileobj is None:
        yield None
        return

    max_bytes = max_bytes or settings.MAX_IMAGE_BYTES
    safe_name = os.path.basename(filename or "upload")[:255] or "upload"
    mime_type = _resolve_mime_type(safe_name, content_type)
    if mime_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(
            f"Unsupported image type: {mime_type or 'unknown'}. "
            f"Allowed types: {', '.join(sorted(ALLOWED_MIME_TYPES))}"
        )

    fd, temp_path = tempfile.mkstemp(prefix="sift_image_", suffix=ALLOWED_MIME_TYPES[mime_type])
    try:
        size = 0
        with os.fdopen(fd, "wb") as out:
            while True:
                chunk = fileobj.read(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > max_bytes:
                    raise ValidationError(f"Image exceeds the maximum size of {max_bytes} bytes")
                out.write(chunk)

        if size == 0:
            raise ValidationError("Uploaded image is empty")

        logger.info(f"Stored upload {safe_name} ({mime_type}, {size} bytes) at {temp_path}")
        yield ImageDetails(file_path=temp_path, original_mime_type=mime_type, filename=safe_name)
    finally:
        try:
            os.remove(temp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove temporary image {temp_path}: {e}")
