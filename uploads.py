"""Store photo ingestion: validate, rename, resize and write to disk."""

from __future__ import annotations

import io
import logging
import os
import uuid
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

PHOTO_WIDTH = 800
MAX_PHOTO_PIXELS = 40_000_000

Image.MAX_IMAGE_PIXELS = MAX_PHOTO_PIXELS


class UnsupportedMediaType(Exception):
    """Raised when an uploaded file is not an image we can process."""


@dataclass(frozen=True)
class IngestResult:
    stored_filename: str


def extension_for(mime_type: str) -> str:
    subtype = mime_type.split("/", 1)[1] if "/" in mime_type else ""
    return secure_filename(subtype.split(";", 1)[0].strip().lower())


def build_filename(mime_type: str) -> str:
    extension = extension_for(mime_type)
    return f"{uuid.uuid4()}.{extension}" if extension else str(uuid.uuid4())


def ingest(file_bytes: bytes, mime_type: str, upload_dir: str, width: int = PHOTO_WIDTH) -> IngestResult:
    if not (mime_type or "").startswith("image/"):
        logger.warning("Rejected upload with type %r", mime_type)
        raise UnsupportedMediaType("That filetype isn't allowed!")
    try:
        image = Image.open(io.BytesIO(file_bytes))
        image.load()
    except Image.DecompressionBombError as exc:
        logger.warning("Rejected oversized %s upload: %s", mime_type, exc)
        raise UnsupportedMediaType("That image is too large!") from exc
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("Rejected unreadable %s upload: %s", mime_type, exc)
        raise UnsupportedMediaType("That filetype isn't allowed!") from exc

    source_format = image.format
    height = max(1, round(image.height * width / image.width))
    resized = image.resize((width, height), Image.Resampling.LANCZOS)

    filename = build_filename(mime_type)
    os.makedirs(upload_dir, exist_ok=True)
    resized.save(os.path.join(upload_dir, filename), format=source_format)
    logger.info("Stored %dx%d photo as %s", width, height, filename)
    return IngestResult(stored_filename=filename)
