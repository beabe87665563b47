import logging
import os
import re
import time
from pathlib import Path

from fastapi import UploadFile

from campus.core.errors import ValidationError

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_LISTING_IMAGES = 5
MAX_FILE_BYTES = 10 * 1024 * 1024
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def listing_dir() -> Path:
    return Path(UPLOAD_DIR) / "listings"


def image_url(filename: str) -> str:
    return f"/uploads/listings/{filename}"


def _stored_name(user_id: int, original: str | None) -> str:
    base = _UNSAFE_CHARS.sub("_", Path(original or "image").name).strip("._") or "image"
    return f"{user_id}-{time.time_ns()}-{base}"


def save_listing_images(user_id: int, files: list[UploadFile]) -> list[str]:
    uploads = [f for f in files if f is not None and f.filename]
    if len(uploads) > MAX_LISTING_IMAGES:
        raise ValidationError(f"A listing can have at most {MAX_LISTING_IMAGES} images", code="too_many_files")
    for upload in uploads:
        if (upload.content_type or "").lower() not in ALLOWED_IMAGE_TYPES:
            raise ValidationError("Only image files are allowed", code="invalid_file_type")

    target = listing_dir()
    target.mkdir(parents=True, exist_ok=True)
    stored: list[str] = []
    try:
        for upload in uploads:
            data = upload.file.read(MAX_FILE_BYTES + 1)
            if len(data) > MAX_FILE_BYTES:
                raise ValidationError("File too large. Maximum size is 10MB", code="file_too_large")
            name = _stored_name(user_id, upload.filename)
            (target / name).write_bytes(data)
            stored.append(name)
    except ValidationError:
        delete_listing_files(stored)
        raise
    return stored


def delete_listing_files(images: list[str] | None) -> int:
    deleted = 0
    for name in images or []:
        path = listing_dir() / Path(name).name
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError:
            logger.warning("listing_file_delete_failed path=%s", path, exc_info=True)
            continue
        deleted += 1
    return deleted
