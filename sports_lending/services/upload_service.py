from __future__ import annotations

import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path

from fastapi import UploadFile

from sports_lending.services.errors import UploadError


BASE_DIR = Path(__file__).resolve().parent.parent
UPLOAD_ROOT = Path(os.environ.get("UPLOAD_PATH") or (BASE_DIR / "uploads")).resolve()
MAX_FILE_SIZE = int(os.environ.get("MAX_FILE_SIZE") or str(5 * 1024 * 1024))
MAX_FILES_PER_REQUEST = 10
PUBLIC_BASE_URL = (os.environ.get("BASE_URL") or "").rstrip("/")

UPLOAD_FOLDERS = {
    "idCard": "id-cards",
    "equipment": "equipment",
    "images": "equipment",
    "profile": "profiles",
    "attachments": "attachments",
}
ALLOWED_CONTENT_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
IMAGE_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}

logger = logging.getLogger("sports_lending.uploads")


@dataclass
class StoredUpload:
    original_name: str
    relative_path: str
    size: int
    content_type: str

    @property
    def url(self) -> str:
        return f"{PUBLIC_BASE_URL}/uploads/{self.relative_path}"


def ensure_upload_dirs() -> None:
    for folder in set(UPLOAD_FOLDERS.values()):
        (UPLOAD_ROOT / folder).mkdir(parents=True, exist_ok=True)


def build_stored_filename(original_name: str | None) -> str:
    raw_name = os.path.basename(original_name or "upload")
    stem, ext = os.path.splitext(raw_name)
    sanitized = re.sub(r"[^a-zA-Z0-9]", "_", stem) or "file"
    ext = re.sub(r"[^a-zA-Z0-9.]", "", ext)[:10]
    suffix = f"{int(time.time() * 1000)}-{secrets.randbelow(10**9)}"
    return f"{sanitized}-{suffix}{ext}"


def store_upload(field: str, upload: UploadFile, *, images_only: bool = False) -> StoredUpload:
    folder = UPLOAD_FOLDERS.get(field)
    if folder is None:
        raise UploadError("Unexpected file field.")
    content_type = (upload.content_type or "").lower()
    allowed = IMAGE_CONTENT_TYPES if images_only else ALLOWED_CONTENT_TYPES
    if content_type not in allowed:
        logger.warning("Upload rejected field=%s content_type=%s", field, content_type)
        raise UploadError(f"Invalid file type. Allowed types: {', '.join(sorted(allowed))}")

    payload = upload.file.read(MAX_FILE_SIZE + 1)
    if len(payload) > MAX_FILE_SIZE:
        logger.warning("Upload rejected field=%s reason=too_large", field)
        raise UploadError(f"File too large. Maximum size is {MAX_FILE_SIZE // (1024 * 1024)}MB.")

    destination = UPLOAD_ROOT / folder
    destination.mkdir(parents=True, exist_ok=True)
    filename = build_stored_filename(upload.filename)
    with (destination / filename).open("wb") as output:
        output.write(payload)

    logger.info("Upload stored field=%s path=%s/%s size=%s", field, folder, filename, len(payload))
    return StoredUpload(
        original_name=upload.filename or filename,
        relative_path=f"{folder}/{filename}",
        size=len(payload),
        content_type=content_type,
    )


def store_uploads(field: str, uploads: list[UploadFile], *, max_count: int = MAX_FILES_PER_REQUEST, images_only: bool = False) -> list[StoredUpload]:
    limit = min(max_count, MAX_FILES_PER_REQUEST)
    if len(uploads) > limit:
        raise UploadError(f"Too many files. Maximum is {limit} files.")
    stored: list[StoredUpload] = []
    try:
        for upload in uploads:
            stored.append(store_upload(field, upload, images_only=images_only))
    except UploadError:
        for item in stored:
            remove_upload(item.url)
        raise
    return stored


def remove_upload(url_or_path: str | None) -> None:
    if not url_or_path:
        return
    marker = "/uploads/"
    relative = url_or_path.split(marker, 1)[1] if marker in url_or_path else url_or_path
    target = (UPLOAD_ROOT / relative).resolve()
    if UPLOAD_ROOT not in target.parents:
        return
    try:
        target.unlink()
    except FileNotFoundError:
        pass
