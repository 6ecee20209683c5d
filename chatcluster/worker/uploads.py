"""
Upload classification and storage.

Stored names are generated (``<ms-timestamp>-<16 hex><ext>``) and never
derived from the client-supplied name beyond its extension, so a hostile
or oddly encoded filename cannot escape the user's directory.
"""

from __future__ import annotations

import contextlib
import datetime
import logging
import secrets
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path, PurePath
from typing import Optional, Tuple

import anyio
from fastapi import UploadFile

from chatcluster.errors import ClientError, InfrastructureError
from chatcluster.models import FileDescriptor

logger = logging.getLogger("chatcluster.worker.uploads")

FILE_TYPE_MAP = {
    # images
    "image/jpeg": "images",
    "image/jpg": "images",
    "image/png": "images",
    "image/gif": "images",
    "image/webp": "images",
    # pdf
    "application/pdf": "pdfs",
    # word
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "others",
    "application/msword": "others",
    "application/vnd.ms-word": "others",
    "application/word": "others",
    # text
    "text/plain": "others",
    "text/markdown": "others",
    "text/html": "others",
    # audio
    "audio/mpeg": "audio",
    "audio/wav": "audio",
    "audio/ogg": "audio",
    "audio/webm": "audio",
}

STORAGE_CATEGORIES = ("images", "pdfs", "audio", "others")

EXTENSION_TO_MIME = {
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".doc": "application/msword",
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".html": "text/html",
    ".htm": "text/html",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
}

VISION_TYPES = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}
)

DOCUMENT_TYPES = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/msword",
        "text/plain",
        "text/markdown",
        "text/html",
    }
)

TEXT_DOCUMENT_TYPES = frozenset({"text/plain", "text/markdown", "text/html"})

_CHUNK_SIZE = 64 * 1024


class UnsupportedFileType(ClientError):
    def __init__(self, filename: str, mime_type: str) -> None:
        self.filename = filename
        self.mime_type = mime_type
        super().__init__(f"Unsupported file type: {filename} ({mime_type or 'unknown'})")


class UploadTooLarge(ClientError):
    def __init__(self, filename: str, limit: int) -> None:
        self.filename = filename
        self.limit = limit
        super().__init__(f"File {filename} exceeds the {limit} byte upload limit")


def display_name(raw: Optional[str]) -> str:
    name = PurePath((raw or "").replace("\\", "/")).name.strip()
    return name or "unnamed file"


def classify(filename: str, declared_type: Optional[str]) -> Tuple[str, str]:
    """
    Map a file to ``(mime_type, category)``.

    The declared type wins when it is a known type; otherwise the extension
    decides. ``application/msword`` is always re-checked against the
    extension since browsers send it for .docx as well.
    """
    mime = (declared_type or "").split(";", 1)[0].strip().lower()
    extension = PurePath(filename).suffix.lower()

    needs_repair = (
        not mime
        or mime == "application/octet-stream"
        or mime not in FILE_TYPE_MAP
        or mime == "application/msword"
    )
    if needs_repair:
        repaired = EXTENSION_TO_MIME.get(extension)
        if repaired:
            if repaired != mime:
                logger.info("Repaired MIME type for %s: %s -> %s", filename, mime or "-", repaired)
            mime = repaired

    category = FILE_TYPE_MAP.get(mime)
    if category is None:
        raise UnsupportedFileType(filename, declared_type or "")
    return mime, category


def generate_storage_name(original_name: str) -> str:
    extension = PurePath(original_name).suffix.lower()
    if not extension.isascii() or len(extension) > 10:
        extension = ""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}{extension}"


@dataclass
class UploadTarget:
    upload_root: Path
    user_id: str
    public_base_url: str
    max_size: int


def discard_stored(path: Path) -> None:
    """Best-effort removal of a stored or partially written file."""
    with contextlib.suppress(OSError):
        path.unlink(missing_ok=True)


async def store_upload(upload: UploadFile, target: UploadTarget) -> FileDescriptor:
    """
    Classify, size-check and persist one uploaded file and return its
    descriptor. Partially written files are removed on failure; disk errors
    surface as ``InfrastructureError``.
    """
    name = display_name(upload.filename)
    mime, category = classify(name, upload.content_type)
    storage_name = generate_storage_name(name)
    relative = PurePath(target.user_id, category, storage_name).as_posix()
    destination = target.upload_root / relative

    written = 0
    try:
        await anyio.to_thread.run_sync(
            partial(destination.parent.mkdir, parents=True, exist_ok=True)
        )
        out = await anyio.to_thread.run_sync(destination.open, "wb")
        try:
            while True:
                chunk = await upload.read(_CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > target.max_size:
                    raise UploadTooLarge(name, target.max_size)
                await anyio.to_thread.run_sync(out.write, chunk)
        finally:
            out.close()
    except UploadTooLarge:
        await anyio.to_thread.run_sync(discard_stored, destination)
        raise
    except OSError as exc:
        await anyio.to_thread.run_sync(discard_stored, destination)
        raise InfrastructureError(f"Failed to store upload {name}: {exc}") from exc

    descriptor = FileDescriptor(
        id=storage_name,
        name=name,
        size=written,
        type=mime,
        category=category,
        path=relative,
        url=f"{target.public_base_url}/uploads/{relative}",
        uploaded_at=datetime.datetime.now(datetime.UTC).isoformat(timespec="milliseconds"),
        vision_ready=mime in VISION_TYPES,
        document_ready=mime in DOCUMENT_TYPES,
    )
    logger.info(
        "Stored upload %s (%d bytes, %s, %s) as %s",
        name,
        written,
        mime,
        category,
        relative,
    )
    return descriptor


__all__ = [
    "DOCUMENT_TYPES",
    "EXTENSION_TO_MIME",
    "FILE_TYPE_MAP",
    "STORAGE_CATEGORIES",
    "TEXT_DOCUMENT_TYPES",
    "UnsupportedFileType",
    "UploadTarget",
    "UploadTooLarge",
    "VISION_TYPES",
    "classify",
    "discard_stored",
    "display_name",
    "generate_storage_name",
    "store_upload",
]
