"""
Turn file references from a chat request into upstream content parts.
"""

from __future__ import annotations

import base64
import logging
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional

import anyio
from pydantic import BaseModel, ConfigDict, Field

from chatcluster.models import FileDescriptor, ModelDescriptor, UserSession

from .uploads import DOCUMENT_TYPES, TEXT_DOCUMENT_TYPES

logger = logging.getLogger("chatcluster.worker.files")

DEFAULT_FILE_PROMPT = "Please analyze the attached files."


class FileReference(BaseModel):
    """
    A file as the client echoes it back in a chat request. Only ``id`` (a
    file in the caller's session) or ``path`` (relative to the upload base
    directory) is used to locate the bytes.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    name: str = "unnamed file"
    type: str = Field("", description="MIME type")
    path: Optional[str] = None
    url: Optional[str] = None


def _text_part(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def resolve_file_path(
    ref: FileReference, session: UserSession, upload_root: Path
) -> Optional[Path]:
    """
    Locate the stored bytes for ``ref`` without leaving ``upload_root``.
    """
    relative: Optional[str] = None
    if ref.id:
        known: Optional[FileDescriptor] = session.find_file(ref.id)
        if known is not None:
            relative = known.path
    if relative is None and ref.path:
        relative = ref.path.removeprefix("/uploads/").lstrip("/")
    if relative is None and ref.url and "/uploads/" in ref.url:
        relative = ref.url.split("/uploads/", 1)[1]
    if not relative:
        return None
    candidate = (upload_root / relative).resolve()
    if not candidate.is_relative_to(upload_root):
        logger.warning("Ignoring file reference outside upload root: %r", relative)
        return None
    return candidate


def _image_part(
    ref: FileReference, path: Path, model: ModelDescriptor, trace_id: str
) -> Dict[str, Any]:
    if not model.vision:
        return _text_part(
            f"[Image file: {ref.name}] (the current model cannot read images; "
            "switch to a vision model to analyze it)"
        )
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    logger.info("[req=%s] inlined image %s for %s", trace_id, ref.name, model.id)
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{ref.type or 'image/png'};base64,{encoded}"},
    }


def _document_part(
    ref: FileReference, path: Path, max_chars: int, trace_id: str
) -> Dict[str, Any]:
    if ref.type in TEXT_DOCUMENT_TYPES:
        text = path.read_bytes().decode("utf-8", errors="replace")
        if len(text) > max_chars:
            text = text[:max_chars] + "\n\n... (content truncated)"
        logger.info("[req=%s] inlined document %s (%d chars)", trace_id, ref.name, len(text))
        return _text_part(f"[{ref.name} content]\n{text}\n[end of file]")
    # PDF / Word text extraction is not performed by this service.
    size = path.stat().st_size
    return _text_part(
        f"[Document: {ref.name} ({ref.type}, {size} bytes) - "
        "text extraction is not available for this format]"
    )


def _file_part(
    ref: FileReference,
    *,
    session: UserSession,
    upload_root: Path,
    model: ModelDescriptor,
    max_document_chars: int,
    trace_id: str,
) -> Dict[str, Any]:
    # Blocking file access; runs in a worker thread.
    path = resolve_file_path(ref, session, upload_root)
    if path is None or not path.is_file():
        logger.warning("[req=%s] file not found: %s", trace_id, ref.name)
        return _text_part(f"[File: {ref.name} - not found]")
    try:
        if ref.type.startswith("image/"):
            return _image_part(ref, path, model, trace_id)
        if ref.type in DOCUMENT_TYPES:
            return _document_part(ref, path, max_document_chars, trace_id)
        return _text_part(f"[File: {ref.name} - type: {ref.type}]")
    except OSError as exc:
        logger.error("[req=%s] failed to read %s: %s", trace_id, ref.name, exc)
        return _text_part(f"[File: {ref.name} - could not be read: {exc}]")


async def build_user_content(
    *,
    message: str,
    files: List[FileReference],
    session: UserSession,
    upload_root: Path,
    model: ModelDescriptor,
    max_document_chars: int,
    trace_id: str = "-",
) -> List[Dict[str, Any]]:
    """
    Content parts for the new user turn: one part per file, then the
    message text. File problems never fail the request; they become a text
    note so the model (and the user) can see what happened.
    """
    parts: List[Dict[str, Any]] = []
    for ref in files:
        parts.append(
            await anyio.to_thread.run_sync(
                partial(
                    _file_part,
                    ref,
                    session=session,
                    upload_root=upload_root,
                    model=model,
                    max_document_chars=max_document_chars,
                    trace_id=trace_id,
                )
            )
        )

    text = message.strip()
    if text:
        parts.append(_text_part(text))
    elif files:
        parts.append(_text_part(DEFAULT_FILE_PROMPT))
    return parts


def history_text(message: str, files: List[FileReference]) -> str:
    """
    Compact text form of a user turn stored in session history; file bytes
    are not kept there.
    """
    text = message.strip() or DEFAULT_FILE_PROMPT
    if files:
        names = ", ".join(ref.name for ref in files)
        text = f"{text}\n[Attached files: {names}]"
    return text


__all__ = [
    "DEFAULT_FILE_PROMPT",
    "FileReference",
    "build_user_content",
    "history_text",
    "resolve_file_path",
]
