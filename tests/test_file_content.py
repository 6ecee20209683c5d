import threading

import pytest

from chatcluster.models import UserSession, describe_model
from chatcluster.worker import file_content
from chatcluster.worker.file_content import FileReference, build_user_content, resolve_file_path


def _write(root, relative: str, data: bytes):
    target = root / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    return target


@pytest.mark.asyncio
async def test_text_document_is_inlined_and_truncated(upload_root):
    _write(upload_root, "u1/others/long.txt", b"abcdefghij" * 3)
    ref = FileReference(name="long.txt", type="text/plain", path="/uploads/u1/others/long.txt")

    parts = await build_user_content(
        message="",
        files=[ref],
        session=UserSession(id="u1"),
        upload_root=upload_root,
        model=describe_model("Qwen/Qwen2.5-72B-Instruct"),
        max_document_chars=12,
    )

    assert parts[0]["text"].startswith("[long.txt content]\nabcdefghijab")
    assert "(content truncated)" in parts[0]["text"]
    assert parts[1]["text"] == file_content.DEFAULT_FILE_PROMPT


@pytest.mark.asyncio
async def test_file_reads_run_off_the_event_loop_thread(upload_root, monkeypatch):
    _write(upload_root, "u1/others/a.txt", b"hello")
    loop_thread = threading.get_ident()
    seen = []
    original = file_content._document_part

    def recording_document_part(*args, **kwargs):
        seen.append(threading.get_ident())
        return original(*args, **kwargs)

    monkeypatch.setattr(file_content, "_document_part", recording_document_part)

    parts = await build_user_content(
        message="summarise",
        files=[FileReference(name="a.txt", type="text/plain", path="u1/others/a.txt")],
        session=UserSession(id="u1"),
        upload_root=upload_root,
        model=describe_model("Qwen/Qwen2.5-72B-Instruct"),
        max_document_chars=100,
    )

    assert "hello" in parts[0]["text"]
    assert seen and all(ident != loop_thread for ident in seen)


def test_references_outside_upload_root_are_ignored(upload_root):
    ref = FileReference(name="passwd", type="text/plain", path="../../etc/passwd")
    assert resolve_file_path(ref, UserSession(id="u1"), upload_root) is None
