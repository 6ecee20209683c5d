import json
import time
from pathlib import Path

import pytest

from chatcluster.models import ConversationHistory, FileDescriptor, UserSession
from chatcluster.session import (
    InMemorySessionStore,
    RedisSessionStore,
    SessionManager,
    build_session_store,
    is_valid_user_id,
)
from chatcluster.session.store import SESSION_KEY_PREFIX
from chatcluster.settings import Settings


def _descriptor(file_id: str = "1700000000000-abcdef0123456789.txt", path: str = "") -> FileDescriptor:
    return FileDescriptor(
        id=file_id,
        name="notes.txt",
        size=5,
        type="text/plain",
        category="others",
        path=path or f"user-1/others/{file_id}",
        url=f"http://testserver/uploads/user-1/others/{file_id}",
        uploaded_at="2024-01-01T00:00:00.000+00:00",
        document_ready=True,
    )


def test_history_keeps_system_prompt_first_when_trimming():
    history = ConversationHistory.start("be helpful")
    for i in range(5):
        history.append("user", f"q{i}")
        history.append("assistant", f"a{i}")

    dropped = history.trim(4)

    assert dropped == 6
    assert history.messages[0].role == "system"
    assert [m.content for m in history.turns] == ["q3", "a3", "q4", "a4"]


def test_history_rejects_consecutive_system_entries():
    history = ConversationHistory.start("sys")
    with pytest.raises(ValueError):
        history.append("system", "again")


def test_history_reset_keeps_only_system_entry():
    history = ConversationHistory.start("sys")
    history.append("user", "hi")
    history.append("assistant", "hello")

    history.reset()

    assert len(history.messages) == 1
    assert history.turns == []


def test_file_descriptor_serialises_camel_case_upload_time():
    data = _descriptor().model_dump(by_alias=True)
    assert "uploadedAt" in data
    assert data["documentReady"] is True
    assert data["visionReady"] is False


def test_user_id_validation():
    assert is_valid_user_id("user-1_ABC")
    assert not is_valid_user_id("")
    assert not is_valid_user_id(None)
    assert not is_valid_user_id("../etc")
    assert not is_valid_user_id("x" * 65)


@pytest.mark.asyncio
async def test_in_memory_store_crud():
    store = InMemorySessionStore()
    session = UserSession(id="u1")

    assert await store.get("u1") is None
    await store.save(session)
    assert (await store.get("u1")).id == "u1"
    assert await store.count() == 1

    assert await store.delete("u1") is True
    assert await store.delete("u1") is False
    assert await store.list_sessions() == []


@pytest.mark.asyncio
async def test_redis_store_round_trip_with_ttl(fake_redis):
    store = RedisSessionStore(fake_redis, ttl_seconds=120)
    session = UserSession(id="u2", worker_id="3")
    session.history.ensure_system_prompt("sys")
    session.history.append("user", "hello")
    session.add_file(_descriptor())

    await store.save(session)

    key = f"{SESSION_KEY_PREFIX}u2"
    assert fake_redis.expiry[key] == 120
    raw = json.loads(await fake_redis.get(key))
    assert raw["files"][0]["uploaded_at"]

    loaded = await store.get("u2")
    assert loaded is not None
    assert loaded.worker_id == "3"
    assert loaded.files[0].name == "notes.txt"
    assert [m.content for m in loaded.history.turns] == ["hello"]

    sessions = await store.list_sessions()
    assert [s.id for s in sessions] == ["u2"]
    assert await store.delete("u2") is True


@pytest.mark.asyncio
async def test_redis_store_discards_malformed_payload(fake_redis):
    store = RedisSessionStore(fake_redis, ttl_seconds=60)
    await fake_redis.set(f"{SESSION_KEY_PREFIX}broken", json.dumps({"files": "nope"}))

    assert await store.get("broken") is None


def test_build_session_store_rejects_unknown_backend(tmp_path):
    cfg = Settings(session_backend="sqlite", upload_base_dir=str(tmp_path))
    with pytest.raises(ValueError):
        build_session_store(cfg)


def _manager(upload_root: Path, store=None) -> SessionManager:
    return SessionManager(
        store or InMemorySessionStore(),
        worker_id="1",
        system_prompt="sys",
        upload_root=upload_root,
        idle_timeout_seconds=60,
    )


@pytest.mark.asyncio
async def test_resolve_issues_new_id_for_missing_or_malformed_user(upload_root):
    manager = _manager(upload_root)

    session, issued = await manager.resolve(None)
    assert issued is True
    assert is_valid_user_id(session.id)
    assert session.history.messages[0].content == "sys"

    bad, issued_bad = await manager.resolve("../../etc/passwd")
    assert issued_bad is True
    assert bad.id != "../../etc/passwd"

    again, issued_again = await manager.resolve(session.id)
    assert issued_again is False
    assert again.id == session.id


@pytest.mark.asyncio
async def test_record_exchange_appends_and_trims(upload_root):
    manager = _manager(upload_root)
    session, _ = await manager.resolve("u3")

    for i in range(3):
        await manager.record_exchange(
            session, user_content=f"q{i}", assistant_text=f"a{i}", max_turns=4
        )

    stored = await manager.store.get("u3")
    assert [m.content for m in stored.history.turns] == ["q1", "a1", "q2", "a2"]
    assert stored.history.messages[0].role == "system"


@pytest.mark.asyncio
async def test_remove_file_deletes_bytes_inside_upload_root(upload_root):
    manager = _manager(upload_root)
    session, _ = await manager.resolve("user-1")
    descriptor = _descriptor()
    target = upload_root / descriptor.path
    target.parent.mkdir(parents=True)
    target.write_text("hello")
    await manager.add_files(session, [descriptor])

    removed = await manager.remove_file(session, descriptor.id)

    assert removed is not None
    assert not target.exists()
    assert await manager.remove_file(session, descriptor.id) is None


@pytest.mark.asyncio
async def test_sweep_idle_evicts_and_deletes_recorded_files(upload_root):
    manager = _manager(upload_root)
    idle, _ = await manager.resolve("idle-user")
    active, _ = await manager.resolve("active-user")
    descriptor = _descriptor("1700000000000-0000000000000001.png", "idle-user/images/a.png")
    target = upload_root / descriptor.path
    target.parent.mkdir(parents=True)
    target.write_bytes(b"png")
    await manager.add_files(idle, [descriptor])
    now = time.time()
    idle.touch(now - 3600)
    await manager.save(idle)
    active.touch(now)
    await manager.save(active)

    evicted = await manager.sweep_idle(now)

    assert evicted == ["idle-user"]
    assert not target.exists()
    assert not (upload_root / "idle-user").exists()
    assert await manager.store.get("idle-user") is None
    assert await manager.store.get("active-user") is not None


@pytest.mark.asyncio
async def test_sweep_keeps_files_owned_by_another_workers_session(upload_root):
    # Two workers with process-local stores share one upload tree.
    stale_worker = _manager(upload_root)
    live_worker = _manager(upload_root)
    stale, _ = await stale_worker.resolve("user1")
    live, _ = await live_worker.resolve("user1")
    descriptor = _descriptor("f1", "user1/pdfs/f1.pdf")
    target = upload_root / descriptor.path
    target.parent.mkdir(parents=True)
    target.write_bytes(b"%PDF")
    await live_worker.add_files(live, [descriptor])
    now = time.time()
    stale.touch(now - 3600)
    await stale_worker.save(stale)

    assert await stale_worker.sweep_idle(now) == ["user1"]

    assert target.exists()
    assert [f.id for f in (await live_worker.store.get("user1")).files] == ["f1"]


@pytest.mark.asyncio
async def test_sweep_skips_session_touched_after_listing(upload_root):
    manager = _manager(upload_root)
    session, _ = await manager.resolve("busy-user")
    now = time.time()
    session.touch(now - 3600)
    listed = [session.model_copy(deep=True)]
    session.touch(now)

    async def stale_listing():
        return listed

    manager.store.list_sessions = stale_listing

    assert await manager.sweep_idle(now) == []
    assert await manager.store.get("busy-user") is not None


@pytest.mark.asyncio
async def test_concurrent_upload_survives_chat_commit_with_shared_store(fake_redis, upload_root):
    manager = _manager(upload_root, RedisSessionStore(fake_redis, ttl_seconds=60))
    await manager.resolve("user1")
    # Two requests for the same user, each holding its own copy.
    chatting = await manager.store.get("user1")
    uploading = await manager.store.get("user1")

    await manager.add_files(uploading, [_descriptor("f1", "user1/others/f1.txt")])
    await manager.record_exchange(
        chatting, user_content="question", assistant_text="answer", max_turns=10
    )

    stored = await manager.store.get("user1")
    assert [f.id for f in stored.files] == ["f1"]
    assert [m.content for m in stored.history.turns] == ["question", "answer"]
    assert [f.id for f in chatting.files] == ["f1"]


@pytest.mark.asyncio
async def test_reset_and_remove_file_do_not_drop_newer_state(fake_redis, upload_root):
    manager = _manager(upload_root, RedisSessionStore(fake_redis, ttl_seconds=60))
    await manager.resolve("user1")
    first = await manager.store.get("user1")
    second = await manager.store.get("user1")

    await manager.add_files(first, [_descriptor("f1", "user1/others/f1.txt")])
    await manager.reset_history(second)
    assert [f.id for f in (await manager.store.get("user1")).files] == ["f1"]

    third = await manager.store.get("user1")
    await manager.record_exchange(first, user_content="q", assistant_text="a", max_turns=10)
    removed = await manager.remove_file(third, "f1")

    stored = await manager.store.get("user1")
    assert removed is not None
    assert stored.files == []
    assert [m.content for m in stored.history.turns] == ["q", "a"]
