"""
Session lifecycle helpers on top of a ``SessionStore``.

Sessions are created lazily for unknown user ids, mutated on every request
that updates activity or appends a file/turn, and destroyed by the idle
sweep, which also deletes the files the session recorded.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
import uuid
from functools import partial
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import anyio

from chatcluster.models import FileDescriptor, UserSession
from chatcluster.models.session import MessageContent

from .store import SessionStore

logger = logging.getLogger("chatcluster.session")

_SAFE_USER_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def is_valid_user_id(value: Optional[str]) -> bool:
    # User ids name a directory under the upload root.
    return bool(value) and _SAFE_USER_ID.match(value) is not None


def new_user_id() -> str:
    return str(uuid.uuid4())


class SessionManager:
    def __init__(
        self,
        store: SessionStore,
        *,
        worker_id: str,
        system_prompt: str,
        upload_root: Path,
        idle_timeout_seconds: float = 3600.0,
    ) -> None:
        self.store = store
        self.worker_id = worker_id
        self.system_prompt = system_prompt
        self.upload_root = upload_root
        self.idle_timeout_seconds = idle_timeout_seconds

    async def resolve(self, user_id: Optional[str]) -> Tuple[UserSession, bool]:
        """
        Look up or create the session for ``user_id``.

        Returns ``(session, issued)`` where ``issued`` is True when a fresh
        user id was generated and must be handed back to the client.
        """
        issued = False
        if not is_valid_user_id(user_id):
            if user_id:
                logger.warning("Rejecting malformed user id %r; issuing a new one", user_id)
            user_id = new_user_id()
            issued = True

        session = await self.store.get(user_id)
        if session is None:
            session = self.create(user_id)
            await self.store.save(session)
            logger.info(
                "Created session %s on worker %s", user_id, self.worker_id
            )
        else:
            session.history.ensure_system_prompt(self.system_prompt)
        return session, issued

    def create(self, user_id: str) -> UserSession:
        session = UserSession(id=user_id, worker_id=self.worker_id)
        session.history.ensure_system_prompt(self.system_prompt)
        return session

    async def save(self, session: UserSession) -> None:
        await self.store.save(session)

    async def latest(self, session: UserSession) -> UserSession:
        """
        Refresh ``session`` in place from the store before mutating it.

        A request can hold its session for the whole upstream call; another
        request for the same user may have saved uploads or a reset since.
        """
        stored = await self.store.get(session.id)
        if stored is not None and stored is not session:
            for name in UserSession.model_fields:
                setattr(session, name, getattr(stored, name))
            session.history.ensure_system_prompt(self.system_prompt)
        return session

    async def touch(self, session: UserSession) -> UserSession:
        session.touch()
        await self.store.save(session)
        return session

    async def add_files(
        self, session: UserSession, descriptors: Iterable[FileDescriptor]
    ) -> UserSession:
        await self.latest(session)
        for descriptor in descriptors:
            session.add_file(descriptor)
        session.touch()
        await self.store.save(session)
        return session

    async def record_exchange(
        self,
        session: UserSession,
        *,
        user_content: MessageContent,
        assistant_text: str,
        max_turns: int,
    ) -> int:
        """
        Append one user turn and the accumulated assistant reply, then trim.
        Returns the number of turns dropped by trimming.
        """
        await self.latest(session)
        session.history.append("user", user_content)
        session.history.append("assistant", assistant_text)
        dropped = session.history.trim(max_turns)
        session.touch()
        await self.store.save(session)
        return dropped

    async def reset_history(self, session: UserSession) -> UserSession:
        await self.latest(session)
        session.history.reset()
        session.history.ensure_system_prompt(self.system_prompt)
        session.touch()
        await self.store.save(session)
        return session

    def _inside_root(self, relative: str) -> Optional[Path]:
        target = (self.upload_root / relative).resolve()
        return target if target.is_relative_to(self.upload_root) else None

    async def remove_file(
        self, session: UserSession, file_id: str
    ) -> Optional[FileDescriptor]:
        await self.latest(session)
        descriptor = session.remove_file(file_id)
        if descriptor is None:
            return None
        target = self._inside_root(descriptor.path)
        if target is not None:
            await anyio.to_thread.run_sync(partial(target.unlink, missing_ok=True))
        session.touch()
        await self.store.save(session)
        return descriptor

    def release_files(self, session: UserSession) -> int:
        """
        Delete the files recorded in ``session`` and prune directories left
        empty. The user directory is shared by every worker, so files other
        sessions still reference are never touched. Returns the count removed.
        """
        removed = 0
        parents = set()
        for descriptor in session.files:
            target = self._inside_root(descriptor.path)
            if target is None:
                continue
            try:
                target.unlink()
                removed += 1
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not delete %s for %s: %s", target, session.id, exc)
            parents.add(target.parent)

        user_dir = self._inside_root(session.id)
        for directory in sorted(parents, key=lambda p: len(p.parts), reverse=True) + [user_dir]:
            if directory is None or directory == self.upload_root:
                continue
            # rmdir only succeeds on an empty directory.
            with contextlib.suppress(OSError):
                directory.rmdir()
        return removed

    async def sweep_idle(self, now: float | None = None) -> List[str]:
        """
        Evict sessions idle for longer than the timeout and delete their
        files. Returns the evicted user ids.
        """
        current = now if now is not None else time.time()
        evicted: List[str] = []
        for candidate in await self.store.list_sessions():
            if not candidate.is_idle(self.idle_timeout_seconds, current):
                continue
            # Another request may have touched it since the listing.
            session = await self.store.get(candidate.id)
            if session is None or not session.is_idle(self.idle_timeout_seconds, current):
                continue
            if not await self.store.delete(session.id):
                continue
            removed = await anyio.to_thread.run_sync(self.release_files, session)
            evicted.append(session.id)
            logger.info(
                "Evicted idle session %s (idle %.0fs, %d files removed)",
                session.id,
                current - session.last_activity,
                removed,
            )
        return evicted


async def idle_sweep_loop(manager: SessionManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            evicted = await manager.sweep_idle()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Idle session sweep failed on worker %s", manager.worker_id)
            continue
        if evicted:
            logger.info(
                "Idle sweep on worker %s evicted %d session(s)", manager.worker_id, len(evicted)
            )


__all__ = ["SessionManager", "idle_sweep_loop", "is_valid_user_id", "new_user_id"]
