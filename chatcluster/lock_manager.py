"""
Named mutual exclusion for one-time initialisation of shared resources.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable

from chatcluster.errors import InfrastructureError, LockTimeoutError

logger = logging.getLogger("chatcluster.lock")


class LockManager:
    """
    Hands out one ``asyncio.Lock`` per name.

    Usage:
        async with lock_manager.acquire("upload_dirs"):
            ...
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def is_locked(self, name: str) -> bool:
        lock = self._locks.get(name)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def acquire(self, name: str, timeout: float = 10.0) -> AsyncIterator[None]:
        lock = self._lock_for(name)
        started = time.perf_counter()
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except TimeoutError as exc:
            raise LockTimeoutError(name, timeout) from exc
        waited_ms = (time.perf_counter() - started) * 1000.0
        if waited_ms > 100:
            logger.debug("Acquired lock %s after %.1fms", name, waited_ms)
        try:
            yield
        finally:
            lock.release()


UPLOAD_DIRS_LOCK = "upload_dirs"


async def ensure_upload_dirs(
    lock_manager: LockManager,
    base_dir: Path,
    subdirs: Iterable[str] = (),
) -> None:
    """
    Create the shared upload base directory (and optional subdirectories)
    under the ``upload_dirs`` lock. Other worker processes may race on the
    same paths; ``exist_ok`` absorbs that.
    """
    async with lock_manager.acquire(UPLOAD_DIRS_LOCK):
        try:
            base_dir.mkdir(parents=True, exist_ok=True)
            for name in subdirs:
                (base_dir / name).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise InfrastructureError(
                f"Cannot create upload directory under {base_dir}: {exc}"
            ) from exc


__all__ = ["LockManager", "UPLOAD_DIRS_LOCK", "ensure_upload_dirs"]
