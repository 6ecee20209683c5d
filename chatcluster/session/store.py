"""
Session storage backends.

``SessionStore`` is the one interface the worker talks to. Two
implementations exist:

- ``InMemorySessionStore``: a dict owned by the worker process. Fast, but a
  follow-up request routed to a different worker does not see it.
- ``RedisSessionStore``: JSON documents in Redis shared by every worker,
  at the cost of a network hop per lookup.
"""

from __future__ import annotations

import abc
import logging
from typing import Dict, List, Optional

from pydantic import ValidationError
from redis.asyncio import Redis

from chatcluster.models import UserSession
from chatcluster.redis_client import (
    get_redis_client,
    redis_get_json,
    redis_scan_prefix,
    redis_set_json,
)
from chatcluster.settings import Settings

logger = logging.getLogger("chatcluster.session")

SESSION_KEY_PREFIX = "chatcluster:session:"
SESSION_KEY_TEMPLATE = SESSION_KEY_PREFIX + "{user_id}"


class SessionStore(abc.ABC):
    @abc.abstractmethod
    async def get(self, user_id: str) -> Optional[UserSession]:
        ...

    @abc.abstractmethod
    async def save(self, session: UserSession) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, user_id: str) -> bool:
        """Delete a session; returns True if it existed."""

    @abc.abstractmethod
    async def list_sessions(self) -> List[UserSession]:
        ...

    async def count(self) -> int:
        return len(await self.list_sessions())


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._sessions: Dict[str, UserSession] = {}

    async def get(self, user_id: str) -> Optional[UserSession]:
        return self._sessions.get(user_id)

    async def save(self, session: UserSession) -> None:
        self._sessions[session.id] = session

    async def delete(self, user_id: str) -> bool:
        return self._sessions.pop(user_id, None) is not None

    async def list_sessions(self) -> List[UserSession]:
        return list(self._sessions.values())

    async def count(self) -> int:
        return len(self._sessions)


class RedisSessionStore(SessionStore):
    def __init__(self, redis: Redis, *, ttl_seconds: int) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(user_id: str) -> str:
        return SESSION_KEY_TEMPLATE.format(user_id=user_id)

    async def _load(self, key: str) -> Optional[UserSession]:
        data = await redis_get_json(self.redis, key)
        if not data:
            return None
        try:
            return UserSession.model_validate(data)
        except ValidationError:
            logger.warning("Discarding malformed session payload under %s", key)
            return None

    async def get(self, user_id: str) -> Optional[UserSession]:
        return await self._load(self._key(user_id))

    async def save(self, session: UserSession) -> None:
        await redis_set_json(
            self.redis,
            self._key(session.id),
            session.model_dump(mode="json"),
            ttl_seconds=self.ttl_seconds,
        )

    async def delete(self, user_id: str) -> bool:
        removed = await self.redis.delete(self._key(user_id))
        return bool(removed)

    async def list_sessions(self) -> List[UserSession]:
        sessions: List[UserSession] = []
        async for key in redis_scan_prefix(self.redis, SESSION_KEY_PREFIX):
            session = await self._load(key)
            if session is not None:
                sessions.append(session)
        return sessions


def build_session_store(cfg: Settings) -> SessionStore:
    backend = cfg.session_backend.strip().lower()
    if backend == "memory":
        return InMemorySessionStore()
    if backend == "redis":
        # Keys outlive the idle timeout slightly so the sweep, not the TTL,
        # is what releases the user's files.
        ttl = int(cfg.session_idle_timeout_seconds + cfg.session_sweep_interval_seconds)
        return RedisSessionStore(get_redis_client(cfg.redis_url), ttl_seconds=ttl)
    raise ValueError(f"Unknown SESSION_BACKEND {cfg.session_backend!r}")


__all__ = [
    "InMemorySessionStore",
    "RedisSessionStore",
    "SESSION_KEY_PREFIX",
    "SESSION_KEY_TEMPLATE",
    "SessionStore",
    "build_session_store",
]
