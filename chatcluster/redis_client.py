"""
Redis helpers for the shared session backend (SESSION_BACKEND=redis).

Each worker process builds its own client lazily; connection pools are
never inherited across the supervisor's process boundary.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional

from redis.asyncio import Redis

from .settings import settings

_clients: dict[str, Redis] = {}


def get_redis_client(url: str | None = None) -> Redis:
    """
    Return the process-wide client for ``url`` (defaults to REDIS_URL).
    """
    target = url or settings.redis_url
    client = _clients.get(target)
    if client is None:
        client = Redis.from_url(target, decode_responses=True)
        _clients[target] = client
    return client


async def close_redis_clients() -> None:
    while _clients:
        _, client = _clients.popitem()
        await client.aclose()


async def redis_get_json(redis: Redis, key: str) -> Optional[Any]:
    """
    Load a JSON value; None on missing key or malformed payload.
    """
    raw = await redis.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


async def redis_set_json(
    redis: Redis, key: str, value: Any, *, ttl_seconds: int | None = None
) -> None:
    data = json.dumps(value, ensure_ascii=False)
    if ttl_seconds is not None:
        await redis.set(key, data, ex=ttl_seconds)
    else:
        await redis.set(key, data)


async def redis_scan_prefix(redis: Redis, prefix: str) -> AsyncIterator[str]:
    """
    Iterate keys starting with ``prefix`` using SCAN rather than KEYS.
    """
    async for key in redis.scan_iter(match=f"{prefix}*"):
        yield key


__all__ = [
    "get_redis_client",
    "close_redis_clients",
    "redis_get_json",
    "redis_set_json",
    "redis_scan_prefix",
]
