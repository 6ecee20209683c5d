"""
Worker selection policies for the balancer.
"""

from __future__ import annotations

import hashlib
from typing import Callable, List, Optional, Sequence

HealthCheck = Callable[[int], bool]


class RoundRobinSelector:
    """
    Cycles through ``urls`` in order. The cursor advances on every
    selection whatever happens to the forwarded request, so over N * k
    selections each worker is picked exactly k times.

    With ``is_healthy`` set, workers it rejects are skipped; if it rejects
    all of them the plain rotation target is returned anyway.
    """

    def __init__(
        self, urls: Sequence[str], *, is_healthy: Optional[HealthCheck] = None
    ) -> None:
        if not urls:
            raise ValueError("RoundRobinSelector needs at least one worker URL")
        self.urls: List[str] = list(urls)
        self.is_healthy = is_healthy
        self.cursor = 0

    def _advance(self) -> int:
        index = self.cursor
        self.cursor = (self.cursor + 1) % len(self.urls)
        return index

    def select(self, user_id: Optional[str] = None) -> tuple[int, str]:
        index = self._advance()
        if self.is_healthy is not None and not self.is_healthy(index):
            for _ in range(len(self.urls) - 1):
                candidate = self._advance()
                if self.is_healthy(candidate):
                    index = candidate
                    break
        return index, self.urls[index]


class UserHashSelector:
    """
    Sticky routing: a user id always maps to the same worker, so per-worker
    in-memory sessions stay coherent. Requests without a user id rotate.
    """

    def __init__(
        self, urls: Sequence[str], *, is_healthy: Optional[HealthCheck] = None
    ) -> None:
        self.fallback = RoundRobinSelector(urls, is_healthy=is_healthy)
        self.urls = self.fallback.urls

    @property
    def cursor(self) -> int:
        return self.fallback.cursor

    @staticmethod
    def _bucket(user_id: str, size: int) -> int:
        digest = hashlib.sha1(user_id.encode("utf-8")).digest()
        return int.from_bytes(digest[:8], "big") % size

    def select(self, user_id: Optional[str] = None) -> tuple[int, str]:
        if not user_id:
            return self.fallback.select()
        index = self._bucket(user_id, len(self.urls))
        return index, self.urls[index]


def build_selector(
    policy: str, urls: Sequence[str], *, is_healthy: Optional[HealthCheck] = None
) -> RoundRobinSelector | UserHashSelector:
    if policy == "round_robin":
        return RoundRobinSelector(urls, is_healthy=is_healthy)
    if policy == "user_hash":
        return UserHashSelector(urls, is_healthy=is_healthy)
    raise ValueError(f"Unknown balance policy: {policy!r}")


__all__ = ["HealthCheck", "RoundRobinSelector", "UserHashSelector", "build_selector"]
