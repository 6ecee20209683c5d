"""
Background health probing of worker processes.

Probes call each worker's ``GET /api/health`` off the request path. Results
are logged and kept in a registry; they only affect routing when the
balancer is configured to exclude unhealthy workers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger("chatcluster.balancer.health")


class WorkerHealth(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class WorkerHealthStatus(BaseModel):
    index: int
    url: str
    status: WorkerHealth = WorkerHealth.UNKNOWN
    checked_at: Optional[float] = Field(None, description="Epoch seconds of the last probe")
    response_time_ms: Optional[float] = None
    error_message: Optional[str] = None
    last_successful_check: Optional[float] = None


class WorkerHealthRegistry:
    def __init__(self, urls: Sequence[str]) -> None:
        self._statuses: Dict[int, WorkerHealthStatus] = {
            index: WorkerHealthStatus(index=index, url=url) for index, url in enumerate(urls)
        }

    def record(self, status: WorkerHealthStatus) -> None:
        previous = self._statuses.get(status.index)
        if status.status != WorkerHealth.HEALTHY and previous is not None:
            status.last_successful_check = previous.last_successful_check
        self._statuses[status.index] = status

    def get(self, index: int) -> WorkerHealthStatus:
        return self._statuses[index]

    def is_healthy(self, index: int) -> bool:
        # Never-probed workers count as healthy.
        status = self._statuses.get(index)
        return status is None or status.status in (WorkerHealth.UNKNOWN, WorkerHealth.HEALTHY)

    def snapshot(self) -> List[WorkerHealthStatus]:
        return [self._statuses[i] for i in sorted(self._statuses)]


async def probe_worker(
    client: httpx.AsyncClient, index: int, url: str, *, timeout: float = 3.0
) -> WorkerHealthStatus:
    """
    One ``GET <url>/api/health`` probe; never raises for transport errors.
    """
    start = time.perf_counter()
    health = WorkerHealth.HEALTHY
    error_message: Optional[str] = None
    last_success: Optional[float] = None
    try:
        resp = await client.get(f"{url.rstrip('/')}/api/health", timeout=timeout)
        if resp.status_code == 200:
            last_success = time.time()
            logger.info("Worker %d (%s) healthy", index + 1, url)
        else:
            health = WorkerHealth.DEGRADED
            error_message = f"HTTP {resp.status_code}"
            logger.warning("Worker %d (%s) status: %s", index + 1, url, resp.status_code)
    except httpx.TimeoutException as exc:
        health = WorkerHealth.UNREACHABLE
        error_message = f"timeout: {exc}"
        logger.warning("Worker %d (%s) health check timed out", index + 1, url)
    except httpx.HTTPError as exc:
        health = WorkerHealth.UNREACHABLE
        error_message = str(exc)
        logger.warning("Worker %d (%s) unreachable: %s", index + 1, url, exc)

    return WorkerHealthStatus(
        index=index,
        url=url,
        status=health,
        checked_at=time.time(),
        response_time_ms=(time.perf_counter() - start) * 1000.0,
        error_message=error_message,
        last_successful_check=last_success,
    )


async def probe_all(
    client: httpx.AsyncClient,
    registry: WorkerHealthRegistry,
    urls: Sequence[str],
    *,
    timeout: float,
) -> List[WorkerHealthStatus]:
    results = await asyncio.gather(
        *(probe_worker(client, i, url, timeout=timeout) for i, url in enumerate(urls))
    )
    for status in results:
        registry.record(status)
    return list(results)


async def health_monitor_loop(
    client: httpx.AsyncClient,
    registry: WorkerHealthRegistry,
    urls: Sequence[str],
    *,
    initial_delay: float,
    interval: float,
    timeout: float,
) -> None:
    await asyncio.sleep(initial_delay)
    while True:
        await probe_all(client, registry, urls, timeout=timeout)
        await asyncio.sleep(interval)


__all__ = [
    "WorkerHealth",
    "WorkerHealthRegistry",
    "WorkerHealthStatus",
    "health_monitor_loop",
    "probe_all",
    "probe_worker",
]
