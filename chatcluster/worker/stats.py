from __future__ import annotations

import asyncio
import logging
import os
import resource
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from chatcluster.models import WorkerStatsReport

logger = logging.getLogger("chatcluster.worker.stats")

StatsSink = Callable[[Dict[str, Any]], None]


def current_rss_mb() -> float:
    """
    Resident set size of this process in MiB.

    Reads /proc/self/statm where available (current RSS); otherwise falls
    back to the peak RSS reported by getrusage.
    """
    try:
        with open("/proc/self/statm", "r", encoding="ascii") as fh:
            resident_pages = int(fh.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)
    except (OSError, ValueError, IndexError):
        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # Linux reports KiB, macOS reports bytes.
        divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
        return peak / divisor


@dataclass
class WorkerStats:
    """
    Request counters owned by one worker process.
    """

    worker_id: str
    requests: int = 0
    errors: int = 0
    active_connections: int = 0
    cancelled_streams: int = 0
    started_at: float = field(default_factory=time.time)

    def record_error(self) -> None:
        self.errors += 1

    def snapshot(
        self, *, sessions: int = 0, memory_rss_mb: Optional[float] = None
    ) -> WorkerStatsReport:
        return WorkerStatsReport(
            worker_id=self.worker_id,
            pid=os.getpid(),
            memory_rss_mb=current_rss_mb() if memory_rss_mb is None else memory_rss_mb,
            active_connections=max(0, self.active_connections),
            requests=self.requests,
            errors=self.errors,
            sessions=sessions,
            timestamp=time.time(),
        )


async def stats_reporter_loop(
    stats: WorkerStats,
    sink: StatsSink,
    *,
    interval: float,
    session_count: Callable[[], Awaitable[int]],
) -> None:
    """
    Push a stats report through ``sink`` every ``interval`` seconds.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            report = stats.snapshot(sessions=await session_count())
            sink(report.model_dump(by_alias=True))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Worker %s failed to publish stats", stats.worker_id)


__all__ = ["StatsSink", "WorkerStats", "current_rss_mb", "stats_reporter_loop"]
