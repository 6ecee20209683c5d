import asyncio
import os

import pytest

from chatcluster.worker.stats import WorkerStats, current_rss_mb, stats_reporter_loop


def test_snapshot_reports_counters_with_camel_case_aliases():
    stats = WorkerStats(worker_id="3", requests=12, errors=2, active_connections=-1)

    report = stats.snapshot(sessions=4, memory_rss_mb=64.0).model_dump(by_alias=True)

    assert report["type"] == "stats"
    assert report["workerId"] == "3"
    assert report["pid"] == os.getpid()
    assert report["memoryRssMb"] == 64.0
    assert report["activeConnections"] == 0
    assert report["requests"] == 12
    assert report["errors"] == 2
    assert report["sessions"] == 4


def test_current_rss_is_positive():
    assert current_rss_mb() > 0


@pytest.mark.asyncio
async def test_reporter_pushes_reports_until_cancelled():
    stats = WorkerStats(worker_id="1")
    received = []

    async def session_count() -> int:
        return 2

    task = asyncio.create_task(
        stats_reporter_loop(stats, received.append, interval=0.01, session_count=session_count)
    )
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(received) >= 2
    assert all(r["workerId"] == "1" and r["sessions"] == 2 for r in received)


@pytest.mark.asyncio
async def test_reporter_survives_a_failing_sink():
    stats = WorkerStats(worker_id="1")
    calls = []

    def flaky_sink(report):
        calls.append(report)
        if len(calls) == 1:
            raise OSError("queue closed")

    async def session_count() -> int:
        return 0

    task = asyncio.create_task(
        stats_reporter_loop(stats, flaky_sink, interval=0.01, session_count=session_count)
    )
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(calls) >= 2
