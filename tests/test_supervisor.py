import time

import pytest

from chatcluster.settings import Settings
from chatcluster.supervisor import (
    InvalidTransition,
    ProcessSupervisor,
    WorkerSlot,
    WorkerState,
)
from tests.utils import FakeProcessFactory


def _settings(**overrides) -> Settings:
    values = dict(
        worker_count=2,
        worker_base_port=4001,
        balancer_port=4000,
        balancer_startup_grace_seconds=0,
        restart_grace_seconds=0.2,
        shutdown_stagger_seconds=0,
        shutdown_grace_seconds=0.2,
        worker_max_memory_mb=100,
        worker_max_uptime_seconds=3600,
    )
    values.update(overrides)
    return Settings(**values)


def _stats(worker_id: int, memory_mb: float) -> dict:
    return {
        "type": "stats",
        "workerId": str(worker_id),
        "pid": 1,
        "memoryRssMb": memory_mb,
        "activeConnections": 0,
        "requests": 10,
        "errors": 0,
        "sessions": 1,
        "timestamp": time.time(),
    }


async def _started(**overrides):
    factory = FakeProcessFactory()
    supervisor = ProcessSupervisor(_settings(**overrides), factory)
    await supervisor.start()
    for worker_id in supervisor.workers:
        supervisor.handle_message({"type": "ready", "workerId": str(worker_id), "pid": 1, "port": 0})
    return supervisor, factory


def test_slot_rejects_illegal_transitions():
    slot = WorkerSlot(name="worker-1")
    slot.transition(WorkerState.READY)
    slot.transition(WorkerState.DEGRADED)

    with pytest.raises(InvalidTransition):
        slot.transition(WorkerState.READY)

    slot.transition(WorkerState.RESTARTING)
    slot.transition(WorkerState.STARTING)
    assert [state for _, state in slot.history] == [
        WorkerState.READY,
        WorkerState.DEGRADED,
        WorkerState.RESTARTING,
        WorkerState.STARTING,
    ]


@pytest.mark.asyncio
async def test_start_launches_balancer_before_workers_on_derived_ports():
    supervisor, factory = await _started()

    assert [entry for entry in factory.log] == [
        ("start", "balancer"),
        ("start", "worker-1"),
        ("start", "worker-2"),
    ]
    assert supervisor.balancer.state == WorkerState.READY
    assert [w.spec.port for w in supervisor.workers.values()] == [4001, 4002]
    assert all(w.state == WorkerState.READY for w in supervisor.workers.values())


@pytest.mark.asyncio
async def test_memory_breach_triggers_exactly_one_restart_cycle():
    supervisor, factory = await _started()
    worker = supervisor.workers[1]
    old_process = worker.process
    supervisor.handle_message(_stats(1, memory_mb=512))
    supervisor.handle_message(_stats(2, memory_mb=50))

    restarted = await supervisor.check_thresholds()

    assert restarted == [1]
    assert worker.restarts == 1
    assert ("terminate", "worker-1") in factory.log
    assert worker.process is not old_process
    assert worker.spec.port == 4001
    assert worker.state == WorkerState.STARTING
    assert worker.last_stats is None

    assert await supervisor.check_thresholds() == []
    supervisor.handle_message({"type": "ready", "workerId": "1"})
    assert await supervisor.check_thresholds() == []
    assert worker.restarts == 1
    assert supervisor.workers[2].restarts == 0


@pytest.mark.asyncio
async def test_uptime_breach_restarts_worker():
    supervisor, _ = await _started()

    restarted = await supervisor.check_thresholds(now=time.time() + 7200)

    assert restarted == [1, 2]


@pytest.mark.asyncio
async def test_restart_kills_worker_that_ignores_terminate():
    supervisor, factory = await _started()
    stubborn = supervisor.workers[2].process
    stubborn.ignore_terminate = True
    supervisor.handle_message(_stats(2, memory_mb=1000))

    await supervisor.check_thresholds()

    assert ("kill", "worker-2") in factory.log
    assert not stubborn.is_alive()
    assert supervisor.workers[2].restarts == 1


@pytest.mark.asyncio
async def test_crashed_worker_and_balancer_are_reforked():
    supervisor, factory = await _started()
    crashed = supervisor.workers[2].process
    crashed.crash(code=1)
    supervisor.balancer.process.crash(code=1)

    restarted = await supervisor.reap_exited()

    assert restarted == ["balancer", "worker-2"]
    worker = supervisor.workers[2]
    assert worker.process is not crashed
    assert worker.spec.port == 4002
    assert worker.restarts == 1
    assert worker.state == WorkerState.STARTING
    assert supervisor.balancer.state == WorkerState.READY
    assert supervisor.balancer.restarts == 1
    assert await supervisor.reap_exited() == []


@pytest.mark.asyncio
async def test_stats_messages_are_recorded_and_unknown_workers_ignored():
    supervisor, _ = await _started()

    supervisor.handle_message(_stats(1, memory_mb=42.5))
    supervisor.handle_message(_stats(9, memory_mb=1.0))
    supervisor.handle_message({"type": "stats", "workerId": "2", "memoryRssMb": "lots"})

    assert supervisor.workers[1].last_stats.memory_rss_mb == 42.5
    assert supervisor.workers[2].last_stats is None
    summary = supervisor.status()
    assert summary[0]["name"] == "balancer"
    assert summary[1]["memoryRssMb"] == 42.5


@pytest.mark.asyncio
async def test_shutdown_stops_balancer_first_then_workers():
    supervisor, factory = await _started()
    supervisor.workers[1].process.ignore_terminate = True

    await supervisor.shutdown()

    terminations = [name for action, name in factory.log if action == "terminate"]
    assert terminations == ["balancer", "worker-1", "worker-2"]
    assert ("kill", "worker-1") in factory.log
    assert supervisor.balancer.state == WorkerState.STOPPED
    assert all(w.state == WorkerState.STOPPED for w in supervisor.workers.values())
    assert await supervisor.reap_exited() == []
