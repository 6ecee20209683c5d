from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Literal, Optional, Protocol, Tuple

from chatcluster.models import WorkerStatsReport


class WorkerState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    RESTARTING = "restarting"
    EXITED = "exited"
    STOPPING = "stopping"
    STOPPED = "stopped"


_TRANSITIONS: Dict[WorkerState, FrozenSet[WorkerState]] = {
    WorkerState.STARTING: frozenset(
        {WorkerState.READY, WorkerState.EXITED, WorkerState.STOPPING}
    ),
    WorkerState.READY: frozenset(
        {WorkerState.DEGRADED, WorkerState.EXITED, WorkerState.STOPPING}
    ),
    WorkerState.DEGRADED: frozenset({WorkerState.RESTARTING, WorkerState.STOPPING}),
    WorkerState.RESTARTING: frozenset({WorkerState.STARTING, WorkerState.STOPPING}),
    # An exited child has nothing left to stop.
    WorkerState.EXITED: frozenset({WorkerState.STARTING, WorkerState.STOPPED}),
    WorkerState.STOPPING: frozenset({WorkerState.STOPPED}),
    WorkerState.STOPPED: frozenset(),
}


class InvalidTransition(RuntimeError):
    def __init__(self, slot: str, current: WorkerState, target: WorkerState) -> None:
        self.slot = slot
        self.current = current
        self.target = target
        super().__init__(f"{slot}: illegal transition {current.value} -> {target.value}")


@dataclass
class WorkerSlot:
    """
    Lifecycle state of one supervised child, with the transition history
    kept for diagnostics.
    """

    name: str
    state: WorkerState = WorkerState.STARTING
    history: List[Tuple[float, WorkerState]] = field(default_factory=list)

    def can_transition(self, target: WorkerState) -> bool:
        return target in _TRANSITIONS[self.state]

    def transition(self, target: WorkerState, *, now: Optional[float] = None) -> WorkerState:
        if not self.can_transition(target):
            raise InvalidTransition(self.name, self.state, target)
        previous = self.state
        self.state = target
        self.history.append((now if now is not None else time.time(), target))
        return previous


class ProcessHandle(Protocol):
    """
    The subset of ``multiprocessing.Process`` the supervisor relies on.
    """

    pid: Optional[int]

    @property
    def exitcode(self) -> Optional[int]: ...

    def is_alive(self) -> bool: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


ChildKind = Literal["worker", "balancer"]


@dataclass(frozen=True)
class ChildSpec:
    kind: ChildKind
    worker_id: int
    port: int

    @property
    def name(self) -> str:
        return "balancer" if self.kind == "balancer" else f"worker-{self.worker_id}"


@dataclass
class WorkerRegistration:
    spec: ChildSpec
    process: ProcessHandle
    slot: WorkerSlot
    started_at: float = field(default_factory=time.time)
    restarts: int = 0
    last_stats: Optional[WorkerStatsReport] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def state(self) -> WorkerState:
        return self.slot.state

    def uptime(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.started_at

    def summary(self) -> Dict[str, object]:
        stats = self.last_stats
        return {
            "name": self.name,
            "pid": self.process.pid,
            "port": self.spec.port,
            "state": self.state.value,
            "restarts": self.restarts,
            "uptimeSeconds": round(self.uptime(), 1),
            "memoryRssMb": round(stats.memory_rss_mb, 1) if stats else None,
            "requests": stats.requests if stats else None,
            "errors": stats.errors if stats else None,
        }


__all__ = [
    "ChildSpec",
    "InvalidTransition",
    "ProcessHandle",
    "WorkerRegistration",
    "WorkerSlot",
    "WorkerState",
]
