from .state import ChildSpec, InvalidTransition, WorkerRegistration, WorkerSlot, WorkerState
from .supervisor import ProcessFactory, ProcessSupervisor

__all__ = [
    "ChildSpec",
    "InvalidTransition",
    "ProcessFactory",
    "ProcessSupervisor",
    "WorkerRegistration",
    "WorkerSlot",
    "WorkerState",
]
