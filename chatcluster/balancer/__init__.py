from .app import create_balancer_app
from .health import WorkerHealth, WorkerHealthRegistry, health_monitor_loop, probe_worker
from .selector import RoundRobinSelector, UserHashSelector, build_selector

__all__ = [
    "RoundRobinSelector",
    "UserHashSelector",
    "WorkerHealth",
    "WorkerHealthRegistry",
    "build_selector",
    "create_balancer_app",
    "health_monitor_loop",
    "probe_worker",
]
