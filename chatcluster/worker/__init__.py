from .deps import WorkerContext
from .routes import create_worker_app
from .stats import WorkerStats

__all__ = ["WorkerContext", "WorkerStats", "create_worker_app"]
