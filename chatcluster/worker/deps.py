from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from chatcluster.lock_manager import LockManager
from chatcluster.models import UserSession
from chatcluster.session import SessionManager
from chatcluster.settings import Settings

from .stats import StatsSink, WorkerStats


@dataclass
class WorkerContext:
    """
    Per-process state shared by every request a worker handles.
    """

    worker_id: str
    port: int
    settings: Settings
    sessions: SessionManager
    stats: WorkerStats
    locks: LockManager
    stats_sink: Optional[StatsSink] = None
    http_client: Optional[httpx.AsyncClient] = None


def get_worker_context(request: Request) -> WorkerContext:
    return request.app.state.worker


def get_http_client(request: Request) -> httpx.AsyncClient:
    """
    Long-lived AsyncClient opened in the worker lifespan; tests override
    this dependency with a client on ``httpx.MockTransport``.
    """
    client = request.app.state.worker.http_client
    if client is None:
        raise RuntimeError("Worker HTTP client is not initialised; lifespan has not run")
    return client


def get_session(request: Request) -> UserSession:
    # Attached by UserSessionMiddleware before routing.
    return request.state.session


__all__ = ["WorkerContext", "get_http_client", "get_session", "get_worker_context"]
