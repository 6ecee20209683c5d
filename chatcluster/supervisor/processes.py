"""
Child process entrypoints and the spawn-based process factory.

Children are started with the ``spawn`` start method so each one imports
the package fresh and builds its own event loop, settings and logging.
"""

from __future__ import annotations

import multiprocessing as mp
from multiprocessing.process import BaseProcess
from typing import Any, Optional

import uvicorn

from chatcluster.logging_config import logger, setup_logging
from chatcluster.settings import settings

from .state import ChildSpec


def run_worker_process(worker_id: int, port: int, messages: Optional[Any] = None) -> None:
    """
    Entrypoint of one worker child: FastAPI worker app under uvicorn.
    ``messages`` (a multiprocessing queue) carries ready/stats reports back
    to the supervisor.
    """
    setup_logging(f"worker-{worker_id}")
    from chatcluster.worker import create_worker_app

    sink = messages.put if messages is not None else None
    app = create_worker_app(worker_id, port, stats_sink=sink)
    logger.info("Worker %s booting on %s:%s", worker_id, settings.worker_host, port)
    # Use our own logging configuration from chatcluster.logging_config.
    uvicorn.run(app, host=settings.worker_host, port=port, log_config=None)


def run_balancer_process() -> None:
    setup_logging("balancer")
    from chatcluster.balancer import create_balancer_app

    app = create_balancer_app()
    uvicorn.run(
        app,
        host=settings.balancer_host,
        port=settings.balancer_port,
        log_config=None,
        access_log=False,
    )


class SpawnProcessFactory:
    """
    Starts children in fresh interpreters and owns the queue they report on.
    """

    def __init__(self) -> None:
        self.context = mp.get_context("spawn")
        self.messages = self.context.Queue()

    def __call__(self, spec: ChildSpec) -> BaseProcess:
        if spec.kind == "balancer":
            process = self.context.Process(
                target=run_balancer_process, name=spec.name, daemon=False
            )
        else:
            process = self.context.Process(
                target=run_worker_process,
                args=(spec.worker_id, spec.port, self.messages),
                name=spec.name,
                daemon=False,
            )
        process.start()
        return process

    def close(self) -> None:
        self.messages.close()
        self.messages.join_thread()


__all__ = ["SpawnProcessFactory", "run_balancer_process", "run_worker_process"]
