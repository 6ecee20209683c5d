"""
Command line entrypoint.

    python main.py                      # supervisor: balancer + worker pool
    python main.py worker --id 2        # one worker in the foreground
    python main.py balancer             # balancer only
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from chatcluster.logging_config import logger, setup_logging
from chatcluster.settings import settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatcluster",
        description="Round-robin balancer and worker pool for streaming AI chat.",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("supervisor", help="Run the balancer and all workers (default)")
    worker = sub.add_parser("worker", help="Run a single worker process")
    worker.add_argument("--id", type=int, default=1, help="1-based worker id")
    worker.add_argument(
        "--port",
        type=int,
        default=None,
        help="Listen port (default: WORKER_BASE_PORT + id - 1)",
    )
    sub.add_parser("balancer", help="Run the load balancer only")
    return parser


async def run_supervisor() -> None:
    from chatcluster.supervisor import ProcessSupervisor
    from chatcluster.supervisor.processes import SpawnProcessFactory

    factory = SpawnProcessFactory()
    supervisor = ProcessSupervisor(settings, factory, messages=factory.messages)
    try:
        await supervisor.run()
    finally:
        factory.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "supervisor"

    if command == "worker":
        from chatcluster.supervisor.processes import run_worker_process

        port = args.port if args.port is not None else settings.worker_port(args.id - 1)
        run_worker_process(args.id, port)
        return 0

    if command == "balancer":
        from chatcluster.supervisor.processes import run_balancer_process

        run_balancer_process()
        return 0

    # Configure logging once for the supervisor process.
    setup_logging("supervisor")
    asyncio.run(run_supervisor())
    logger.info("Supervisor exited")
    return 0


if __name__ == "__main__":
    sys.exit(main())
