"""
Process supervisor: owns the balancer and worker children.

Responsibilities:
- launch the balancer, then one worker per port
- track readiness and the latest stats report of every worker
- re-fork children that exit unexpectedly (same id, same port)
- gracefully restart workers over the memory or uptime threshold
- staged shutdown on SIGINT/SIGTERM: balancer first, then workers
"""

from __future__ import annotations

import asyncio
import logging
import queue
import signal
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from chatcluster.models import WorkerStatsReport
from chatcluster.settings import Settings

from .state import (
    ChildSpec,
    InvalidTransition,
    ProcessHandle,
    WorkerRegistration,
    WorkerSlot,
    WorkerState,
)

logger = logging.getLogger("chatcluster.supervisor")

ProcessFactory = Callable[[ChildSpec], ProcessHandle]

_POLL_INTERVAL = 0.1


async def wait_for_exit(process: ProcessHandle, timeout: float) -> bool:
    """
    Poll until ``process`` is no longer alive or ``timeout`` elapses.
    Returns True when the process exited.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while process.is_alive():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(_POLL_INTERVAL)
    return True


async def wait_for_port(host: str, port: int, timeout: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=0.5
            )
        except (OSError, TimeoutError):
            await asyncio.sleep(_POLL_INTERVAL)
            continue
        writer.close()
        await writer.wait_closed()
        return True
    return False


class ProcessSupervisor:
    def __init__(
        self,
        cfg: Settings,
        process_factory: ProcessFactory,
        *,
        messages: Optional[Any] = None,
    ) -> None:
        self.cfg = cfg
        self.process_factory = process_factory
        # Anything with get_nowait() raising queue.Empty, e.g. a multiprocessing.Queue.
        self.messages = messages
        self.balancer: Optional[WorkerRegistration] = None
        self.workers: Dict[int, WorkerRegistration] = {}
        self.stopping = False
        self._stop_event: Optional[asyncio.Event] = None

    # -- launching ---------------------------------------------------------

    def _launch(
        self, spec: ChildSpec, registration: Optional[WorkerRegistration] = None
    ) -> WorkerRegistration:
        process = self.process_factory(spec)
        if registration is None:
            registration = WorkerRegistration(
                spec=spec, process=process, slot=WorkerSlot(name=spec.name)
            )
        else:
            registration.slot.transition(WorkerState.STARTING)
            registration.process = process
            registration.started_at = time.time()
            registration.last_stats = None
        logger.info("Started %s (pid=%s, port=%s)", spec.name, process.pid, spec.port)
        return registration

    def worker_spec(self, worker_id: int) -> ChildSpec:
        # Worker ids are 1-based; ports follow the same order.
        return ChildSpec(kind="worker", worker_id=worker_id, port=self.cfg.worker_port(worker_id - 1))

    async def start(self) -> None:
        cfg = self.cfg
        logger.info(
            "Supervisor starting balancer on :%s and %d workers from :%s",
            cfg.balancer_port,
            cfg.worker_count,
            cfg.worker_base_port,
        )
        self.balancer = self._launch(
            ChildSpec(kind="balancer", worker_id=0, port=cfg.balancer_port)
        )
        if cfg.balancer_startup_grace_seconds > 0:
            bound = await wait_for_port(
                cfg.balancer_host, cfg.balancer_port, cfg.balancer_startup_grace_seconds
            )
            if not bound:
                logger.warning(
                    "Balancer port %s not open after %.1fs; starting workers anyway",
                    cfg.balancer_port,
                    cfg.balancer_startup_grace_seconds,
                )
        if self.balancer.process.is_alive():
            self.balancer.slot.transition(WorkerState.READY)

        for worker_id in range(1, cfg.worker_count + 1):
            self.workers[worker_id] = self._launch(self.worker_spec(worker_id))

    # -- messages from children -------------------------------------------

    def handle_message(self, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        raw_id = message.get("workerId", message.get("worker_id"))
        try:
            registration = self.workers.get(int(raw_id))
        except (TypeError, ValueError):
            registration = None
        if registration is None:
            logger.warning("Dropping %s message from unknown worker %r", kind, raw_id)
            return

        if kind == "ready":
            if registration.state == WorkerState.STARTING:
                registration.slot.transition(WorkerState.READY)
                logger.info("%s ready (pid=%s)", registration.name, registration.process.pid)
        elif kind == "stats":
            try:
                registration.last_stats = WorkerStatsReport.model_validate(message)
            except ValidationError as exc:
                logger.warning("Malformed stats from %s: %s", registration.name, exc)
                return
            logger.debug("Stats from %s: %s", registration.name, registration.summary())
        else:
            logger.debug("Ignoring message type %r from %s", kind, registration.name)

    def poll_messages(self) -> int:
        if self.messages is None:
            return 0
        handled = 0
        while True:
            try:
                message = self.messages.get_nowait()
            except queue.Empty:
                return handled
            if isinstance(message, dict):
                self.handle_message(message)
                handled += 1

    # -- crash recovery -----------------------------------------------------

    def _children(self) -> List[WorkerRegistration]:
        children = list(self.workers.values())
        if self.balancer is not None:
            children.insert(0, self.balancer)
        return children

    async def reap_exited(self) -> List[str]:
        """
        Re-fork every child that died on its own. Returns the names of the
        children that were restarted.
        """
        if self.stopping:
            return []
        restarted: List[str] = []
        for registration in self._children():
            if registration.state not in (WorkerState.STARTING, WorkerState.READY):
                continue
            if registration.process.is_alive():
                continue
            logger.warning(
                "%s (pid=%s) exited unexpectedly with code %s; restarting",
                registration.name,
                registration.process.pid,
                registration.process.exitcode,
            )
            registration.slot.transition(WorkerState.EXITED)
            self._launch(registration.spec, registration)
            registration.restarts += 1
            if registration.spec.kind == "balancer":
                registration.slot.transition(WorkerState.READY)
            restarted.append(registration.name)
        return restarted

    # -- thresholds ----------------------------------------------------------

    def breach_reason(self, registration: WorkerRegistration, now: float) -> Optional[str]:
        stats = registration.last_stats
        if stats is not None and stats.memory_rss_mb > self.cfg.worker_max_memory_mb:
            return (
                f"memory {stats.memory_rss_mb:.1f}MB over "
                f"{self.cfg.worker_max_memory_mb:.0f}MB"
            )
        uptime = registration.uptime(now)
        if uptime > self.cfg.worker_max_uptime_seconds:
            return f"uptime {uptime / 3600:.1f}h over {self.cfg.worker_max_uptime_seconds / 3600:.1f}h"
        return None

    async def check_thresholds(self, now: Optional[float] = None) -> List[int]:
        """
        Restart READY workers whose last stats exceed the memory ceiling or
        whose uptime exceeds the maximum. Returns the restarted worker ids.
        """
        current = now if now is not None else time.time()
        restarted: List[int] = []
        for worker_id, registration in list(self.workers.items()):
            if self.stopping or registration.state != WorkerState.READY:
                continue
            reason = self.breach_reason(registration, current)
            if reason is None:
                continue
            logger.info("%s over threshold (%s); restarting", registration.name, reason)
            registration.slot.transition(WorkerState.DEGRADED)
            await self.restart_worker(worker_id)
            restarted.append(worker_id)
        return restarted

    async def restart_worker(self, worker_id: int) -> WorkerRegistration:
        registration = self.workers[worker_id]
        registration.slot.transition(WorkerState.RESTARTING)
        process = registration.process
        logger.info("Stopping %s (pid=%s) for restart", registration.name, process.pid)
        process.terminate()
        if not await wait_for_exit(process, self.cfg.restart_grace_seconds):
            logger.warning("Force killing %s (pid=%s)", registration.name, process.pid)
            process.kill()
            await wait_for_exit(process, 1.0)
        self._launch(registration.spec, registration)
        registration.restarts += 1
        return registration

    # -- shutdown ------------------------------------------------------------

    def _begin_stop(self, registration: WorkerRegistration) -> None:
        try:
            if registration.state == WorkerState.EXITED:
                registration.slot.transition(WorkerState.STOPPED)
                return
            registration.slot.transition(WorkerState.STOPPING)
        except InvalidTransition:
            logger.debug("%s already %s", registration.name, registration.state.value)
            return
        if registration.process.is_alive():
            registration.process.terminate()

    async def shutdown(self) -> None:
        if self.stopping:
            return
        self.stopping = True
        logger.info("Supervisor shutting down")

        if self.balancer is not None:
            self._begin_stop(self.balancer)
            await asyncio.sleep(self.cfg.shutdown_stagger_seconds)

        for registration in self.workers.values():
            self._begin_stop(registration)

        stopping = [r for r in self._children() if r.state == WorkerState.STOPPING]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.cfg.shutdown_grace_seconds
        for registration in stopping:
            remaining = max(0.0, deadline - loop.time())
            if not await wait_for_exit(registration.process, remaining):
                logger.warning(
                    "%s (pid=%s) did not stop in time; killing",
                    registration.name,
                    registration.process.pid,
                )
                registration.process.kill()
            registration.slot.transition(WorkerState.STOPPED)
        logger.info("Supervisor stopped %d children", len(stopping))

    # -- main loop -----------------------------------------------------------

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, lambda signum, _frame: loop.call_soon_threadsafe(self._on_signal, signum))

    def _on_signal(self, signum: int) -> None:
        logger.info("Received %s, starting graceful shutdown", signal.Signals(signum).name)
        self.request_stop()

    async def run(self) -> None:
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()
        loop = asyncio.get_running_loop()
        await self.start()
        next_threshold_check = loop.time() + self.cfg.threshold_check_interval_seconds
        try:
            while not self._stop_event.is_set():
                self.poll_messages()
                await self.reap_exited()
                if loop.time() >= next_threshold_check:
                    await self.check_thresholds()
                    next_threshold_check = loop.time() + self.cfg.threshold_check_interval_seconds
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=0.5)
                except TimeoutError:
                    pass
        finally:
            await self.shutdown()

    def status(self) -> List[Dict[str, object]]:
        return [r.summary() for r in self._children()]


__all__ = ["ProcessFactory", "ProcessSupervisor", "wait_for_exit", "wait_for_port"]
