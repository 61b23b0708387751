"""Supervisor - keeps every worker task alive.

Workers:
- disk_manager / snapshot_manager: task queue consumers
- host_selector: periodic host candidate refresh
- pool:<name>: one PoolOrchestrator per configured pool

A worker that exits or dies is restarted on the next sweep.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from vmpool.services.hosts.selector import HostSelector
from vmpool.services.migration.workflow import MigrationWorkflow
from vmpool.services.pool.lifecycle import MachineLifecycle
from vmpool.services.pool.orchestrator import PoolOrchestrator
from vmpool.services.tasks.queue import TaskQueueWorker
from vmpool.utils.timer import WakeableTimer

if TYPE_CHECKING:
    from vmpool.runtime import Runtime

logger = structlog.get_logger()

WorkerFactory = Callable[[], Awaitable[None]]


class Supervisor:
    """Starts the worker tasks and restarts any that stop."""

    def __init__(self, runtime: "Runtime") -> None:
        self._runtime = runtime
        self._config = runtime.settings.pool_manager
        self._log = logger.bind(service="supervisor")

        lifecycle = MachineLifecycle(runtime)
        self.host_selector = HostSelector(runtime)
        self.migration = MigrationWorkflow(runtime, self.host_selector)
        self.task_queue = TaskQueueWorker(runtime, lifecycle=lifecycle)
        self.orchestrators = {
            pool.name: PoolOrchestrator(
                runtime,
                pool,
                migration=self.migration,
                lifecycle=lifecycle,
            )
            for pool in runtime.settings.pools
        }

        self.workers: dict[str, asyncio.Task] = {}
        self.restarts = 0
        self._timer = WakeableTimer()
        self._stopping = False

    def worker_factories(self) -> dict[str, WorkerFactory]:
        factories: dict[str, WorkerFactory] = {
            "disk_manager": self.task_queue.run_disk_manager,
            "snapshot_manager": self.task_queue.run_snapshot_manager,
            "host_selector": self._run_host_selector,
        }
        for name, orchestrator in self.orchestrators.items():
            factories[f"pool:{name}"] = orchestrator.run
        return factories

    async def _run_host_selector(self) -> None:
        timer = WakeableTimer()
        while not self._stopping:
            await self.host_selector.run_once()
            await timer.sleep(self._runtime.settings.host_selector.loop_delay)

    def check_workers(self) -> int:
        """Start missing workers and restart dead ones.

        Returns:
            Number of workers (re)started
        """
        started = 0
        for name, factory in self.worker_factories().items():
            task = self.workers.get(name)
            if task is not None and not task.done():
                continue

            if task is not None:
                self.restarts += 1
                if task.cancelled():
                    self._log.warning("worker.restarted", worker=name, reason="cancelled")
                elif task.exception() is not None:
                    exc = task.exception()
                    self._log.error(
                        "worker.restarted",
                        worker=name,
                        reason="failed",
                        error=str(exc),
                        exc_info=exc,
                    )
                else:
                    self._log.warning("worker.restarted", worker=name, reason="exited")

            self.workers[name] = asyncio.create_task(factory(), name=name)
            started += 1
        return started

    async def execute(self, maxloop: int = 0) -> None:
        """Supervise workers until stop() (or for maxloop sweeps)."""
        loop_count = 0
        self._log.info(
            "supervisor.started",
            pools=list(self.orchestrators),
            task_limit=self._config.task_limit,
            migration_limit=self.migration.limit,
        )

        while not self._stopping:
            self.check_workers()

            loop_count += 1
            if maxloop and loop_count >= maxloop:
                break
            await self._timer.sleep(self._config.supervisor_loop_delay)

    async def stop(self, drain_timeout: float | None = 30) -> None:
        """Stop every worker, then wait for in-flight machine tasks."""
        self._log.info("supervisor.stopping")
        self._stopping = True
        self._timer.cancel()
        self.task_queue.stop()
        for orchestrator in self.orchestrators.values():
            orchestrator.stop()

        tasks = list(self.workers.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.workers.clear()

        await self._runtime.spawner.drain(timeout=drain_timeout)
        self._log.info("supervisor.stopped", pending=self._runtime.spawner.pending)
