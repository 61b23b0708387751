"""Disk and snapshot task queue workers.

Requests are pushed by external clients as "<vm>:<param>" members of the
tasks:disk, tasks:snapshot and tasks:snapshot-revert sets. Each tick pops at
most one request per queue, resolves the machine's pool and provider, and
dispatches the operation as its own task.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from vmpool.errors import TaskRequestError
from vmpool.services.pool.lifecycle import MachineLifecycle
from vmpool.utils.timer import WakeableTimer

if TYPE_CHECKING:
    from vmpool.providers.base import Provider
    from vmpool.runtime import Runtime

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class TaskRequest:
    """A resolved task queue request."""

    vm_name: str
    param: str
    pool_name: str
    provider: "Provider"


def split_request(raw: str) -> tuple[str, str]:
    """Split "<vm>:<param>" at the first colon.

    Raises:
        TaskRequestError: If either part is missing
    """
    vm_name, sep, param = raw.partition(":")
    if not sep or not vm_name or not param:
        raise TaskRequestError(f"Malformed task request '{raw}'", request=raw)
    return vm_name, param


Operation = Callable[[str, str, str, "Provider"], Awaitable[bool]]


class TaskQueueWorker:
    """Consumes the disk and snapshot request queues."""

    def __init__(
        self,
        runtime: "Runtime",
        *,
        lifecycle: MachineLifecycle | None = None,
    ) -> None:
        self._runtime = runtime
        self._store = runtime.store
        self._keys = runtime.keys
        self._config = runtime.settings.pool_manager
        self.lifecycle = lifecycle or MachineLifecycle(runtime)
        self._timers: list[WakeableTimer] = []
        self._stopping = False
        self._log = logger.bind(service="task_queue")

    async def resolve(self, raw: str) -> TaskRequest:
        """Resolve a raw request to its pool and provider.

        Raises:
            TaskRequestError: If the request is malformed or the machine's
                pool or provider is unknown
        """
        vm_name, param = split_request(raw)

        pool_name = (await self._runtime.machine_record(vm_name)).pool
        if not pool_name:
            raise TaskRequestError(f"No pool recorded for VM {vm_name}", vm=vm_name)

        provider = self._runtime.provider_for_pool(pool_name)
        if provider is None:
            raise TaskRequestError(
                f"No provider bound to pool {pool_name}",
                vm=vm_name,
                pool=pool_name,
            )
        return TaskRequest(vm_name=vm_name, param=param, pool_name=pool_name, provider=provider)

    async def _process(self, queue_key: str, kind: str, operation: Operation) -> bool:
        """Pop and dispatch one request from queue_key.

        Returns:
            True if a request was popped (even if it had to be dropped)
        """
        raw = await self._store.spop(queue_key)
        if raw is None:
            return False

        try:
            request = await self.resolve(raw)
        except TaskRequestError as exc:
            self._log.error("task.request_dropped", kind=kind, request=raw, error=str(exc))
            return True

        self._runtime.spawner.spawn(
            self._run(kind, request, operation),
            name=f"{kind}:{request.pool_name}:{request.vm_name}",
            operation=kind,
            pool=request.pool_name,
            vm=request.vm_name,
        )
        return True

    async def _run(self, kind: str, request: TaskRequest, operation: Operation) -> None:
        try:
            await operation(request.pool_name, request.vm_name, request.param, request.provider)
        except Exception as exc:
            self._log.error(
                "task.failed",
                kind=kind,
                pool=request.pool_name,
                vm=request.vm_name,
                param=request.param,
                error=str(exc),
            )

    async def check_disk_queue(self) -> bool:
        return await self._process(self._keys.disk_tasks, "disk", self.lifecycle.create_vm_disk)

    async def check_snapshot_queue(self) -> bool:
        """Serve one snapshot and one snapshot-revert request."""
        created = await self._process(
            self._keys.snapshot_tasks,
            "snapshot",
            self.lifecycle.create_vm_snapshot,
        )
        reverted = await self._process(
            self._keys.snapshot_revert_tasks,
            "snapshot_revert",
            self.lifecycle.revert_vm_snapshot,
        )
        return created or reverted

    async def _loop(self, tick: Callable[[], Awaitable[bool]], name: str, maxloop: int) -> None:
        loop_count = 0
        timer = WakeableTimer(self._config.wakeup_poll_interval)
        self._timers.append(timer)
        self._log.info("task.worker.started", worker=name)

        try:
            while not self._stopping:
                try:
                    await tick()
                except Exception as exc:
                    self._log.error("task.worker.tick_failed", worker=name, error=str(exc))

                loop_count += 1
                if maxloop and loop_count >= maxloop:
                    break
                await timer.sleep(self._config.task_loop_delay)
        finally:
            self._timers.remove(timer)
        self._log.info("task.worker.stopped", worker=name, ticks=loop_count)

    async def run_disk_manager(self, maxloop: int = 0) -> None:
        await self._loop(self.check_disk_queue, "disk_manager", maxloop)

    async def run_snapshot_manager(self, maxloop: int = 0) -> None:
        await self._loop(self.check_snapshot_queue, "snapshot_manager", maxloop)

    def stop(self) -> None:
        self._stopping = True
        for timer in self._timers:
            timer.cancel()
