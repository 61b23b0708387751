"""PoolOrchestrator - per-pool reconciliation loop.

Responsibilities:
1. Reconcile the store's queues with the provider's inventory
2. Dispatch per-machine checks (running, ready, pending, completed, migrating)
3. Replenish the pool to its target size under the global clone limit
4. Sleep adaptively between ticks, waking early when the ready queue changes
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from vmpool.config import (
    CHECK_LOOP_DELAY_DECAY_DEFAULT,
    CHECK_LOOP_DELAY_MAX_DEFAULT,
    CHECK_LOOP_DELAY_MIN_DEFAULT,
)
from vmpool.errors import ConfigurationError, InventoryError
from vmpool.models import PoolCheckResult
from vmpool.services.pool.lifecycle import MachineLifecycle
from vmpool.store.base import LIFECYCLE_QUEUES, Queue
from vmpool.utils.timer import LoopDelay, WakeableTimer

if TYPE_CHECKING:
    from vmpool.config import PoolConfig
    from vmpool.providers.base import Provider
    from vmpool.runtime import Runtime
    from vmpool.services.migration.workflow import MigrationWorkflow

logger = structlog.get_logger()

# Used when neither the machine, the pool nor the global config sets one
DEFAULT_VM_LIFETIME = 12


class PoolOrchestrator:
    """Keeps one pool at its target size and its queues consistent."""

    def __init__(
        self,
        runtime: "Runtime",
        pool: "PoolConfig",
        *,
        migration: "MigrationWorkflow | None" = None,
        lifecycle: MachineLifecycle | None = None,
        provider: "Provider | None" = None,
    ) -> None:
        provider = provider or runtime.provider_for_pool(pool.name)
        if provider is None:
            raise ConfigurationError(
                f"Missing provider for pool {pool.name}",
                pool=pool.name,
                provider=pool.provider,
            )

        self._runtime = runtime
        self._store = runtime.store
        self._keys = runtime.keys
        self._config = runtime.settings.pool_manager
        self.pool = pool
        self.provider = provider
        self.lifecycle = lifecycle or MachineLifecycle(runtime)
        self.migration = migration
        self.timer = WakeableTimer(self._config.wakeup_poll_interval)
        self._stopping = False
        self._log = logger.bind(service="pool_orchestrator", pool=pool.name)

    @property
    def name(self) -> str:
        return self.pool.name

    def _key(self, queue: Queue) -> str:
        return self._keys.queue(queue, self.name)

    def _spawn(self, coro, operation: str, vm_name: str) -> None:
        self._runtime.spawner.spawn(
            coro,
            name=f"{operation}:{self.name}:{vm_name}",
            operation=operation,
            pool=self.name,
            vm=vm_name,
        )

    # Tick

    async def check_pool(self) -> PoolCheckResult:
        """Run one reconciliation tick.

        Per-machine work is dispatched, not awaited, so the counts in the
        result mean "dispatched". An inventory failure abandons the tick and
        returns an all-zero result.
        """
        result = PoolCheckResult()

        try:
            inventory = await self._inventory(result)
        except InventoryError as exc:
            self._log.error("pool.inventory_failed", error=str(exc))
            return PoolCheckResult()

        await self._check_running(inventory, result)
        await self._check_ready(inventory, result)
        await self._check_pending(inventory, result)
        await self._check_completed(inventory, result)
        await self._check_discovered()
        await self._check_migrating(inventory, result)
        await self._repopulate(result)

        return result

    async def _inventory(self, result: PoolCheckResult) -> set[str]:
        try:
            names = await self.provider.vms_in_pool(self.name)
        except Exception as exc:
            raise InventoryError(str(exc), pool=self.name) from exc

        inventory: set[str] = set()
        for vm_name in names:
            inventory.add(vm_name)
            try:
                if await self._is_tracked(vm_name):
                    continue
                await self._store.sadd(self._key(Queue.DISCOVERED), vm_name)
                result.discovered_vms += 1
                self._log.info("pool.vm.discovered", vm=vm_name)
            except Exception as exc:
                self._log.error("pool.vm.discover_failed", vm=vm_name, error=str(exc))
        return inventory

    async def _is_tracked(self, vm_name: str) -> bool:
        for queue in LIFECYCLE_QUEUES:
            if await self._store.sismember(self._key(queue), vm_name):
                return True
        return False

    async def _members(self, queue: Queue) -> list[str]:
        return sorted(await self._store.smembers(self._key(queue)))

    async def _check_running(self, inventory: set[str], result: PoolCheckResult) -> None:
        for vm_name in await self._members(Queue.RUNNING):
            try:
                if vm_name in inventory:
                    lifetime = await self._lifetime_for(vm_name)
                    result.checked_running_vms += 1
                    self._spawn(
                        self.lifecycle.check_running_vm(vm_name, self.name, lifetime, self.provider),
                        "check_running",
                        vm_name,
                    )
                else:
                    await self.lifecycle.move_vm_queue(
                        self.name, vm_name, Queue.RUNNING, Queue.COMPLETED,
                        "is a running VM but is missing from inventory",
                    )
            except Exception as exc:
                self._log.error("pool.running.check_failed", vm=vm_name, error=str(exc))

    async def _lifetime_for(self, vm_name: str) -> int:
        override = (await self._runtime.machine_record(vm_name)).lifetime
        if override:
            try:
                return int(override)
            except ValueError:
                self._log.warning("pool.running.bad_lifetime", vm=vm_name, lifetime=override)
        if self.pool.vm_lifetime is not None:
            return self.pool.vm_lifetime
        return self._config.vm_lifetime or DEFAULT_VM_LIFETIME

    async def _check_ready(self, inventory: set[str], result: PoolCheckResult) -> None:
        ttl = self.pool.ready_ttl or 0
        for vm_name in await self._members(Queue.READY):
            try:
                if vm_name in inventory:
                    result.checked_ready_vms += 1
                    self._spawn(
                        self.lifecycle.check_ready_vm(vm_name, self.name, ttl, self.provider),
                        "check_ready",
                        vm_name,
                    )
                else:
                    await self.lifecycle.move_vm_queue(
                        self.name, vm_name, Queue.READY, Queue.COMPLETED,
                        "is a ready VM but is missing from inventory",
                    )
            except Exception as exc:
                self._log.error("pool.ready.check_failed", vm=vm_name, error=str(exc))

    async def _check_pending(self, inventory: set[str], result: PoolCheckResult) -> None:
        timeout = self.pool.timeout or self._config.timeout or 15
        for vm_name in await self._members(Queue.PENDING):
            try:
                if vm_name in inventory:
                    result.checked_pending_vms += 1
                    self._spawn(
                        self.lifecycle.check_pending_vm(vm_name, self.name, timeout, self.provider),
                        "check_pending",
                        vm_name,
                    )
                else:
                    await self.lifecycle.fail_pending_vm(vm_name, self.name, timeout, exists=False)
            except Exception as exc:
                self._log.error("pool.pending.check_failed", vm=vm_name, error=str(exc))

    async def _check_completed(self, inventory: set[str], result: PoolCheckResult) -> None:
        for vm_name in await self._members(Queue.COMPLETED):
            if vm_name in inventory:
                result.destroyed_vms += 1
                self._spawn(
                    self.lifecycle.destroy_vm(vm_name, self.name, self.provider),
                    "destroy",
                    vm_name,
                )
                continue

            try:
                await self.lifecycle.purge_vm(vm_name, self.name)
                self._log.info("pool.completed.vm_missing_purged", vm=vm_name)
            except Exception as exc:
                self._log.error("pool.completed.purge_failed", vm=vm_name, error=str(exc))

    async def _check_discovered(self) -> None:
        discovered_key = self._key(Queue.DISCOVERED)
        others = [queue for queue in LIFECYCLE_QUEUES if queue is not Queue.DISCOVERED]

        for vm_name in await self._members(Queue.DISCOVERED):
            try:
                tracked_in = None
                for queue in others:
                    if await self._store.sismember(self._key(queue), vm_name):
                        tracked_in = queue
                        break

                if tracked_in is not None:
                    await self._store.srem(discovered_key, vm_name)
                    self._log.info(
                        "pool.discovered.already_tracked",
                        vm=vm_name,
                        queue=tracked_in.value,
                    )
                else:
                    await self.lifecycle.move_vm_queue(
                        self.name, vm_name, Queue.DISCOVERED, Queue.COMPLETED,
                        "was discovered but is not tracked by any queue",
                    )
            except Exception as exc:
                self._log.error("pool.discovered.check_failed", vm=vm_name, error=str(exc))

    async def _check_migrating(self, inventory: set[str], result: PoolCheckResult) -> None:
        for vm_name in await self._members(Queue.MIGRATING):
            try:
                if vm_name not in inventory:
                    await self._store.srem(self._key(Queue.MIGRATING), vm_name)
                    self._log.info("pool.migrating.vm_missing_removed", vm=vm_name)
                    continue
                if self.migration is None:
                    # No workflow wired; leave the request for a worker that has one
                    continue
                result.migrated_vms += 1
                self._spawn(
                    self.migration.migrate_vm(vm_name, self.name, self.provider),
                    "migrate",
                    vm_name,
                )
            except Exception as exc:
                self._log.error("pool.migrating.check_failed", vm=vm_name, error=str(exc))

    # Repopulate

    async def _repopulate(self, result: PoolCheckResult) -> None:
        ready = await self._store.scard(self._key(Queue.READY))
        pending = await self._store.scard(self._key(Queue.PENDING))
        running = await self._store.scard(self._key(Queue.RUNNING))

        metrics = self._runtime.metrics
        metrics.queue_size(Queue.READY.value, self.name, ready)
        metrics.queue_size(Queue.PENDING.value, self.name, pending)
        metrics.queue_size(Queue.RUNNING.value, self.name, running)

        await self._update_empty_flag(ready)

        missing = self.pool.size - (ready + pending)
        for _ in range(max(missing, 0)):
            if not await self._reserve_clone_slot():
                self._log.debug("pool.clone.limit_reached", task_limit=self._config.task_limit)
                break
            try:
                self._spawn(
                    self.lifecycle.clone_vm(self.pool, self.provider),
                    "clone",
                    "new",
                )
            except Exception:
                await self._store.decr(self._keys.clone_tasks)
                raise
            result.cloned_vms += 1

    async def _update_empty_flag(self, ready: int) -> None:
        empty_key = self._keys.empty(self.name)
        flagged = await self._store.get(empty_key)

        if flagged:
            if ready > 0:
                await self._store.delete(empty_key)
                self._log.info("pool.no_longer_empty", ready=ready)
        elif ready == 0 and self.pool.size > 0:
            await self._store.set(empty_key, "true")
            self._log.warning("pool.empty")

    async def _reserve_clone_slot(self) -> bool:
        """Take one slot of the global clone limit.

        The counter is bumped first and bumped back down when that overshoots
        task_limit, so it can read task_limit+1 for a moment and two pools
        racing at the limit may both miss a slot that was just freed. The
        number of clones admitted never exceeds task_limit.
        """
        count = await self._store.incr(self._keys.clone_tasks)
        if count > self._config.task_limit:
            await self._store.decr(self._keys.clone_tasks)
            return False
        return True

    # Loop

    def _loop_delay(self) -> LoopDelay:
        def pick(override, global_value, default):
            if override is not None:
                return override
            return global_value if global_value is not None else default

        return LoopDelay(
            pick(self.pool.check_loop_delay_min, self._config.check_loop_delay_min, CHECK_LOOP_DELAY_MIN_DEFAULT),
            pick(self.pool.check_loop_delay_max, self._config.check_loop_delay_max, CHECK_LOOP_DELAY_MAX_DEFAULT),
            pick(
                self.pool.check_loop_delay_decay,
                self._config.check_loop_delay_decay,
                CHECK_LOOP_DELAY_DECAY_DEFAULT,
            ),
        )

    async def _ready_size_changed(self, baseline: int) -> bool:
        return await self._store.scard(self._key(Queue.READY)) != baseline

    async def run(self, maxloop: int = 0) -> None:
        """Tick forever (or maxloop times), sleeping adaptively in between."""
        delay = self._loop_delay()
        loop_count = 0
        self._log.info("pool.worker.started", size=self.pool.size)

        self._stopping = False
        while not self._stopping:
            result = await self.check_pool()
            seconds = delay.next(result.is_busy)
            self._log.debug("pool.tick", delay=seconds, **result.as_dict())

            loop_count += 1
            if maxloop and loop_count >= maxloop:
                break

            baseline = await self._store.scard(self._key(Queue.READY))
            await self.timer.sleep(seconds, lambda: self._ready_size_changed(baseline))

        self._log.info("pool.worker.stopped", ticks=loop_count)

    def stop(self) -> None:
        """Finish the current tick and leave the loop."""
        self._stopping = True
        self.timer.cancel()
