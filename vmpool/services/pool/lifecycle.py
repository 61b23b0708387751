"""MachineLifecycle - per-machine operations of the pool state machine.

Each operation handles exactly one machine and is dispatched as its own task
by the orchestrator or a task queue worker. Queue membership is the
concurrency boundary: every transition is a single atomic store primitive.

See: PoolOrchestrator for the order in which queues are visited.
"""

from __future__ import annotations

import secrets
import string
import time
from typing import TYPE_CHECKING

import structlog

from vmpool.errors import InvalidDiskSizeError
from vmpool.models import SNAPSHOT_FIELD_PREFIX
from vmpool.store.base import Queue
from vmpool.utils.datetime import ensure_utc, minutes_since, parse_timestamp, to_timestamp, today, utcnow

if TYPE_CHECKING:
    from vmpool.config import PoolConfig
    from vmpool.providers.base import Provider
    from vmpool.runtime import Runtime

logger = structlog.get_logger()

_NAME_ALPHABET = string.ascii_lowercase + string.digits
# Random characters appended to the configured prefix
_NAME_LENGTH = 15


class MachineLifecycle:
    """Lifecycle checks and operations for individual machines."""

    def __init__(self, runtime: "Runtime") -> None:
        self._runtime = runtime
        self._store = runtime.store
        self._keys = runtime.keys
        self._metrics = runtime.metrics
        self._config = runtime.settings.pool_manager
        self._log = logger.bind(service="lifecycle")

    # Queue helpers

    async def move_vm_queue(
        self,
        pool_name: str,
        vm_name: str,
        queue_from: Queue,
        queue_to: Queue,
        reason: str,
    ) -> bool:
        moved = await self._store.smove(
            self._keys.queue(queue_from, pool_name),
            self._keys.queue(queue_to, pool_name),
            vm_name,
        )
        self._log.info(
            "vm.moved",
            pool=pool_name,
            vm=vm_name,
            queue_from=queue_from.value,
            queue_to=queue_to.value,
            reason=reason,
            moved=moved,
        )
        return moved

    # Pending

    async def check_pending_vm(
        self,
        vm_name: str,
        pool_name: str,
        timeout: int,
        provider: "Provider",
    ) -> None:
        """Promote a pending machine to ready or fail it after timeout.

        A provider error runs the timeout path before propagating.
        """
        try:
            await self._check_pending_vm(vm_name, pool_name, timeout, provider)
        except Exception:
            await self.fail_pending_vm(vm_name, pool_name, timeout)
            raise

    async def _check_pending_vm(
        self,
        vm_name: str,
        pool_name: str,
        timeout: int,
        provider: "Provider",
    ) -> None:
        info = await provider.get_vm(pool_name, vm_name)
        if info is None:
            await self.fail_pending_vm(vm_name, pool_name, timeout, exists=False)
            return

        if info.hostname == vm_name and await provider.vm_ready(pool_name, vm_name):
            await self.move_pending_vm_to_ready(vm_name, pool_name)
        else:
            await self.fail_pending_vm(vm_name, pool_name, timeout)

    async def fail_pending_vm(
        self,
        vm_name: str,
        pool_name: str,
        timeout: int,
        exists: bool = True,
    ) -> bool:
        """Fail a pending machine whose clone started more than timeout minutes ago.

        Returns:
            False if the clone timestamp could not be evaluated, True otherwise
            (including "not timed out yet")
        """
        clone_stamp = await self._store.hget(self._keys.vm(vm_name), "clone")
        if not clone_stamp:
            return True

        try:
            time_since_clone = minutes_since(clone_stamp)
        except ValueError as exc:
            self._log.warning(
                "pending.bad_clone_stamp",
                pool=pool_name,
                vm=vm_name,
                clone=clone_stamp,
                error=str(exc),
            )
            return False

        if time_since_clone <= timeout:
            return True

        if exists:
            await self._store.smove(
                self._keys.queue(Queue.PENDING, pool_name),
                self._keys.queue(Queue.COMPLETED, pool_name),
                vm_name,
            )
            self._metrics.failed(pool_name)
            self._log.info("pending.failed", pool=pool_name, vm=vm_name, timeout=timeout)
        else:
            await self.remove_nonexistent_vm(vm_name, pool_name)
        return True

    async def remove_nonexistent_vm(self, vm_name: str, pool_name: str) -> None:
        await self._store.srem(self._keys.queue(Queue.PENDING, pool_name), vm_name)
        self._log.info("pending.vm_missing_removed", pool=pool_name, vm=vm_name)

    async def move_pending_vm_to_ready(self, vm_name: str, pool_name: str) -> bool:
        vm_key = self._keys.vm(vm_name)
        clone_stamp = await self._store.hget(vm_key, "clone")
        finish: float | None = None
        if clone_stamp:
            try:
                finish = round((utcnow() - parse_timestamp(clone_stamp)).total_seconds(), 2)
            except ValueError:
                self._log.warning("pending.bad_clone_stamp", pool=pool_name, vm=vm_name)

        moved = await self._store.smove(
            self._keys.queue(Queue.PENDING, pool_name),
            self._keys.queue(Queue.READY, pool_name),
            vm_name,
        )
        if not moved:
            return False

        await self._store.hset(vm_key, "ready", to_timestamp(utcnow()))
        # No boot sample is written when the clone start is unknown
        if finish is not None:
            await self._store.hset(
                self._keys.boot_stats(today()),
                f"{pool_name}:{vm_name}",
                f"{finish:.2f}",
            )
            self._metrics.timing("clonetoready", pool_name, finish)

        self._log.info("pending.moved_to_ready", pool=pool_name, vm=vm_name, seconds=finish)
        return True

    # Ready

    async def check_ready_vm(
        self,
        vm_name: str,
        pool_name: str,
        ttl: int,
        provider: "Provider",
    ) -> None:
        """Periodic health check of a ready machine."""
        vm_key = self._keys.vm(vm_name)
        check_stamp = await self._store.hget(vm_key, "check")
        if check_stamp:
            try:
                if minutes_since(check_stamp) <= self._config.vm_checktime:
                    return
            except ValueError:
                self._log.warning("ready.bad_check_stamp", pool=pool_name, vm=vm_name)

        ready_key = self._keys.queue(Queue.READY, pool_name)
        info = await provider.get_vm(pool_name, vm_name)
        if info is None:
            await self._store.srem(ready_key, vm_name)
            self._log.info("ready.vm_missing_removed", pool=pool_name, vm=vm_name)
            return

        if ttl > 0 and info.boot_time is not None:
            age_minutes = (utcnow() - ensure_utc(info.boot_time)).total_seconds() / 60
            if age_minutes > ttl:
                await self.move_vm_queue(
                    pool_name, vm_name, Queue.READY, Queue.COMPLETED,
                    f"reached end of TTL after {ttl} minutes",
                )
                return

        if not info.powered_on:
            await self.move_vm_queue(
                pool_name, vm_name, Queue.READY, Queue.COMPLETED, "appears to be powered off",
            )
            return

        if info.hostname != vm_name:
            await self.move_vm_queue(
                pool_name, vm_name, Queue.READY, Queue.COMPLETED, "has mismatched hostname",
            )
            return

        try:
            ready = await provider.vm_ready(pool_name, vm_name)
        except Exception as exc:
            self._log.warning("ready.probe_failed", pool=pool_name, vm=vm_name, error=str(exc))
            ready = False
        if not ready:
            await self.move_vm_queue(
                pool_name, vm_name, Queue.READY, Queue.COMPLETED, "is unreachable",
            )
            return

        await self._store.hset(vm_key, "check", to_timestamp(utcnow()))

    # Running

    async def check_running_vm(
        self,
        vm_name: str,
        pool_name: str,
        lifetime: int,
        provider: "Provider",
    ) -> None:
        """Complete a checked-out machine once it outlives lifetime hours."""
        info = await provider.get_vm(pool_name, vm_name)
        if info is None:
            return

        checkout = await self._store.hget(self._keys.active(pool_name), vm_name)
        if not checkout:
            return

        try:
            running_hours = minutes_since(checkout) / 60
        except ValueError:
            self._log.warning("running.bad_checkout_stamp", pool=pool_name, vm=vm_name)
            return

        if lifetime > 0 and int(running_hours) >= lifetime:
            await self.move_vm_queue(
                pool_name, vm_name, Queue.RUNNING, Queue.COMPLETED,
                f"reached end of TTL after {lifetime} hours",
            )

    # Clone

    async def generate_vm_name(self) -> str:
        """A machine name not yet known to the store."""
        while True:
            # First character is always a letter so the name is a valid hostname
            suffix = secrets.choice(string.ascii_lowercase) + "".join(
                secrets.choice(_NAME_ALPHABET) for _ in range(_NAME_LENGTH - 1)
            )
            vm_name = f"{self._config.prefix}{suffix}"
            if await self._store.hget(self._keys.vm(vm_name), "pool") is None:
                return vm_name

    async def clone_vm(self, pool: "PoolConfig", provider: "Provider") -> str:
        """Clone one machine into the pool's pending queue.

        The clone admission counter must have been incremented by the caller;
        it is decremented here exactly once whatever the outcome.

        Raises:
            Exception: Provider failures, after the machine is deregistered
        """
        try:
            return await self._clone_vm(pool, provider)
        finally:
            await self._store.decr(self._keys.clone_tasks)

    async def _clone_vm(self, pool: "PoolConfig", provider: "Provider") -> str:
        pool_name = pool.name
        vm_name = await self.generate_vm_name()
        vm_key = self._keys.vm(vm_name)
        pending_key = self._keys.queue(Queue.PENDING, pool_name)

        await self._store.sadd(pending_key, vm_name)
        await self._store.hset(vm_key, "clone", to_timestamp(utcnow()))
        await self._store.hset(vm_key, "pool", pool_name)

        self._log.info("clone.start", pool=pool_name, vm=vm_name)
        start = time.monotonic()
        try:
            await provider.create_vm(pool_name, vm_name)
        except Exception as exc:
            self._log.error("clone.failed", pool=pool_name, vm=vm_name, error=str(exc))
            await self._store.srem(pending_key, vm_name)
            await self._store.expire(vm_key, self._runtime.settings.redis.data_ttl * 60 * 60)
            raise

        finish = round(time.monotonic() - start, 2)
        await self._store.hset(self._keys.clone_stats(today()), f"{pool_name}:{vm_name}", f"{finish:.2f}")
        await self._store.hset(vm_key, "clone_time", f"{finish:.2f}")
        self._metrics.timing("clone", pool_name, finish)
        self._log.info("clone.completed", pool=pool_name, vm=vm_name, seconds=finish)
        return vm_name

    # Destroy

    async def destroy_vm(self, vm_name: str, pool_name: str, provider: "Provider") -> None:
        vm_key = self._keys.vm(vm_name)
        await self._store.srem(self._keys.queue(Queue.COMPLETED, pool_name), vm_name)
        await self._store.hdel(self._keys.active(pool_name), vm_name)
        await self._store.hset(vm_key, "destroy", to_timestamp(utcnow()))
        # Keep the record around for diagnostics
        await self._store.expire(vm_key, self._runtime.settings.redis.data_ttl * 60 * 60)

        start = time.monotonic()
        await provider.destroy_vm(pool_name, vm_name)
        finish = round(time.monotonic() - start, 2)

        self._metrics.timing("destroy", pool_name, finish)
        self._log.info("destroy.completed", pool=pool_name, vm=vm_name, seconds=finish)

    async def purge_vm(self, vm_name: str, pool_name: str) -> None:
        """Drop every trace of a completed machine the provider no longer has."""
        await self._store.srem(self._keys.queue(Queue.COMPLETED, pool_name), vm_name)
        await self._store.hdel(self._keys.active(pool_name), vm_name)
        await self._store.delete(self._keys.vm(vm_name))

    # Disks and snapshots

    async def create_vm_disk(
        self,
        pool_name: str,
        vm_name: str,
        disk_size: str,
        provider: "Provider",
    ) -> bool:
        """Attach a disk of disk_size gigabytes.

        Raises:
            InvalidDiskSizeError: If disk_size is not a positive integer
        """
        try:
            size = int(disk_size)
        except (TypeError, ValueError):
            size = 0
        if size <= 0:
            raise InvalidDiskSizeError(f"Invalid disk size of '{disk_size}' passed", disk_size=disk_size)

        self._log.info("disk.attaching", pool=pool_name, vm=vm_name, size_gb=size)
        start = time.monotonic()
        result = await provider.create_disk(pool_name, vm_name, size)
        finish = round(time.monotonic() - start, 2)

        if not result:
            self._log.warning("disk.attach_failed", pool=pool_name, vm=vm_name, size_gb=size)
            return False

        vm_key = self._keys.vm(vm_name)
        current = await self._store.hget(vm_key, "disk")
        disks = current.split(":") if current else []
        disks.append(f"+{size}gb")
        await self._store.hset(vm_key, "disk", ":".join(disks))
        self._log.info("disk.attached", pool=pool_name, vm=vm_name, size_gb=size, seconds=finish)
        return True

    async def create_vm_snapshot(
        self,
        pool_name: str,
        vm_name: str,
        snapshot_name: str,
        provider: "Provider",
    ) -> bool:
        self._log.info("snapshot.creating", pool=pool_name, vm=vm_name, snapshot=snapshot_name)
        start = time.monotonic()
        result = await provider.create_snapshot(pool_name, vm_name, snapshot_name)
        finish = round(time.monotonic() - start, 2)

        if not result:
            self._log.warning("snapshot.create_failed", pool=pool_name, vm=vm_name, snapshot=snapshot_name)
            return False

        await self._store.hset(
            self._keys.vm(vm_name),
            f"{SNAPSHOT_FIELD_PREFIX}{snapshot_name}",
            to_timestamp(utcnow()),
        )
        self._log.info("snapshot.created", pool=pool_name, vm=vm_name, snapshot=snapshot_name, seconds=finish)
        return True

    async def revert_vm_snapshot(
        self,
        pool_name: str,
        vm_name: str,
        snapshot_name: str,
        provider: "Provider",
    ) -> bool:
        self._log.info("snapshot.reverting", pool=pool_name, vm=vm_name, snapshot=snapshot_name)
        start = time.monotonic()
        result = await provider.revert_snapshot(pool_name, vm_name, snapshot_name)
        finish = round(time.monotonic() - start, 2)

        if result:
            self._log.info("snapshot.reverted", pool=pool_name, vm=vm_name, snapshot=snapshot_name, seconds=finish)
        else:
            self._log.warning("snapshot.revert_failed", pool=pool_name, vm=vm_name, snapshot=snapshot_name)
        return bool(result)
