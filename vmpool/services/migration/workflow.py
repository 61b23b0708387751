"""MigrationWorkflow - bounded-concurrency relocation of running machines.

A checked-out machine placed in the pool's migrating queue is evaluated
once: if the host selector offers a less loaded host than the one it runs
on, the machine is relocated there. The machine never leaves the running
queue; only its migrating entry is consumed.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog

from vmpool.errors import ProviderError
from vmpool.store.base import Queue
from vmpool.utils.datetime import parse_timestamp, utcnow

if TYPE_CHECKING:
    from vmpool.providers.base import Provider
    from vmpool.runtime import Runtime
    from vmpool.services.hosts.selector import HostSelector

logger = structlog.get_logger()


def migration_limit(value: int | bool | None) -> int | None:
    """Effective migration limit, or None when migrations are disabled."""
    if value is None or value is False or value is True:
        return None
    if value < 1:
        return None
    return int(value)


class MigrationWorkflow:
    """Evaluates and performs relocations under the global migration limit."""

    def __init__(self, runtime: "Runtime", host_selector: "HostSelector") -> None:
        self._runtime = runtime
        self._store = runtime.store
        self._keys = runtime.keys
        self._host_selector = host_selector
        self._log = logger.bind(service="migration")

    @property
    def limit(self) -> int | None:
        return migration_limit(self._runtime.settings.pool_manager.migration_limit)

    async def in_flight(self) -> int:
        return await self._store.scard(self._keys.migrations)

    async def migrate_vm(self, vm_name: str, pool_name: str, provider: "Provider") -> None:
        """Consume a migrating entry and relocate the machine if worthwhile.

        Never raises: failures are logged and the in-flight reservation is
        always released.
        """
        log = self._log.bind(pool=pool_name, vm=vm_name)
        await self._store.srem(self._keys.queue(Queue.MIGRATING, pool_name), vm_name)

        limit = self.limit
        if limit is None:
            log.info("migration.disabled")
            return

        if not await self._reserve(vm_name, limit, log):
            return

        try:
            await self._evaluate(vm_name, pool_name, provider)
        except Exception as exc:
            log.error("migration.failed", error=str(exc))
        finally:
            await self._release(vm_name, pool_name)

    async def _reserve(self, vm_name: str, limit: int, log) -> bool:
        """Join the in-flight set, backing out if that overshoots the limit.

        Concurrent reservers may all back out near the limit; none of them
        gets through above it.
        """
        if not await self._store.sadd(self._keys.migrations, vm_name):
            log.info("migration.already_in_flight")
            return False
        in_flight = await self.in_flight()
        if in_flight > limit:
            await self._store.srem(self._keys.migrations, vm_name)
            log.info("migration.limit_reached", in_flight=in_flight - 1, limit=limit)
            return False
        return True

    async def _evaluate(self, vm_name: str, pool_name: str, provider: "Provider") -> None:
        source_host = await provider.get_vm_host(pool_name, vm_name)
        if source_host is None:
            raise ProviderError("Unable to determine which host the VM is running on")

        cluster = await provider.get_vm_cluster(pool_name, vm_name)
        if cluster is None:
            pool = self._runtime.pool_config(pool_name)
            cluster = (pool and pool.clone_target) or self._runtime.settings.pool_manager.clone_target
        if cluster is None:
            raise ProviderError("Unable to determine which cluster the VM is running in")

        compat_class = await provider.get_vm_compat_class(pool_name, vm_name)
        target_host = await self._host_selector.next_host(cluster, compat_class)

        if target_host == source_host:
            self._log.info(
                "migration.not_required",
                pool=pool_name,
                vm=vm_name,
                host=source_host,
            )
            return

        finish = await self._relocate_and_record(vm_name, pool_name, provider, source_host, target_host)
        self._log.info(
            "migration.completed",
            pool=pool_name,
            vm=vm_name,
            source_host=source_host,
            target_host=target_host,
            seconds=finish,
        )

    async def _relocate_and_record(
        self,
        vm_name: str,
        pool_name: str,
        provider: "Provider",
        source_host: str,
        target_host: str,
    ) -> float:
        start = time.monotonic()
        await provider.relocate(vm_name, target_host)
        finish = round(time.monotonic() - start, 2)

        metrics = self._runtime.metrics
        metrics.timing("migrate", pool_name, finish)
        metrics.migrated(source_host, target_host)

        vm_key = self._keys.vm(vm_name)
        await self._store.hset(vm_key, "migration_time", f"{finish:.2f}")

        checkout = await self._store.hget(vm_key, "checkout")
        if checkout:
            try:
                elapsed = (utcnow() - parse_timestamp(checkout)).total_seconds()
            except ValueError:
                self._log.warning("migration.bad_checkout_stamp", vm=vm_name, checkout=checkout)
            else:
                await self._store.hset(vm_key, "checkout_to_migration", f"{elapsed:.2f}")

        return finish

    async def _release(self, vm_name: str, pool_name: str) -> None:
        try:
            await self._store.srem(self._keys.migrations, vm_name)
        except Exception as exc:
            self._log.error(
                "migration.release_failed",
                pool=pool_name,
                vm=vm_name,
                error=str(exc),
            )
