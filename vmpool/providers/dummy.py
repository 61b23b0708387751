"""In-memory provider for development and tests.

Supported options:
- create_delay: seconds a clone takes (default 0)
- hosts: list of {name, cluster, utilization, compat_class,
  maintenance, healthy} used for placement
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from vmpool.errors import MachineNotFoundError, ProviderError
from vmpool.providers.base import HostUtilization, MachineInfo, Provider
from vmpool.utils.datetime import utcnow

logger = structlog.get_logger()


@dataclass
class DummyHost:
    name: str
    cluster: str = "cluster1"
    utilization: float = 10.0
    compat_class: str = "v1"
    maintenance: bool = False
    healthy: bool = True


@dataclass
class DummyMachine:
    info: MachineInfo
    ready: bool = True
    disks: list[int] = field(default_factory=list)
    snapshots: list[str] = field(default_factory=list)


class DummyProvider(Provider):
    """Provider that keeps all machines in process memory."""

    def __init__(self, name: str = "dummy", options: dict[str, Any] | None = None) -> None:
        super().__init__(name, options)
        self._log = logger.bind(provider=name)
        self._create_delay = float(self.options.get("create_delay", 0))
        self.machines: dict[str, dict[str, DummyMachine]] = {}
        self.hosts: dict[str, DummyHost] = {}
        for host in self.options.get("hosts", []):
            dummy_host = DummyHost(**host)
            self.hosts[dummy_host.name] = dummy_host

    def _pool(self, pool_name: str) -> dict[str, DummyMachine]:
        return self.machines.setdefault(pool_name, {})

    def _find(self, vm_name: str) -> DummyMachine | None:
        for machines in self.machines.values():
            if vm_name in machines:
                return machines[vm_name]
        return None

    def _pick_host(self) -> str | None:
        usable = [h for h in self.hosts.values() if not h.maintenance and h.healthy]
        if not usable:
            return None
        return min(usable, key=lambda h: h.utilization).name

    async def vms_in_pool(self, pool_name: str) -> list[str]:
        return list(self._pool(pool_name))

    async def get_vm(self, pool_name: str, vm_name: str) -> MachineInfo | None:
        machine = self._pool(pool_name).get(vm_name)
        return machine.info if machine else None

    async def vm_ready(self, pool_name: str, vm_name: str) -> bool:
        machine = self._pool(pool_name).get(vm_name)
        return bool(machine and machine.ready and machine.info.powered_on)

    async def create_vm(self, pool_name: str, vm_name: str) -> MachineInfo:
        machines = self._pool(pool_name)
        if vm_name in machines:
            raise ProviderError(f"Machine {vm_name} already exists in pool {pool_name}")

        self._log.debug("dummy.create", pool=pool_name, vm=vm_name)
        if self._create_delay:
            await asyncio.sleep(self._create_delay)

        info = MachineInfo(
            name=vm_name,
            hostname=vm_name,
            powered_on=True,
            boot_time=utcnow(),
            pool=pool_name,
            host=self._pick_host(),
        )
        machines[vm_name] = DummyMachine(info=info)
        return info

    async def destroy_vm(self, pool_name: str, vm_name: str) -> bool:
        machine = self._pool(pool_name).pop(vm_name, None)
        self._log.debug("dummy.destroy", pool=pool_name, vm=vm_name, existed=machine is not None)
        return True

    async def create_disk(self, pool_name: str, vm_name: str, disk_size: int) -> bool:
        machine = self._pool(pool_name).get(vm_name)
        if machine is None:
            raise MachineNotFoundError(f"Machine {vm_name} not found in pool {pool_name}")
        machine.disks.append(disk_size)
        return True

    async def create_snapshot(self, pool_name: str, vm_name: str, snapshot_name: str) -> bool:
        machine = self._pool(pool_name).get(vm_name)
        if machine is None:
            raise MachineNotFoundError(f"Machine {vm_name} not found in pool {pool_name}")
        machine.snapshots.append(snapshot_name)
        return True

    async def revert_snapshot(self, pool_name: str, vm_name: str, snapshot_name: str) -> bool:
        machine = self._pool(pool_name).get(vm_name)
        if machine is None:
            raise MachineNotFoundError(f"Machine {vm_name} not found in pool {pool_name}")
        return snapshot_name in machine.snapshots

    async def get_vm_host(self, pool_name: str, vm_name: str) -> str | None:
        machine = self._pool(pool_name).get(vm_name)
        return machine.info.host if machine else None

    async def get_vm_cluster(self, pool_name: str, vm_name: str) -> str | None:
        host_name = await self.get_vm_host(pool_name, vm_name)
        host = self.hosts.get(host_name) if host_name else None
        return host.cluster if host else None

    async def get_vm_compat_class(self, pool_name: str, vm_name: str) -> str | None:
        host_name = await self.get_vm_host(pool_name, vm_name)
        host = self.hosts.get(host_name) if host_name else None
        return host.compat_class if host else None

    async def rank_hosts(
        self,
        cluster: str,
        *,
        utilization_limit: float = 80.0,
    ) -> list[HostUtilization]:
        ranked = [
            HostUtilization(name=h.name, utilization=h.utilization, compat_class=h.compat_class)
            for h in self.hosts.values()
            if h.cluster == cluster
            and not h.maintenance
            and h.healthy
            and h.utilization <= utilization_limit
        ]
        ranked.sort(key=lambda h: h.utilization)
        return ranked

    async def relocate(self, vm_name: str, target_host: str) -> float:
        machine = self._find(vm_name)
        if machine is None:
            raise MachineNotFoundError(f"Machine {vm_name} not found")
        if target_host not in self.hosts:
            raise ProviderError(f"Unknown host {target_host}")

        start = time.monotonic()
        machine.info.host = target_host
        return time.monotonic() - start
