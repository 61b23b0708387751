"""Provider base class - hypervisor abstraction.

A provider is responsible ONLY for talking to the virtualization backend.
It does NOT handle:
- Queue bookkeeping
- Admission control
- Retries
- Metrics

All methods are coroutines; blocking SDKs should be wrapped with
asyncio.to_thread by the implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class MachineInfo:
    """Machine attributes reported by a provider."""

    name: str
    hostname: str | None = None
    powered_on: bool = True
    boot_time: datetime | None = None
    pool: str | None = None
    host: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class HostUtilization:
    """A hypervisor host eligible for placement.

    utilization is the host's load in percent; compat_class groups hosts
    between which a running machine can be relocated (e.g. CPU generation).
    """

    name: str
    utilization: float
    compat_class: str


class Provider(ABC):
    """Abstract provider interface for machine lifecycle management."""

    def __init__(self, name: str, options: dict[str, Any] | None = None) -> None:
        self.name = name
        self.options = dict(options or {})

    @abstractmethod
    async def vms_in_pool(self, pool_name: str) -> list[str]:
        """List machine names the backend reports for a pool."""
        ...

    @abstractmethod
    async def get_vm(self, pool_name: str, vm_name: str) -> MachineInfo | None:
        """Fetch machine attributes, or None if the machine does not exist."""
        ...

    @abstractmethod
    async def vm_ready(self, pool_name: str, vm_name: str) -> bool:
        """Probe whether the machine accepts connections."""
        ...

    @abstractmethod
    async def create_vm(self, pool_name: str, vm_name: str) -> MachineInfo:
        """Clone a new machine.

        Raises:
            ProviderError: If the clone fails
        """
        ...

    @abstractmethod
    async def destroy_vm(self, pool_name: str, vm_name: str) -> bool:
        ...

    @abstractmethod
    async def create_disk(self, pool_name: str, vm_name: str, disk_size: int) -> bool:
        """Attach an extra disk of disk_size gigabytes."""
        ...

    @abstractmethod
    async def create_snapshot(self, pool_name: str, vm_name: str, snapshot_name: str) -> bool:
        ...

    @abstractmethod
    async def revert_snapshot(self, pool_name: str, vm_name: str, snapshot_name: str) -> bool:
        ...

    # Placement

    @abstractmethod
    async def get_vm_host(self, pool_name: str, vm_name: str) -> str | None:
        """Name of the host the machine is running on."""
        ...

    @abstractmethod
    async def get_vm_cluster(self, pool_name: str, vm_name: str) -> str | None:
        ...

    @abstractmethod
    async def get_vm_compat_class(self, pool_name: str, vm_name: str) -> str | None:
        ...

    @abstractmethod
    async def rank_hosts(
        self,
        cluster: str,
        *,
        utilization_limit: float = 80.0,
    ) -> list[HostUtilization]:
        """Hosts of a cluster sorted by ascending utilization.

        Hosts in maintenance mode, unhealthy, or above utilization_limit are
        excluded.
        """
        ...

    @abstractmethod
    async def relocate(self, vm_name: str, target_host: str) -> float:
        """Move a running machine to target_host.

        Returns:
            Elapsed seconds

        Raises:
            ProviderError: If the relocation fails
        """
        ...

    async def close(self) -> None:
        """Release backend connections (no-op by default)."""
