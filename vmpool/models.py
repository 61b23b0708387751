"""Data models shared by the orchestration services."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime

from vmpool.utils.datetime import parse_timestamp

SNAPSHOT_FIELD_PREFIX = "snapshot:"


@dataclass
class PoolCheckResult:
    """Per-category counts of one pool tick.

    Counts mean "dispatched", not "completed".
    """

    discovered_vms: int = 0
    checked_running_vms: int = 0
    checked_ready_vms: int = 0
    checked_pending_vms: int = 0
    destroyed_vms: int = 0
    migrated_vms: int = 0
    cloned_vms: int = 0

    @property
    def is_busy(self) -> bool:
        """Whether this tick should reset the loop delay to its minimum."""
        return bool(self.cloned_vms or self.checked_pending_vms or self.discovered_vms)

    @property
    def is_empty(self) -> bool:
        return not any(asdict(self).values())

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class MachineRecord:
    """Typed view over a machine's store hash."""

    name: str
    pool: str | None = None
    clone: str | None = None
    clone_time: str | None = None
    ready: str | None = None
    check: str | None = None
    checkout: str | None = None
    destroy: str | None = None
    lifetime: str | None = None
    disk: str | None = None
    migration_time: str | None = None
    checkout_to_migration: str | None = None
    snapshots: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_hash(cls, name: str, data: dict[str, str]) -> "MachineRecord":
        snapshots = {
            key[len(SNAPSHOT_FIELD_PREFIX):]: value
            for key, value in data.items()
            if key.startswith(SNAPSHOT_FIELD_PREFIX)
        }
        return cls(
            name=name,
            pool=data.get("pool"),
            clone=data.get("clone"),
            clone_time=data.get("clone_time"),
            ready=data.get("ready"),
            check=data.get("check"),
            checkout=data.get("checkout"),
            destroy=data.get("destroy"),
            lifetime=data.get("lifetime"),
            disk=data.get("disk"),
            migration_time=data.get("migration_time"),
            checkout_to_migration=data.get("checkout_to_migration"),
            snapshots=snapshots,
        )

    @property
    def disks(self) -> list[str]:
        return self.disk.split(":") if self.disk else []

    @property
    def clone_started_at(self) -> datetime | None:
        return parse_timestamp(self.clone) if self.clone else None
