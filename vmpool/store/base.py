"""Store base class - persistent inventory abstraction.

The store is the sole synchronization point between workers. Every queue
transition is a single atomic primitive (sadd/srem/smove); there are no
cross-call transactions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum


class Queue(str, Enum):
    """Lifecycle queues, scoped per pool."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    DISCOVERED = "discovered"
    MIGRATING = "migrating"


LIFECYCLE_QUEUES: tuple[Queue, ...] = tuple(Queue)


class Keys:
    """Logical key layout of the inventory store."""

    def __init__(self, prefix: str = "vmpool") -> None:
        self._prefix = prefix

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    def queue(self, queue: Queue | str, pool: str) -> str:
        return self._key(Queue(queue).value, pool)

    def vm(self, vm_name: str) -> str:
        return self._key("vm", vm_name)

    def active(self, pool: str) -> str:
        return self._key("active", pool)

    def empty(self, pool: str) -> str:
        return self._key("empty", pool)

    def clone_stats(self, day: str) -> str:
        return self._key("clone", day)

    def boot_stats(self, day: str) -> str:
        return self._key("boot", day)

    @property
    def clone_tasks(self) -> str:
        return self._key("tasks", "clone")

    @property
    def disk_tasks(self) -> str:
        return self._key("tasks", "disk")

    @property
    def snapshot_tasks(self) -> str:
        return self._key("tasks", "snapshot")

    @property
    def snapshot_revert_tasks(self) -> str:
        return self._key("tasks", "snapshot-revert")

    @property
    def migrations(self) -> str:
        return self._key("migration")

    @property
    def host_selector_lock(self) -> str:
        return self._key("host_selector", "checking")


class Store(ABC):
    """Abstract key/value + set store.

    All values are strings; implementations decode responses.
    """

    # Sets

    @abstractmethod
    async def sadd(self, key: str, member: str) -> bool:
        """Add member; True if it was not already present."""
        ...

    @abstractmethod
    async def srem(self, key: str, member: str) -> bool:
        """Remove member; True if it was present."""
        ...

    @abstractmethod
    async def smove(self, src: str, dst: str, member: str) -> bool:
        """Atomically move member from src to dst; False if not in src."""
        ...

    @abstractmethod
    async def sismember(self, key: str, member: str) -> bool:
        ...

    @abstractmethod
    async def smembers(self, key: str) -> set[str]:
        ...

    @abstractmethod
    async def scard(self, key: str) -> int:
        ...

    @abstractmethod
    async def spop(self, key: str) -> str | None:
        """Remove and return an arbitrary member, or None when empty."""
        ...

    # Hashes

    @abstractmethod
    async def hget(self, key: str, field: str) -> str | None:
        ...

    @abstractmethod
    async def hset(self, key: str, field: str, value: str) -> None:
        ...

    @abstractmethod
    async def hdel(self, key: str, field: str) -> None:
        ...

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]:
        ...

    # Plain keys and counters

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(
        self,
        key: str,
        value: str,
        *,
        ex: int | None = None,
        nx: bool = False,
    ) -> bool:
        """Set a key, optionally with expiry and only-if-absent.

        Returns False when nx=True and the key already exists.
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def delete_if_equal(self, key: str, value: str) -> bool:
        """Delete key only while it still holds value; True if deleted."""
        ...

    @abstractmethod
    async def incr(self, key: str) -> int:
        ...

    @abstractmethod
    async def decr(self, key: str) -> int:
        ...

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> None:
        ...

    async def close(self) -> None:
        """Release connections (no-op by default)."""
