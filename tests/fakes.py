"""In-memory fakes for unit tests."""

from __future__ import annotations

import asyncio
import random

from vmpool.providers.base import MachineInfo
from vmpool.providers.dummy import DummyMachine, DummyProvider
from vmpool.store.base import Store


class FakeStore(Store):
    """Store keeping sets, hashes and strings in dicts.

    Expiries are recorded in ``expiries`` but never enforced.
    """

    def __init__(self) -> None:
        self.sets: dict[str, set[str]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.strings: dict[str, str] = {}
        self.expiries: dict[str, int] = {}
        self.closed = False

    # Sets

    async def sadd(self, key: str, member: str) -> bool:
        members = self.sets.setdefault(key, set())
        if member in members:
            return False
        members.add(member)
        return True

    async def srem(self, key: str, member: str) -> bool:
        members = self.sets.get(key, set())
        if member not in members:
            return False
        members.discard(member)
        return True

    async def smove(self, src: str, dst: str, member: str) -> bool:
        if member not in self.sets.get(src, set()):
            return False
        self.sets[src].discard(member)
        self.sets.setdefault(dst, set()).add(member)
        return True

    async def sismember(self, key: str, member: str) -> bool:
        return member in self.sets.get(key, set())

    async def smembers(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    async def scard(self, key: str) -> int:
        return len(self.sets.get(key, set()))

    async def spop(self, key: str) -> str | None:
        members = self.sets.get(key)
        if not members:
            return None
        member = random.choice(sorted(members))
        members.discard(member)
        return member

    # Hashes

    async def hget(self, key: str, field: str) -> str | None:
        return self.hashes.get(key, {}).get(field)

    async def hset(self, key: str, field: str, value: str) -> None:
        self.hashes.setdefault(key, {})[field] = str(value)

    async def hdel(self, key: str, field: str) -> None:
        self.hashes.get(key, {}).pop(field, None)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    # Plain keys and counters

    async def get(self, key: str) -> str | None:
        return self.strings.get(key)

    async def set(
        self,
        key: str,
        value: str,
        *,
        ex: int | None = None,
        nx: bool = False,
    ) -> bool:
        if nx and key in self.strings:
            return False
        self.strings[key] = str(value)
        if ex is not None:
            self.expiries[key] = ex
        return True

    async def delete(self, key: str) -> None:
        self.sets.pop(key, None)
        self.hashes.pop(key, None)
        self.strings.pop(key, None)
        self.expiries.pop(key, None)

    async def incr(self, key: str) -> int:
        value = int(self.strings.get(key, "0")) + 1
        self.strings[key] = str(value)
        return value

    async def decr(self, key: str) -> int:
        value = int(self.strings.get(key, "0")) - 1
        self.strings[key] = str(value)
        return value

    async def delete_if_equal(self, key: str, value: str) -> bool:
        if self.strings.get(key) != value:
            return False
        await self.delete(key)
        return True

    async def expire(self, key: str, seconds: int) -> None:
        self.expiries[key] = seconds

    async def close(self) -> None:
        self.closed = True

    # Test helpers

    def members(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))


class YieldingStore(FakeStore):
    """FakeStore that hands control to the event loop before every call,
    the way a networked store does."""

    async def sadd(self, key: str, member: str) -> bool:
        await asyncio.sleep(0)
        return await super().sadd(key, member)

    async def srem(self, key: str, member: str) -> bool:
        await asyncio.sleep(0)
        return await super().srem(key, member)

    async def smove(self, src: str, dst: str, member: str) -> bool:
        await asyncio.sleep(0)
        return await super().smove(src, dst, member)

    async def scard(self, key: str) -> int:
        await asyncio.sleep(0)
        return await super().scard(key)

    async def hget(self, key: str, field: str) -> str | None:
        await asyncio.sleep(0)
        return await super().hget(key, field)

    async def hset(self, key: str, field: str, value: str) -> None:
        await asyncio.sleep(0)
        await super().hset(key, field, value)

    async def incr(self, key: str) -> int:
        await asyncio.sleep(0)
        return await super().incr(key)

    async def decr(self, key: str) -> int:
        await asyncio.sleep(0)
        return await super().decr(key)


class FakeProvider(DummyProvider):
    """DummyProvider that records calls and can be told to fail."""

    def __init__(self, name: str = "fake", options: dict | None = None) -> None:
        super().__init__(name, options)
        self.calls: list[tuple] = []
        # method name -> exception raised on the next calls to it
        self.failures: dict[str, Exception] = {}

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        exc = self.failures.get(method)
        if exc is not None:
            raise exc

    def calls_to(self, method: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == method]

    def add_machine(self, pool_name: str, vm_name: str, **info) -> MachineInfo:
        """Put a machine into the backend without going through create_vm."""
        info.setdefault("hostname", vm_name)
        machine_info = MachineInfo(name=vm_name, pool=pool_name, **info)
        self._pool(pool_name)[vm_name] = DummyMachine(info=machine_info)
        return machine_info

    def set_ready(self, pool_name: str, vm_name: str, ready: bool) -> None:
        self._pool(pool_name)[vm_name].ready = ready

    async def vms_in_pool(self, pool_name: str) -> list[str]:
        self._record("vms_in_pool", pool_name)
        return await super().vms_in_pool(pool_name)

    async def get_vm(self, pool_name: str, vm_name: str) -> MachineInfo | None:
        self._record("get_vm", pool_name, vm_name)
        return await super().get_vm(pool_name, vm_name)

    async def vm_ready(self, pool_name: str, vm_name: str) -> bool:
        self._record("vm_ready", pool_name, vm_name)
        return await super().vm_ready(pool_name, vm_name)

    async def create_vm(self, pool_name: str, vm_name: str) -> MachineInfo:
        self._record("create_vm", pool_name, vm_name)
        return await super().create_vm(pool_name, vm_name)

    async def destroy_vm(self, pool_name: str, vm_name: str) -> bool:
        self._record("destroy_vm", pool_name, vm_name)
        return await super().destroy_vm(pool_name, vm_name)

    async def create_disk(self, pool_name: str, vm_name: str, disk_size: int) -> bool:
        self._record("create_disk", pool_name, vm_name, disk_size)
        return await super().create_disk(pool_name, vm_name, disk_size)

    async def create_snapshot(self, pool_name: str, vm_name: str, snapshot_name: str) -> bool:
        self._record("create_snapshot", pool_name, vm_name, snapshot_name)
        return await super().create_snapshot(pool_name, vm_name, snapshot_name)

    async def revert_snapshot(self, pool_name: str, vm_name: str, snapshot_name: str) -> bool:
        self._record("revert_snapshot", pool_name, vm_name, snapshot_name)
        return await super().revert_snapshot(pool_name, vm_name, snapshot_name)

    async def get_vm_host(self, pool_name: str, vm_name: str) -> str | None:
        self._record("get_vm_host", pool_name, vm_name)
        return await super().get_vm_host(pool_name, vm_name)

    async def rank_hosts(self, cluster: str, *, utilization_limit: float = 80.0):
        self._record("rank_hosts", cluster)
        return await super().rank_hosts(cluster, utilization_limit=utilization_limit)

    async def relocate(self, vm_name: str, target_host: str) -> float:
        self._record("relocate", vm_name, target_host)
        return await super().relocate(vm_name, target_host)

