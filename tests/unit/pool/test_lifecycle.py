"""Unit tests for MachineLifecycle."""

from __future__ import annotations

from datetime import timedelta

import pytest

from vmpool.errors import InvalidDiskSizeError, ProviderError
from vmpool.services.pool import MachineLifecycle
from vmpool.store import Queue
from vmpool.utils.datetime import to_timestamp, utcnow

POOL = "pool1"


def _minutes_ago(minutes: float) -> str:
    return to_timestamp(utcnow() - timedelta(minutes=minutes))


@pytest.fixture
def lifecycle(runtime) -> MachineLifecycle:
    return MachineLifecycle(runtime)


async def _pending(store, keys, vm_name: str, clone_minutes_ago: float | None) -> None:
    await store.sadd(keys.queue(Queue.PENDING, POOL), vm_name)
    if clone_minutes_ago is not None:
        await store.hset(keys.vm(vm_name), "clone", _minutes_ago(clone_minutes_ago))


class TestPendingChecks:
    async def test_ready_machine_is_promoted(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1")
        await _pending(store, keys, "vm1", clone_minutes_ago=2)

        await lifecycle.check_pending_vm("vm1", POOL, 15, provider)

        assert store.members(keys.queue(Queue.READY, POOL)) == {"vm1"}
        assert store.members(keys.queue(Queue.PENDING, POOL)) == set()
        assert await store.hget(keys.vm("vm1"), "ready") is not None
        boot_stats = store.hashes[keys.boot_stats(utcnow().date().isoformat())]
        assert float(boot_stats[f"{POOL}:vm1"]) >= 120

    async def test_promotion_without_clone_stamp_records_no_boot_sample(
        self, lifecycle, store, keys, provider
    ):
        provider.add_machine(POOL, "vm1")
        await _pending(store, keys, "vm1", clone_minutes_ago=None)

        await lifecycle.check_pending_vm("vm1", POOL, 15, provider)

        assert store.members(keys.queue(Queue.READY, POOL)) == {"vm1"}
        assert keys.boot_stats(utcnow().date().isoformat()) not in store.hashes

    async def test_timed_out_machine_moves_to_completed(self, lifecycle, runtime, store, keys, provider):
        provider.add_machine(POOL, "vm1")
        provider.set_ready(POOL, "vm1", False)
        await _pending(store, keys, "vm1", clone_minutes_ago=20)

        await lifecycle.check_pending_vm("vm1", POOL, 15, provider)

        assert store.members(keys.queue(Queue.COMPLETED, POOL)) == {"vm1"}
        assert store.members(keys.queue(Queue.PENDING, POOL)) == set()
        failed = runtime.metrics.registry.get_sample_value("vmpool_vm_failed_total", {"pool": POOL})
        assert failed == 1

    async def test_machine_within_timeout_stays_pending(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1")
        provider.set_ready(POOL, "vm1", False)
        await _pending(store, keys, "vm1", clone_minutes_ago=5)

        await lifecycle.check_pending_vm("vm1", POOL, 15, provider)

        assert store.members(keys.queue(Queue.PENDING, POOL)) == {"vm1"}

    async def test_hostname_mismatch_is_not_ready(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1", hostname="other")
        await _pending(store, keys, "vm1", clone_minutes_ago=5)

        await lifecycle.check_pending_vm("vm1", POOL, 15, provider)

        assert store.members(keys.queue(Queue.PENDING, POOL)) == {"vm1"}
        assert store.members(keys.queue(Queue.READY, POOL)) == set()

    async def test_absent_machine_is_purged_after_timeout(self, lifecycle, store, keys):
        await _pending(store, keys, "vm1", clone_minutes_ago=20)

        assert await lifecycle.fail_pending_vm("vm1", POOL, 15, exists=False) is True

        assert store.members(keys.queue(Queue.PENDING, POOL)) == set()
        assert store.members(keys.queue(Queue.COMPLETED, POOL)) == set()

    async def test_absent_machine_within_timeout_is_kept(self, lifecycle, store, keys):
        await _pending(store, keys, "vm1", clone_minutes_ago=1)

        await lifecycle.fail_pending_vm("vm1", POOL, 15, exists=False)

        assert store.members(keys.queue(Queue.PENDING, POOL)) == {"vm1"}

    async def test_malformed_clone_stamp_takes_no_action(self, lifecycle, store, keys):
        await store.sadd(keys.queue(Queue.PENDING, POOL), "vm1")
        await store.hset(keys.vm("vm1"), "clone", "yesterday-ish")

        assert await lifecycle.fail_pending_vm("vm1", POOL, 15) is False
        assert store.members(keys.queue(Queue.PENDING, POOL)) == {"vm1"}

    async def test_provider_error_runs_timeout_path_then_raises(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1")
        provider.failures["get_vm"] = ProviderError("backend down")
        await _pending(store, keys, "vm1", clone_minutes_ago=30)

        with pytest.raises(ProviderError):
            await lifecycle.check_pending_vm("vm1", POOL, 15, provider)

        assert store.members(keys.queue(Queue.COMPLETED, POOL)) == {"vm1"}


class TestReadyChecks:
    async def test_ttl_exceeded_moves_to_completed(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1", boot_time=utcnow() - timedelta(minutes=120))
        await store.sadd(keys.queue(Queue.READY, POOL), "vm1")

        await lifecycle.check_ready_vm("vm1", POOL, 60, provider)

        assert store.members(keys.queue(Queue.COMPLETED, POOL)) == {"vm1"}
        assert store.members(keys.queue(Queue.READY, POOL)) == set()

    async def test_zero_ttl_disables_expiry(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1", boot_time=utcnow() - timedelta(days=30))
        await store.sadd(keys.queue(Queue.READY, POOL), "vm1")

        await lifecycle.check_ready_vm("vm1", POOL, 0, provider)

        assert store.members(keys.queue(Queue.READY, POOL)) == {"vm1"}
        assert await store.hget(keys.vm("vm1"), "check") is not None

    async def test_recent_check_skips_provider(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1")
        await store.sadd(keys.queue(Queue.READY, POOL), "vm1")
        await store.hset(keys.vm("vm1"), "check", _minutes_ago(1))

        await lifecycle.check_ready_vm("vm1", POOL, 0, provider)

        assert provider.calls == []

    async def test_absent_machine_leaves_ready_only(self, lifecycle, store, keys, provider):
        await store.sadd(keys.queue(Queue.READY, POOL), "ghost")

        await lifecycle.check_ready_vm("ghost", POOL, 0, provider)

        assert store.members(keys.queue(Queue.READY, POOL)) == set()
        assert store.members(keys.queue(Queue.COMPLETED, POOL)) == set()

    async def test_powered_off_machine_is_completed(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1", powered_on=False)
        await store.sadd(keys.queue(Queue.READY, POOL), "vm1")

        await lifecycle.check_ready_vm("vm1", POOL, 0, provider)

        assert store.members(keys.queue(Queue.COMPLETED, POOL)) == {"vm1"}

    async def test_failing_health_check_is_completed(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1")
        provider.failures["vm_ready"] = ProviderError("timeout")
        await store.sadd(keys.queue(Queue.READY, POOL), "vm1")

        await lifecycle.check_ready_vm("vm1", POOL, 0, provider)

        assert store.members(keys.queue(Queue.COMPLETED, POOL)) == {"vm1"}


class TestRunningChecks:
    async def test_lifetime_exceeded_moves_to_completed(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1")
        await store.sadd(keys.queue(Queue.RUNNING, POOL), "vm1")
        await store.hset(keys.active(POOL), "vm1", _minutes_ago(13 * 60))

        await lifecycle.check_running_vm("vm1", POOL, 12, provider)

        assert store.members(keys.queue(Queue.COMPLETED, POOL)) == {"vm1"}

    async def test_lifetime_not_reached(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1")
        await store.sadd(keys.queue(Queue.RUNNING, POOL), "vm1")
        await store.hset(keys.active(POOL), "vm1", _minutes_ago(11 * 60 + 59))

        await lifecycle.check_running_vm("vm1", POOL, 12, provider)

        assert store.members(keys.queue(Queue.RUNNING, POOL)) == {"vm1"}

    async def test_zero_lifetime_disables_check(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1")
        await store.sadd(keys.queue(Queue.RUNNING, POOL), "vm1")
        await store.hset(keys.active(POOL), "vm1", _minutes_ago(1000 * 60))

        await lifecycle.check_running_vm("vm1", POOL, 0, provider)

        assert store.members(keys.queue(Queue.RUNNING, POOL)) == {"vm1"}


class TestClone:
    async def test_generated_names_use_prefix(self, runtime, store):
        runtime.settings.pool_manager.prefix = "ci-"
        lifecycle = MachineLifecycle(runtime)

        name = await lifecycle.generate_vm_name()

        assert name.startswith("ci-")
        suffix = name[len("ci-"):]
        assert len(suffix) == 15
        assert suffix[0].isalpha()
        assert suffix.isalnum() and suffix == suffix.lower()

    async def test_clone_registers_pending_and_releases_counter(
        self, lifecycle, runtime, store, keys, provider
    ):
        await store.set(keys.clone_tasks, "1")
        pool = runtime.pool_config(POOL)

        vm_name = await lifecycle.clone_vm(pool, provider)

        assert await store.get(keys.clone_tasks) == "0"
        assert store.members(keys.queue(Queue.PENDING, POOL)) == {vm_name}
        record = await store.hgetall(keys.vm(vm_name))
        assert record["pool"] == POOL
        assert "clone" in record and "clone_time" in record
        assert f"{POOL}:{vm_name}" in store.hashes[keys.clone_stats(utcnow().date().isoformat())]
        assert await provider.get_vm(POOL, vm_name) is not None

    async def test_clone_failure_deregisters_and_reraises(
        self, lifecycle, runtime, store, keys, provider
    ):
        await store.set(keys.clone_tasks, "1")
        provider.failures["create_vm"] = ProviderError("no capacity")

        with pytest.raises(ProviderError):
            await lifecycle.clone_vm(runtime.pool_config(POOL), provider)

        assert await store.get(keys.clone_tasks) == "0"
        assert store.members(keys.queue(Queue.PENDING, POOL)) == set()
        record_key = next(key for key in store.hashes if key.startswith(keys.vm("")))
        assert store.expiries[record_key] == runtime.settings.redis.data_ttl * 60 * 60


class TestDestroy:
    async def test_destroy_expires_record(self, lifecycle, runtime, store, keys, provider):
        provider.add_machine(POOL, "vm1")
        await store.sadd(keys.queue(Queue.COMPLETED, POOL), "vm1")
        await store.hset(keys.active(POOL), "vm1", _minutes_ago(5))
        await store.hset(keys.vm("vm1"), "pool", POOL)

        await lifecycle.destroy_vm("vm1", POOL, provider)

        assert store.members(keys.queue(Queue.COMPLETED, POOL)) == set()
        assert await store.hget(keys.active(POOL), "vm1") is None
        assert await store.hget(keys.vm("vm1"), "destroy") is not None
        assert store.expiries[keys.vm("vm1")] == runtime.settings.redis.data_ttl * 3600
        assert await provider.get_vm(POOL, "vm1") is None

    async def test_purge_deletes_record(self, lifecycle, store, keys):
        await store.sadd(keys.queue(Queue.COMPLETED, POOL), "vm1")
        await store.hset(keys.vm("vm1"), "pool", POOL)

        await lifecycle.purge_vm("vm1", POOL)

        assert store.members(keys.queue(Queue.COMPLETED, POOL)) == set()
        assert await store.hgetall(keys.vm("vm1")) == {}


class TestDisksAndSnapshots:
    @pytest.mark.parametrize("size", ["0", "-5", "ten", ""])
    async def test_invalid_disk_size_rejected(self, lifecycle, provider, size):
        provider.add_machine(POOL, "vm1")

        with pytest.raises(InvalidDiskSizeError):
            await lifecycle.create_vm_disk(POOL, "vm1", size, provider)

        assert provider.calls_to("create_disk") == []

    async def test_disks_are_appended(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1")

        assert await lifecycle.create_vm_disk(POOL, "vm1", "10", provider) is True
        assert await lifecycle.create_vm_disk(POOL, "vm1", "20", provider) is True

        assert await store.hget(keys.vm("vm1"), "disk") == "+10gb:+20gb"

    async def test_snapshot_is_recorded(self, lifecycle, store, keys, provider):
        provider.add_machine(POOL, "vm1")

        assert await lifecycle.create_vm_snapshot(POOL, "vm1", "base", provider) is True
        assert await store.hget(keys.vm("vm1"), "snapshot:base") is not None
        assert await lifecycle.revert_vm_snapshot(POOL, "vm1", "base", provider) is True
        assert await lifecycle.revert_vm_snapshot(POOL, "vm1", "other", provider) is False
