"""Runtime context.

One Runtime is constructed at startup and passed to every component. It owns
the store, the provider registry, the host candidate cache, metrics and the
task spawner; nothing in vmpool keeps process-global state.
"""

from __future__ import annotations

import structlog

from vmpool.config import PoolConfig, Settings
from vmpool.errors import ConfigurationError
from vmpool.metrics import Metrics
from vmpool.models import MachineRecord
from vmpool.providers.base import Provider
from vmpool.providers.registry import ProviderRegistry, default_registry
from vmpool.services.hosts.cache import HostCache
from vmpool.store.base import Keys, Store
from vmpool.utils.tasks import Spawner

logger = structlog.get_logger()


class Runtime:
    """Explicitly owned process context."""

    def __init__(
        self,
        settings: Settings,
        store: Store,
        providers: ProviderRegistry,
        *,
        metrics: Metrics | None = None,
        host_cache: HostCache | None = None,
        spawner: Spawner | None = None,
        keys: Keys | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.providers = providers
        self.metrics = metrics or Metrics(namespace=settings.metrics.namespace)
        self.host_cache = host_cache or HostCache()
        self.spawner = spawner or Spawner()
        self.keys = keys or Keys()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: Store,
        registry: ProviderRegistry | None = None,
        **kwargs,
    ) -> "Runtime":
        """Build a runtime and instantiate every configured provider.

        Raises:
            ConfigurationError: If a pool references an unknown provider class
        """
        registry = registry or default_registry()
        runtime = cls(settings, store, registry, **kwargs)
        runtime.create_providers()
        return runtime

    def create_providers(self) -> None:
        names = [pool.provider for pool in self.settings.pools]
        if self.settings.host_selector.provider:
            names.append(self.settings.host_selector.provider)

        for provider_name in names:
            if self.providers.get(provider_name) is not None:
                continue
            provider_class = self.settings.provider_class_for(provider_name)
            try:
                self.providers.create(
                    provider_class,
                    provider_name,
                    self.settings.provider_options_for(provider_name),
                )
            except ConfigurationError:
                logger.error(
                    "runtime.provider_create_failed",
                    provider_name=provider_name,
                    provider_class=provider_class,
                )
                raise

    def pool_config(self, pool_name: str) -> PoolConfig | None:
        return self.settings.get_pool(pool_name)

    def provider_for_pool(self, pool_name: str) -> Provider | None:
        pool = self.settings.get_pool(pool_name)
        if pool is None:
            return None
        return self.providers.get(pool.provider)

    def host_selector_provider(self) -> Provider | None:
        name = self.settings.host_selector.provider
        if name is None and self.settings.pools:
            name = self.settings.pools[0].provider
        return self.providers.get(name) if name else None

    async def machine_record(self, vm_name: str) -> MachineRecord:
        return MachineRecord.from_hash(vm_name, await self.store.hgetall(self.keys.vm(vm_name)))

    async def reset_admission(self) -> None:
        """Clear admission state left behind by a previous process.

        No clone or migration survives a restart, so the clone counter is
        zeroed and the in-flight migration set dropped.
        """
        await self.store.set(self.keys.clone_tasks, "0")
        await self.store.delete(self.keys.migrations)
        await self.store.delete(self.keys.host_selector_lock)
        logger.info("runtime.admission_reset")

    async def close(self) -> None:
        await self.spawner.cancel_all()
        await self.providers.close()
        await self.store.close()
