"""Provider layer - hypervisor abstraction."""

from vmpool.providers.base import HostUtilization, MachineInfo, Provider
from vmpool.providers.dummy import DummyProvider
from vmpool.providers.registry import ProviderRegistry, default_registry

__all__ = [
    "DummyProvider",
    "HostUtilization",
    "MachineInfo",
    "Provider",
    "ProviderRegistry",
    "default_registry",
]
