"""Provider registry.

Maps a provider class token (as written in config) to a constructor.
Unknown tokens fail fast with ConfigurationError.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from vmpool.errors import ConfigurationError
from vmpool.providers.base import Provider

logger = structlog.get_logger()

ProviderFactory = Callable[[str, dict[str, Any]], Provider]


class ProviderRegistry:
    """Provider class registry plus the named provider instances built from it."""

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        self._instances: dict[str, Provider] = {}

    def register(self, provider_class: str, factory: ProviderFactory) -> None:
        self._factories[provider_class.lower()] = factory

    def registered_classes(self) -> list[str]:
        return sorted(self._factories)

    def create(
        self,
        provider_class: str,
        provider_name: str,
        options: dict[str, Any] | None = None,
    ) -> Provider:
        """Instantiate and remember a named provider.

        Returns the existing instance when provider_name was already created.
        """
        existing = self._instances.get(provider_name)
        if existing is not None:
            return existing

        factory = self._factories.get(provider_class.lower())
        if factory is None:
            raise ConfigurationError(
                f"Provider '{provider_class}' is unknown for provider name '{provider_name}'",
                provider_class=provider_class,
                provider_name=provider_name,
            )

        provider = factory(provider_name, dict(options or {}))
        self._instances[provider_name] = provider
        logger.info(
            "provider.created",
            provider_name=provider_name,
            provider_class=provider_class,
        )
        return provider

    def add(self, provider: Provider) -> None:
        """Register an already constructed provider instance under its name."""
        self._instances[provider.name] = provider

    def get(self, provider_name: str) -> Provider | None:
        return self._instances.get(provider_name)

    def instances(self) -> dict[str, Provider]:
        return dict(self._instances)

    async def close(self) -> None:
        for name, provider in self._instances.items():
            try:
                await provider.close()
            except Exception as exc:
                logger.warning("provider.close_failed", provider_name=name, error=str(exc))


def default_registry() -> ProviderRegistry:
    """Registry with the built-in provider classes."""
    from vmpool.providers.dummy import DummyProvider

    registry = ProviderRegistry()
    registry.register("dummy", DummyProvider)
    return registry
