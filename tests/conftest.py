"""Test configuration and fixtures."""

import pytest
from prometheus_client import CollectorRegistry

from vmpool.config import Settings
from vmpool.metrics import Metrics
from vmpool.providers.registry import ProviderRegistry
from vmpool.runtime import Runtime
from vmpool.store.base import Keys
from tests.fakes import FakeProvider, FakeStore


@pytest.fixture
def test_settings() -> Settings:
    """Settings with one pool bound to the fake provider."""
    return Settings(
        pool_manager={"task_limit": 10, "migration_limit": 2, "clone_target": "cluster1"},
        providers={"fake": {"provider_class": "fake"}},
        pools=[{"name": "pool1", "size": 2, "provider": "fake"}],
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider(
        "fake",
        {
            "hosts": [
                {"name": "host1", "utilization": 10.0},
                {"name": "host2", "utilization": 30.0},
                {"name": "host3", "utilization": 50.0},
            ],
        },
    )


@pytest.fixture
def keys() -> Keys:
    return Keys()


@pytest.fixture
def runtime(test_settings: Settings, store: FakeStore, provider: FakeProvider) -> Runtime:
    registry = ProviderRegistry()
    registry.add(provider)
    return Runtime(
        test_settings,
        store,
        registry,
        metrics=Metrics(registry=CollectorRegistry()),
    )
