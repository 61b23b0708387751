"""vmpool configuration management.

Configuration sources (in priority order):
1. Config file (vmpool.yaml)
2. Environment variables (VMPOOL_ prefix)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

CHECK_LOOP_DELAY_MIN_DEFAULT = 5
CHECK_LOOP_DELAY_MAX_DEFAULT = 60
CHECK_LOOP_DELAY_DECAY_DEFAULT = 2.0


class RedisConfig(BaseModel):
    """Inventory store configuration."""

    url: str = "redis://localhost:6379/0"
    # Hours a destroyed machine's record is kept for diagnostics
    data_ttl: int = 168


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class MetricsConfig(BaseModel):
    """Prometheus exporter configuration (port=None disables the endpoint)."""

    port: int | None = None
    namespace: str = "vmpool"


class PoolManagerConfig(BaseModel):
    """Global pool manager defaults."""

    prefix: str = ""
    # Maximum clones in flight across all pools
    task_limit: int = 10
    # Maximum concurrent migrations (0 or negative = disabled)
    migration_limit: int | None = 0
    vm_lifetime: int = 12  # hours
    vm_checktime: int = 15  # minutes between ready health checks
    timeout: int = 15  # minutes a machine may stay pending
    check_loop_delay_min: float = CHECK_LOOP_DELAY_MIN_DEFAULT
    check_loop_delay_max: float = CHECK_LOOP_DELAY_MAX_DEFAULT
    check_loop_delay_decay: float = CHECK_LOOP_DELAY_DECAY_DEFAULT
    wakeup_poll_interval: float = 1.0  # seconds
    task_loop_delay: float = 5.0  # seconds, disk/snapshot workers
    supervisor_loop_delay: float = 1.0  # seconds
    clone_target: str | None = None  # default cluster


class HostSelectorConfig(BaseModel):
    """Host selection subsystem configuration."""

    # Provider used to rank hosts (defaults to the first pool's provider)
    provider: str | None = None
    loop_delay: float = 5.0
    max_age: float = 60.0  # seconds before the cache is considered stale
    percentage: int = 20  # least-loaded share of hosts kept as candidates
    utilization_limit: float = 80.0
    retry_attempts: int = 10
    retry_delay: float = 1.0
    lock_ttl: int = 120  # seconds


class ProviderConfig(BaseModel):
    """A named provider definition.

    provider_class defaults to the provider name itself.
    """

    provider_class: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)


class PoolConfig(BaseModel):
    """A warm pool of homogeneous machines."""

    name: str
    size: int = 1
    provider: str = "dummy"
    clone_target: str | None = None
    timeout: int | None = None  # minutes
    ready_ttl: int | None = None  # minutes, 0 = no TTL
    vm_lifetime: int | None = None  # hours
    check_loop_delay_min: float | None = None
    check_loop_delay_max: float | None = None
    check_loop_delay_decay: float | None = None


class Settings(BaseSettings):
    """vmpool application settings."""

    model_config = SettingsConfigDict(
        env_prefix="VMPOOL_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    redis: RedisConfig = Field(default_factory=RedisConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    pool_manager: PoolManagerConfig = Field(default_factory=PoolManagerConfig)
    host_selector: HostSelectorConfig = Field(default_factory=HostSelectorConfig)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)
    pools: list[PoolConfig] = Field(default_factory=list)

    def get_pool(self, pool_name: str) -> PoolConfig | None:
        """Get pool by name."""
        for pool in self.pools:
            if pool.name == pool_name:
                return pool
        return None

    def provider_class_for(self, provider_name: str) -> str:
        """Resolve the provider class token for a provider name."""
        provider = self.providers.get(provider_name)
        if provider is None or provider.provider_class is None:
            return provider_name
        return provider.provider_class

    def provider_options_for(self, provider_name: str) -> dict[str, Any]:
        provider = self.providers.get(provider_name)
        return dict(provider.options) if provider else {}

    def clusters(self) -> list[str]:
        """All clusters referenced by the config, deduplicated in order."""
        clusters: list[str] = []
        candidates = [self.pool_manager.clone_target]
        candidates.extend(pool.clone_target for pool in self.pools)
        for cluster in candidates:
            if cluster and cluster not in clusters:
                clusters.append(cluster)
        return clusters


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. VMPOOL_CONFIG_FILE environment variable
    2. ./vmpool.yaml
    3. /etc/vmpool/vmpool.yaml
    """
    config_paths = [
        os.environ.get("VMPOOL_CONFIG_FILE"),
        Path("vmpool.yaml"),
        Path("/etc/vmpool/vmpool.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Values from the YAML file are passed as init arguments, so they win
    over environment variables; anything the file leaves out falls back to
    VMPOOL_* variables and then to defaults.
    """
    file_config = _load_config_file()
    return Settings(**file_config)
