"""HostSelector - ranked host candidates for relocation.

Responsibilities:
1. Periodically rank the hosts of every configured cluster by utilization
2. Keep the least-loaded share of each compatibility class as candidates
3. Hand out candidates round-robin to the migration workflow
"""

from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from vmpool.errors import HostSelectionBusyError, HostSelectionError
from vmpool.providers.base import HostUtilization
from vmpool.services.hosts.cache import ClusterHosts

if TYPE_CHECKING:
    from vmpool.runtime import Runtime

logger = structlog.get_logger()


def select_least_used_hosts(hosts: list[HostUtilization], percentage: int = 20) -> list[str]:
    """Names of the least-loaded percentage of hosts, never empty for non-empty input."""
    if not hosts:
        return []
    ranked = sorted(hosts, key=lambda h: h.utilization)
    count = max(1, int(len(ranked) * (percentage / 100.0)))
    return [host.name for host in ranked[:count]]


def build_cluster_hosts(hosts: list[HostUtilization], percentage: int = 20) -> ClusterHosts:
    """Partition ranked hosts by compatibility class."""
    by_class: dict[str, list[HostUtilization]] = {}
    for host in hosts:
        by_class.setdefault(host.compat_class, []).append(host)

    return ClusterHosts(
        classes={
            compat_class: select_least_used_hosts(members, percentage)
            for compat_class, members in by_class.items()
        },
        hosts=select_least_used_hosts(hosts, percentage),
    )


class HostSelector:
    """Maintains the runtime's host candidate cache."""

    def __init__(
        self,
        runtime: "Runtime",
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._runtime = runtime
        self._config = runtime.settings.host_selector
        self._cache = runtime.host_cache
        self._clock = clock
        self._log = logger.bind(service="host_selector")

    async def refresh(self) -> dict[str, ClusterHosts]:
        """Re-rank hosts for every cluster and replace the cache.

        Raises:
            HostSelectionBusyError: If another refresh holds the guard
            HostSelectionError: If no provider is available for ranking
        """
        store = self._runtime.store
        lock_key = self._runtime.keys.host_selector_lock

        token = secrets.token_hex(8)
        acquired = await store.set(lock_key, token, ex=self._config.lock_ttl, nx=True)
        if not acquired:
            raise HostSelectionBusyError("Host selection refresh already running")

        try:
            provider = self._runtime.host_selector_provider()
            if provider is None:
                raise HostSelectionError("Missing provider for host selection")

            clusters: dict[str, ClusterHosts] = {}
            for cluster in self._runtime.settings.clusters():
                ranked = await provider.rank_hosts(
                    cluster,
                    utilization_limit=self._config.utilization_limit,
                )
                if not ranked:
                    self._log.warning("host_selector.no_candidates", cluster=cluster)
                    continue
                clusters[cluster] = build_cluster_hosts(ranked, self._config.percentage)
                self._log.debug(
                    "host_selector.cluster_ranked",
                    cluster=cluster,
                    hosts=clusters[cluster].hosts,
                    classes=clusters[cluster].classes,
                )

            self._cache.replace(clusters, self._clock())
            return clusters
        finally:
            if not await store.delete_if_equal(lock_key, token):
                self._log.warning("host_selector.guard_expired", lock_ttl=self._config.lock_ttl)

    async def run_once(self) -> None:
        """Worker tick: refresh, logging failures."""
        try:
            await self.refresh()
        except HostSelectionBusyError:
            self._log.debug("host_selector.refresh_busy")
        except Exception as exc:
            self._log.warning("host_selector.refresh_failed", error=str(exc))

    async def next_host(self, cluster: str, compat_class: str | None) -> str:
        """Next candidate for (cluster, compat_class), rotating the list.

        A missing or stale cache triggers a refresh; the wait is bounded by
        retry_attempts * retry_delay.

        Raises:
            HostSelectionError: If no candidate becomes available
        """
        refreshed = False
        for attempt in range(self._config.retry_attempts):
            if not self._cache.is_stale(self._clock(), self._config.max_age):
                host = self._cache.rotate(cluster, compat_class)
                if host is not None:
                    return host
                if refreshed:
                    break

            try:
                await self.refresh()
                refreshed = True
                continue
            except HostSelectionBusyError:
                self._log.debug("host_selector.waiting_for_refresh", attempt=attempt)
            except HostSelectionError:
                raise
            except Exception as exc:
                self._log.warning(
                    "host_selector.refresh_failed",
                    attempt=attempt,
                    error=str(exc),
                )

            await asyncio.sleep(self._config.retry_delay)

        raise HostSelectionError(
            f"No host candidate for cluster {cluster} class {compat_class}",
            cluster=cluster,
            compat_class=compat_class,
        )
