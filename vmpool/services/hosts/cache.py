"""Host candidate cache.

Per-cluster ranked host lists partitioned by compatibility class. Written
only by HostSelector.refresh (whole-snapshot replacement) and rotated by
HostSelector.next_host.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ClusterHosts:
    """Candidate hosts of one cluster."""

    # compat_class -> least-loaded host names, rotated round-robin
    classes: dict[str, list[str]] = field(default_factory=dict)
    # least-loaded hosts regardless of class
    hosts: list[str] = field(default_factory=list)


@dataclass
class HostCache:
    clusters: dict[str, ClusterHosts] = field(default_factory=dict)
    # monotonic time of the last completed refresh
    refreshed_at: float | None = None

    def is_stale(self, now: float, max_age: float) -> bool:
        if self.refreshed_at is None or not self.clusters:
            return True
        return now - self.refreshed_at > max_age

    def replace(self, clusters: dict[str, ClusterHosts], refreshed_at: float) -> None:
        self.clusters = clusters
        self.refreshed_at = refreshed_at

    def rotate(self, cluster: str, compat_class: str | None) -> str | None:
        """Pop the head of the candidate list and append it to the tail."""
        entry = self.clusters.get(cluster)
        if entry is None:
            return None
        candidates = entry.classes.get(compat_class) if compat_class else entry.hosts
        if not candidates:
            return None
        host = candidates.pop(0)
        candidates.append(host)
        return host
