"""Host selection subsystem.

This module provides:
- HostCache: per-cluster candidate lists partitioned by compatibility class
- HostSelector: periodic refresh and round-robin consumption
"""

from vmpool.services.hosts.cache import ClusterHosts, HostCache
from vmpool.services.hosts.selector import HostSelector, build_cluster_hosts, select_least_used_hosts

__all__ = [
    "ClusterHosts",
    "HostCache",
    "HostSelector",
    "build_cluster_hosts",
    "select_least_used_hosts",
]
