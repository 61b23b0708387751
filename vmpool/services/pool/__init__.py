"""Pool orchestration.

This module provides:
- MachineLifecycle: per-machine checks and operations
- PoolOrchestrator: per-pool reconciliation loop
"""

from vmpool.services.pool.lifecycle import MachineLifecycle
from vmpool.services.pool.orchestrator import PoolOrchestrator

__all__ = ["MachineLifecycle", "PoolOrchestrator"]
