"""Store layer - persistent inventory."""

from vmpool.store.base import LIFECYCLE_QUEUES, Keys, Queue, Store
from vmpool.store.redis import RedisStore

__all__ = ["LIFECYCLE_QUEUES", "Keys", "Queue", "RedisStore", "Store"]
