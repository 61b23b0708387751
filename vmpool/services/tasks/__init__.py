"""Disk and snapshot request queues."""

from vmpool.services.tasks.queue import TaskQueueWorker, TaskRequest, split_request

__all__ = ["TaskQueueWorker", "TaskRequest", "split_request"]
