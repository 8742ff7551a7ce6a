"""Task scheduling for retailer crawls.

This package provides:
- A durable task queue partitioned per retailer (memory or Postgres)
- Per-retailer concurrency, priority and retry policy
- Dispatcher, workers and the Scheduler that owns them
- The ``catalog-etl`` CLI
"""

from .policy import JobOptions, JobPriority, RetailerPolicy, SchedulerPolicy
from .queue import MemoryQueue, PostgresQueue, TaskQueue, partition_name

__all__ = [
    "JobOptions",
    "JobPriority",
    "RetailerPolicy",
    "SchedulerPolicy",
    "MemoryQueue",
    "PostgresQueue",
    "TaskQueue",
    "partition_name",
]
