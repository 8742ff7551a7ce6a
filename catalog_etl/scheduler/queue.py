"""Durable task queue partitioned per retailer.

Supports an in-process backend (local runs, tests) and a Postgres backend
(``FOR UPDATE SKIP LOCKED`` dequeue).
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from asyncpg import Pool, Record

from ..errors import TaskNotFoundError
from ..models import PENDING_STATUSES, Task, TaskStatus, utcnow
from .policy import JobOptions

LOGGER = logging.getLogger(__name__)

FINISHED_STATUSES = (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


def partition_name(retailer: str) -> str:
    """Queue partition dedicated to one retailer."""
    return f"scraper-{retailer}"


class TaskQueue(Protocol):
    """Abstract task queue interface."""

    def configure(self, partition: str, options: JobOptions) -> None:
        """Set default job options for a partition."""
        ...

    async def enqueue(
        self,
        partition: str,
        name: str,
        payload: Dict[str, Any],
        priority: int = 0,
    ) -> int:
        """Add task to a partition.

        Returns
        -------
        int
            Task ID
        """
        ...

    async def dequeue(self, partition: str, timeout: Optional[float] = None) -> Optional[Task]:
        """Claim the next ready task, waiting up to ``timeout`` seconds.

        Returns
        -------
        Task or None
            Claimed task (status ``active``), or None when the wait timed out
        """
        ...

    async def ack(self, task_id: int) -> None:
        """Mark task as completed."""
        ...

    async def nack(self, task_id: int, error: str, retry: bool = True) -> TaskStatus:
        """Record a failed attempt.

        Parameters
        ----------
        task_id : int
            Task ID
        error : str
            Error message kept for operators
        retry : bool
            Whether the task may be retried if attempts remain

        Returns
        -------
        TaskStatus
            ``delayed`` when a retry was scheduled, ``failed`` otherwise
        """
        ...

    async def release(self, task_id: int) -> None:
        """Return an interrupted active task to the queue without using an attempt."""
        ...

    async def recover_stalled(self, partition: str) -> int:
        """Move tasks active for longer than ``stalled_timeout`` back to waiting.

        Returns
        -------
        int
            Number of tasks returned to the queue
        """
        ...

    async def cancel(self, task_id: int) -> bool:
        """Cancel a task that has not been dequeued yet."""
        ...

    async def purge(self, partition: str) -> int:
        """Drop every waiting or delayed task of a partition."""
        ...

    async def get_task(self, task_id: int) -> Optional[Task]:
        ...

    async def stats(self, partition: str) -> Dict[str, int]:
        ...

    async def depth(self, partition: str) -> int:
        ...

    async def clean(self, partition: str) -> int:
        """Apply retention to finished tasks; returns number removed."""
        ...


class MemoryQueue:
    """In-process queue with the same semantics as the Postgres backend."""

    def __init__(
        self,
        default_options: Optional[JobOptions] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.default_options = default_options or JobOptions()
        self._clock = clock
        self._options: Dict[str, JobOptions] = {}
        self._tasks: Dict[int, Task] = {}
        self._ids = itertools.count(1)
        self._changed: Optional[asyncio.Condition] = None

    @property
    def _condition(self) -> asyncio.Condition:
        if self._changed is None:
            self._changed = asyncio.Condition()
        return self._changed

    def configure(self, partition: str, options: JobOptions) -> None:
        self._options[partition] = options

    def options_for(self, partition: str) -> JobOptions:
        return self._options.get(partition, self.default_options)

    async def enqueue(
        self,
        partition: str,
        name: str,
        payload: Dict[str, Any],
        priority: int = 0,
    ) -> int:
        now = self._clock()
        task = Task(
            id=next(self._ids),
            partition=partition,
            name=name,
            payload=dict(payload),
            priority=priority,
            max_attempts=self.options_for(partition).attempts,
            enqueued_at=now,
            available_at=now,
        )
        async with self._condition:
            self._tasks[task.id] = task
            self._condition.notify_all()
        LOGGER.debug("Enqueued task %s into %s", task.describe(), partition)
        return task.id

    async def dequeue(self, partition: str, timeout: Optional[float] = None) -> Optional[Task]:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        async with self._condition:
            while True:
                now = self._clock()
                self._requeue_stalled(partition, now)
                task = self._next_ready(partition, now)
                if task is not None:
                    task.status = TaskStatus.ACTIVE
                    task.started_at = now
                    return task.model_copy(deep=True)

                wait = self._seconds_until_next_delayed(partition, now)
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                try:
                    await asyncio.wait_for(self._condition.wait(), wait)
                except asyncio.TimeoutError:
                    pass

    def _requeue_stalled(self, partition: str, now: datetime) -> int:
        stalled_before = now - timedelta(seconds=self.options_for(partition).stalled_timeout)
        stalled = [
            task
            for task in self._tasks.values()
            if task.partition == partition
            and task.status == TaskStatus.ACTIVE
            and task.started_at is not None
            and task.started_at < stalled_before
        ]
        for task in stalled:
            LOGGER.warning("Task %s stalled since %s, returning it to the queue", task.describe(), task.started_at)
            task.status = TaskStatus.WAITING
            task.started_at = None
        return len(stalled)

    async def recover_stalled(self, partition: str) -> int:
        async with self._condition:
            recovered = self._requeue_stalled(partition, self._clock())
            if recovered:
                self._condition.notify_all()
        return recovered

    def _next_ready(self, partition: str, now: datetime) -> Optional[Task]:
        ready = [
            task
            for task in self._tasks.values()
            if task.partition == partition
            and task.status in PENDING_STATUSES
            and (task.available_at is None or task.available_at <= now)
        ]
        if not ready:
            return None
        return min(ready, key=lambda t: (-t.priority, t.id))

    def _seconds_until_next_delayed(self, partition: str, now: datetime) -> Optional[float]:
        pending = [
            task.available_at
            for task in self._tasks.values()
            if task.partition == partition
            and task.status == TaskStatus.DELAYED
            and task.available_at is not None
        ]
        if not pending:
            return None
        return max((min(pending) - now).total_seconds(), 0.0)

    def _get(self, task_id: int) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def ack(self, task_id: int) -> None:
        task = self._get(task_id)
        task.status = TaskStatus.COMPLETED
        task.finished_at = self._clock()
        await self.clean(task.partition)

    async def nack(self, task_id: int, error: str, retry: bool = True) -> TaskStatus:
        task = self._get(task_id)
        now = self._clock()
        task.attempts_made += 1
        task.error = error

        if retry and task.attempts_made < task.max_attempts:
            delay = self.options_for(task.partition).backoff_for(task.attempts_made)
            task.status = TaskStatus.DELAYED
            task.available_at = now + timedelta(seconds=delay)
            LOGGER.warning(
                "Task %s failed (attempt %d/%d), retrying in %.1fs: %s",
                task.describe(), task.attempts_made, task.max_attempts, delay, error,
            )
            async with self._condition:
                self._condition.notify_all()
        else:
            task.status = TaskStatus.FAILED
            task.finished_at = now
            LOGGER.error(
                "Task %s moved to failed after %d attempt(s): %s",
                task.describe(), task.attempts_made, error,
            )
            await self.clean(task.partition)
        return task.status

    async def release(self, task_id: int) -> None:
        task = self._get(task_id)
        if task.status != TaskStatus.ACTIVE:
            return
        task.status = TaskStatus.WAITING
        task.started_at = None
        async with self._condition:
            self._condition.notify_all()

    async def cancel(self, task_id: int) -> bool:
        task = self._get(task_id)
        if task.status not in PENDING_STATUSES:
            return False
        task.status = TaskStatus.CANCELLED
        task.finished_at = self._clock()
        return True

    async def purge(self, partition: str) -> int:
        doomed = [
            task_id
            for task_id, task in self._tasks.items()
            if task.partition == partition and task.status in PENDING_STATUSES
        ]
        for task_id in doomed:
            del self._tasks[task_id]
        if doomed:
            LOGGER.info("Purged %d pending task(s) from %s", len(doomed), partition)
        return len(doomed)

    async def get_task(self, task_id: int) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def stats(self, partition: str) -> Dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            if task.partition == partition:
                counts[task.status.value] += 1
        return counts

    async def depth(self, partition: str) -> int:
        return sum(
            1
            for task in self._tasks.values()
            if task.partition == partition and task.status in PENDING_STATUSES
        )

    async def clean(self, partition: str) -> int:
        options = self.options_for(partition)
        now = self._clock()
        finished = sorted(
            (t for t in self._tasks.values()
             if t.partition == partition and t.status in FINISHED_STATUSES),
            key=lambda t: t.finished_at or now,
            reverse=True,
        )
        keep_after = now - timedelta(seconds=options.keep_completed_age)
        doomed = [
            t.id
            for index, t in enumerate(finished)
            if index >= options.keep_completed_count or (t.finished_at or now) < keep_after
        ]
        failed_after = now - timedelta(seconds=options.keep_failed_age)
        doomed.extend(
            t.id
            for t in self._tasks.values()
            if t.partition == partition
            and t.status == TaskStatus.FAILED
            and (t.finished_at or now) < failed_after
        )
        for task_id in doomed:
            del self._tasks[task_id]
        return len(doomed)


class PostgresQueue:
    """Postgres-based task queue using row locks."""

    def __init__(
        self,
        pool: Pool,
        default_options: Optional[JobOptions] = None,
        *,
        poll_interval: float = 1.0,
    ) -> None:
        """Initialize Postgres queue.

        Parameters
        ----------
        pool : asyncpg.Pool
            Shared connection pool
        default_options : JobOptions, optional
            Options for partitions that were never configured
        poll_interval : float
            Seconds between polls while ``dequeue`` waits for work
        """
        self.pool = pool
        self.default_options = default_options or JobOptions()
        self.poll_interval = poll_interval
        self._options: Dict[str, JobOptions] = {}

    def configure(self, partition: str, options: JobOptions) -> None:
        self._options[partition] = options

    def options_for(self, partition: str) -> JobOptions:
        return self._options.get(partition, self.default_options)

    async def ensure_schema(self) -> None:
        """Create queue table if not exists."""
        create_sql = """
        CREATE TABLE IF NOT EXISTS scraper_tasks (
            task_id BIGSERIAL PRIMARY KEY,
            partition VARCHAR(100) NOT NULL,
            name VARCHAR(100) NOT NULL,
            payload JSONB NOT NULL DEFAULT '{}'::jsonb,
            priority INTEGER NOT NULL DEFAULT 0,
            status VARCHAR(20) NOT NULL DEFAULT 'waiting',
            attempts_made INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            enqueued_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            available_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            started_at TIMESTAMPTZ,
            finished_at TIMESTAMPTZ,
            error_message TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_scraper_tasks_ready
            ON scraper_tasks(partition, status, priority DESC, task_id);
        CREATE INDEX IF NOT EXISTS idx_scraper_tasks_finished
            ON scraper_tasks(partition, status, finished_at);
        """
        async with self.pool.acquire() as conn:
            await conn.execute(create_sql)
        LOGGER.info("Ensured scraper_tasks table exists")

    @staticmethod
    def _to_task(row: Record) -> Task:
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return Task(
            id=row["task_id"],
            partition=row["partition"],
            name=row["name"],
            payload=payload or {},
            priority=row["priority"],
            status=TaskStatus(row["status"]),
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            enqueued_at=row["enqueued_at"],
            available_at=row["available_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            error=row["error_message"],
        )

    async def enqueue(
        self,
        partition: str,
        name: str,
        payload: Dict[str, Any],
        priority: int = 0,
    ) -> int:
        insert_sql = """
        INSERT INTO scraper_tasks (partition, name, payload, priority, max_attempts)
        VALUES ($1, $2, $3::jsonb, $4, $5)
        RETURNING task_id
        """
        async with self.pool.acquire() as conn:
            task_id = await conn.fetchval(
                insert_sql,
                partition,
                name,
                json.dumps(payload, default=str),
                priority,
                self.options_for(partition).attempts,
            )
        LOGGER.debug("Enqueued task %s#%d into %s", name, task_id, partition)
        return task_id

    async def dequeue(self, partition: str, timeout: Optional[float] = None) -> Optional[Task]:
        claim_sql = """
        UPDATE scraper_tasks
        SET status = 'active',
            started_at = NOW()
        WHERE task_id = (
            SELECT task_id
            FROM scraper_tasks
            WHERE partition = $1
              AND status IN ('waiting', 'delayed')
              AND available_at <= NOW()
            ORDER BY priority DESC, task_id ASC
            LIMIT 1
            FOR UPDATE SKIP LOCKED
        )
        RETURNING *
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        await self.recover_stalled(partition)
        while True:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(claim_sql, partition)
            if row is not None:
                return self._to_task(row)

            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            await asyncio.sleep(wait)

    async def ack(self, task_id: int) -> None:
        async with self.pool.acquire() as conn:
            partition = await conn.fetchval(
                """
                UPDATE scraper_tasks
                SET status = 'completed', finished_at = NOW()
                WHERE task_id = $1
                RETURNING partition
                """,
                task_id,
            )
        if partition is None:
            raise TaskNotFoundError(task_id)
        await self.clean(partition)

    async def nack(self, task_id: int, error: str, retry: bool = True) -> TaskStatus:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT partition, name, attempts_made, max_attempts
                    FROM scraper_tasks
                    WHERE task_id = $1
                    FOR UPDATE
                    """,
                    task_id,
                )
                if row is None:
                    raise TaskNotFoundError(task_id)

                attempts_made = row["attempts_made"] + 1
                if retry and attempts_made < row["max_attempts"]:
                    delay = self.options_for(row["partition"]).backoff_for(attempts_made)
                    await conn.execute(
                        """
                        UPDATE scraper_tasks
                        SET status = 'delayed',
                            attempts_made = $2,
                            error_message = $3,
                            available_at = NOW() + ($4::double precision * INTERVAL '1 second')
                        WHERE task_id = $1
                        """,
                        task_id, attempts_made, error, delay,
                    )
                    new_status = TaskStatus.DELAYED
                else:
                    await conn.execute(
                        """
                        UPDATE scraper_tasks
                        SET status = 'failed',
                            attempts_made = $2,
                            error_message = $3,
                            finished_at = NOW()
                        WHERE task_id = $1
                        """,
                        task_id, attempts_made, error,
                    )
                    new_status = TaskStatus.FAILED

        LOGGER.warning(
            "Marked task %s#%d as %s (attempt %d/%d): %s",
            row["name"], task_id, new_status.value, attempts_made, row["max_attempts"], error,
        )
        if new_status == TaskStatus.FAILED:
            await self.clean(row["partition"])
        return new_status

    async def release(self, task_id: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE scraper_tasks
                SET status = 'waiting', started_at = NULL
                WHERE task_id = $1 AND status = 'active'
                """,
                task_id,
            )

    async def recover_stalled(self, partition: str) -> int:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE scraper_tasks
                SET status = 'waiting', started_at = NULL
                WHERE partition = $1
                  AND status = 'active'
                  AND started_at < NOW() - ($2::double precision * INTERVAL '1 second')
                RETURNING task_id
                """,
                partition,
                self.options_for(partition).stalled_timeout,
            )
        if rows:
            LOGGER.warning(
                "Returned %d stalled task(s) to %s: %s",
                len(rows),
                partition,
                ", ".join(str(row["task_id"]) for row in rows),
            )
        return len(rows)

    async def cancel(self, task_id: int) -> bool:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                status = await conn.fetchval(
                    "SELECT status FROM scraper_tasks WHERE task_id = $1 FOR UPDATE",
                    task_id,
                )
                if status is None:
                    raise TaskNotFoundError(task_id)
                if TaskStatus(status) not in PENDING_STATUSES:
                    return False
                await conn.execute(
                    """
                    UPDATE scraper_tasks
                    SET status = 'cancelled', finished_at = NOW()
                    WHERE task_id = $1
                    """,
                    task_id,
                )
        LOGGER.info("Cancelled task %d", task_id)
        return True

    async def purge(self, partition: str) -> int:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                DELETE FROM scraper_tasks
                WHERE partition = $1 AND status IN ('waiting', 'delayed')
                RETURNING task_id
                """,
                partition,
            )
        if rows:
            LOGGER.info("Purged %d pending task(s) from %s", len(rows), partition)
        return len(rows)

    async def get_task(self, task_id: int) -> Optional[Task]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM scraper_tasks WHERE task_id = $1", task_id)
        return self._to_task(row) if row else None

    async def stats(self, partition: str) -> Dict[str, int]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT status, COUNT(*) AS count
                FROM scraper_tasks
                WHERE partition = $1
                GROUP BY status
                """,
                partition,
            )
        counts = {status.value: 0 for status in TaskStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts

    async def depth(self, partition: str) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM scraper_tasks
                WHERE partition = $1 AND status IN ('waiting', 'delayed')
                """,
                partition,
            )

    async def clean(self, partition: str) -> int:
        options = self.options_for(partition)
        statements: List[tuple] = [
            (
                """
                DELETE FROM scraper_tasks
                WHERE partition = $1
                  AND status IN ('completed', 'cancelled')
                  AND finished_at < NOW() - ($2::double precision * INTERVAL '1 second')
                """,
                options.keep_completed_age,
            ),
            (
                """
                DELETE FROM scraper_tasks
                WHERE task_id IN (
                    SELECT task_id FROM scraper_tasks
                    WHERE partition = $1 AND status IN ('completed', 'cancelled')
                    ORDER BY finished_at DESC, task_id DESC
                    OFFSET $2
                )
                """,
                options.keep_completed_count,
            ),
            (
                """
                DELETE FROM scraper_tasks
                WHERE partition = $1
                  AND status = 'failed'
                  AND finished_at < NOW() - ($2::double precision * INTERVAL '1 second')
                """,
                options.keep_failed_age,
            ),
        ]
        removed = 0
        async with self.pool.acquire() as conn:
            for sql, arg in statements:
                result = await conn.execute(sql, partition, arg)
                removed += int(result.split()[-1])
        if removed:
            LOGGER.debug("Retention removed %d task(s) from %s", removed, partition)
        return removed
