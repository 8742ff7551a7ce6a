"""Per-retailer worker running up to ``concurrency`` tasks at once."""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..errors import ConfigurationError
from ..models import Task, utcnow
from .dispatcher import Dispatcher
from .queue import TaskQueue, partition_name

LOGGER = logging.getLogger(__name__)

Hook = Callable[..., Any]
EVENTS = ("completed", "failed")


@dataclass
class WorkerConfig:
    """Worker configuration."""

    concurrency: int = 1
    dequeue_timeout: float = 1.0  # Seconds a slot blocks on an empty partition
    error_backoff: float = 5.0  # Pause after a queue error
    grace_period: float = 30.0  # Seconds stop() waits for in-flight tasks
    max_tasks: Optional[int] = None  # Max tasks before the slots exit (for testing)


class Worker:
    """Consumes one retailer's partition.

    Each of the ``concurrency`` slots loops ``dequeue -> dispatch -> ack``;
    failures are ``nack``-ed and left to the queue's retry policy.
    """

    def __init__(
        self,
        retailer: str,
        queue: TaskQueue,
        dispatcher: Dispatcher,
        config: Optional[WorkerConfig] = None,
    ) -> None:
        """Initialize worker.

        Parameters
        ----------
        retailer : str
            Retailer whose partition is consumed
        queue : TaskQueue
            Task queue instance
        dispatcher : Dispatcher
            Routes tasks to crawlers
        config : WorkerConfig, optional
            Worker configuration
        """
        if config is not None and config.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.retailer = retailer
        self.partition = partition_name(retailer)
        self.queue = queue
        self.dispatcher = dispatcher
        self.config = config or WorkerConfig()
        self.running = False
        self.tasks_processed = 0
        self.tasks_succeeded = 0
        self.tasks_failed = 0
        self.last_run_at: Optional[datetime] = None
        self._in_flight: Dict[int, Task] = {}
        self._slots: List[asyncio.Task] = []
        self._hooks: Dict[str, List[Hook]] = {event: [] for event in EVENTS}
        self._detached: Set[asyncio.Future] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def on(self, event: str, hook: Hook) -> None:
        """Register ``hook(task, result_or_error)`` for ``completed`` or ``failed``.

        Hooks may be plain callables or coroutine functions. They run
        detached: their errors are logged and never affect the task.
        """
        if event not in self._hooks:
            raise ValueError(f"Unknown worker event {event!r}, expected one of {EVENTS}")
        self._hooks[event].append(hook)

    def start(self) -> None:
        """Spawn the slot loops on the running event loop."""
        if self.running:
            return
        LOGGER.info(
            "[%s] Starting worker on %s (concurrency=%d)",
            self.retailer,
            self.partition,
            self.config.concurrency,
        )
        self.running = True
        self._slots = [
            asyncio.create_task(self._slot_loop(slot), name=f"{self.partition}-slot-{slot}")
            for slot in range(self.config.concurrency)
        ]

    async def run(self) -> None:
        """Start and block until every slot exits (``max_tasks`` or ``stop``)."""
        self.start()
        await asyncio.gather(*self._slots, return_exceptions=True)
        self.running = False
        self._log_stats()

    async def stop(self, grace_period: Optional[float] = None) -> None:
        """Stop dequeuing, wait for in-flight tasks, then cancel what is left.

        Cancelled tasks close their browsing session and go back to the queue.
        """
        grace = self.config.grace_period if grace_period is None else grace_period
        self.running = False
        slots = [slot for slot in self._slots if not slot.done()]
        if slots:
            LOGGER.info(
                "[%s] Stopping worker (%d task(s) in flight, grace %.1fs)",
                self.retailer,
                self.in_flight,
                grace,
            )
            _, pending = await asyncio.wait(slots, timeout=grace)
            for slot in pending:
                slot.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._slots = []
        if self._detached:
            await asyncio.gather(*list(self._detached), return_exceptions=True)
        self._log_stats()

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "concurrency": self.config.concurrency,
            "in_flight": self.in_flight,
            "processed": self.tasks_processed,
            "succeeded": self.tasks_succeeded,
            "failed": self.tasks_failed,
            "last_run_at": self.last_run_at,
        }

    def _limit_reached(self) -> bool:
        if self.config.max_tasks is None:
            return False
        return self.tasks_processed + self.in_flight >= self.config.max_tasks

    async def _slot_loop(self, slot: int) -> None:
        while self.running:
            if self._limit_reached():
                LOGGER.info("[%s] Reached max tasks limit (%d)", self.retailer, self.config.max_tasks)
                break

            try:
                task = await self.queue.dequeue(self.partition, timeout=self.config.dequeue_timeout)
            except Exception as exc:
                LOGGER.error("[%s] Queue error in slot %d: %s", self.retailer, slot, exc, exc_info=True)
                await asyncio.sleep(self.config.error_backoff)
                continue

            if task is None:
                continue

            if not self.running:
                await self._settle(self.queue.release(task.id))
                break

            try:
                await self._process_task(task)
            except Exception as exc:
                LOGGER.error(
                    "[%s] Could not record outcome of task %s: %s",
                    self.retailer,
                    task.describe(),
                    exc,
                    exc_info=True,
                )

    def _is_enabled(self) -> bool:
        return self.dispatcher.services.policy.for_retailer(self.retailer).enabled

    async def _process_task(self, task: Task) -> None:
        """Process a single task.

        Parameters
        ----------
        task : Task
            Task to process
        """
        if not self._is_enabled():
            LOGGER.warning("[%s] Retailer disabled, skipping task %s", self.retailer, task.describe())
            await self._settle(self.queue.ack(task.id))
            return

        LOGGER.info(
            "[%s] Processing task %s (attempt %d/%d)",
            self.retailer,
            task.describe(),
            task.attempts_made + 1,
            task.max_attempts,
        )
        start_time = time.monotonic()
        self._in_flight[task.id] = task
        try:
            result = await self.dispatcher.dispatch(task)
        except asyncio.CancelledError:
            LOGGER.warning("[%s] Task %s interrupted, returning it to the queue", self.retailer, task.describe())
            await self._settle(self.queue.release(task.id))
            raise
        except ConfigurationError as exc:
            LOGGER.error("[%s] Task %s failed without retry: %s", self.retailer, task.describe(), exc)
            await self._settle(self.queue.nack(task.id, str(exc) or type(exc).__name__, retry=False))
            self.tasks_failed += 1
            self._emit("failed", task, exc)
        except Exception as exc:
            LOGGER.error(
                "[%s] Task %s failed after %.2fs: %s",
                self.retailer,
                task.describe(),
                time.monotonic() - start_time,
                exc,
                exc_info=True,
            )
            await self._settle(self.queue.nack(task.id, str(exc) or type(exc).__name__))
            self.tasks_failed += 1
            self._emit("failed", task, exc)
        else:
            await self._settle(self.queue.ack(task.id))
            self.tasks_succeeded += 1
            LOGGER.info(
                "[%s] Task %s completed (took %.2fs)",
                self.retailer,
                task.describe(),
                time.monotonic() - start_time,
            )
            self._emit("completed", task, result)
        finally:
            self._in_flight.pop(task.id, None)
            self.tasks_processed += 1
            self.last_run_at = utcnow()

    async def _settle(self, write: Awaitable[Any]) -> Any:
        """Run a queue state write to completion even if the slot is cancelled.

        The cancellation is re-raised once the write has finished, so a task is
        never left ``active`` by a worker that was stopped mid-write.
        """
        pending = asyncio.ensure_future(write)
        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            await pending
            raise

    def _emit(self, event: str, task: Task, value: Any) -> None:
        for hook in self._hooks[event]:
            try:
                outcome = hook(task, value)
            except Exception as exc:
                LOGGER.warning("[%s] %s hook raised: %s", self.retailer, event, exc)
                continue
            if inspect.isawaitable(outcome):
                future = asyncio.ensure_future(self._guard(event, outcome))
                self._detached.add(future)
                future.add_done_callback(self._detached.discard)

    async def _guard(self, event: str, awaitable: Any) -> None:
        try:
            await awaitable
        except Exception as exc:
            LOGGER.warning("[%s] %s hook raised: %s", self.retailer, event, exc)

    def _log_stats(self) -> None:
        """Log worker statistics."""
        LOGGER.info(
            "[%s] Worker stopped: processed=%d, succeeded=%d, failed=%d",
            self.retailer,
            self.tasks_processed,
            self.tasks_succeeded,
            self.tasks_failed,
        )
