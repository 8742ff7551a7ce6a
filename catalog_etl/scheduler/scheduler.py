"""Owner of the per-retailer workers and the operational control surface."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models import Action, Task
from .dispatcher import Dispatcher
from .policy import JobPriority, SchedulerPolicy
from .queue import TaskQueue, partition_name
from .worker import Hook, Worker, WorkerConfig

LOGGER = logging.getLogger(__name__)

# Task name and priority used when an operator triggers an action
TRIGGERS: Dict[Action, Tuple[str, JobPriority]] = {
    Action.DISCOVER_CATEGORIES: ("DISCOVER_{retailer}", JobPriority.DISCOVER),
    Action.DISCOVER_SUBCATEGORIES: ("CRAWL_CATEGORY", JobPriority.CRAWL_CATEGORY),
    Action.SCRAPE_PRODUCTS: ("SCRAPE_PRODUCT", JobPriority.SCRAPE_PRODUCT),
    Action.FULL_PIPELINE: ("FULL_PIPELINE", JobPriority.DISCOVER),
}


class Scheduler:
    """Boots one worker per retailer and exposes stop/restart/trigger controls.

    The worker table is built by ``start()`` and only changed through
    ``stop_worker`` / ``restart_worker``.
    """

    def __init__(
        self,
        queue: TaskQueue,
        dispatcher: Dispatcher,
        policy: Optional[SchedulerPolicy] = None,
        *,
        retailers: Optional[Iterable[str]] = None,
        worker_config: Optional[WorkerConfig] = None,
    ) -> None:
        """Initialize scheduler.

        Parameters
        ----------
        queue : TaskQueue
            Queue holding every retailer partition
        dispatcher : Dispatcher
            Shared dispatcher
        policy : SchedulerPolicy, optional
            Policy table; defaults to the dispatcher's current one
        retailers : iterable of str, optional
            Retailers to run workers for; defaults to every retailer in the policy
        worker_config : WorkerConfig, optional
            Template for worker settings; ``concurrency`` always comes from the policy
        """
        self.queue = queue
        self.dispatcher = dispatcher
        self.policy = policy or dispatcher.services.policy
        self.dispatcher.services.policy = self.policy
        self.worker_config = worker_config or WorkerConfig()
        self._retailers = list(retailers) if retailers is not None else None
        self.workers: Dict[str, Worker] = {}
        self._hooks: List[Tuple[str, Hook]] = []
        self._configure_partitions()

    @property
    def retailers(self) -> List[str]:
        if self._retailers is None:
            return self.policy.ordered_retailers()
        return sorted(self._retailers, key=lambda r: (self.policy.for_retailer(r).priority, r))

    def _configure_partitions(self) -> None:
        for retailer in self.retailers:
            self.queue.configure(partition_name(retailer), self.policy.for_retailer(retailer).job_options)

    def on(self, event: str, hook: Hook) -> None:
        """Register a ``completed``/``failed`` hook on every current and future worker."""
        self._hooks.append((event, hook))
        for worker in self.workers.values():
            worker.on(event, hook)

    def _build_worker(self, retailer: str) -> Worker:
        retailer_policy = self.policy.for_retailer(retailer)
        config = replace(self.worker_config, concurrency=retailer_policy.max_concurrency)
        worker = Worker(retailer, self.queue, self.dispatcher, config)
        for event, hook in self._hooks:
            worker.on(event, hook)
        return worker

    async def start(self) -> None:
        """Build and start one worker per retailer, in priority order."""
        for retailer in self.retailers:
            if retailer in self.workers:
                continue
            worker = self._build_worker(retailer)
            worker.start()
            self.workers[retailer] = worker
        LOGGER.info("%d workers started: %s", len(self.workers), ", ".join(self.workers))

    async def status(self) -> Dict[str, Dict[str, Any]]:
        """Queue and worker health per retailer."""
        report: Dict[str, Dict[str, Any]] = {}
        for retailer in self.retailers:
            partition = partition_name(retailer)
            retailer_policy = self.policy.for_retailer(retailer)
            worker = self.workers.get(retailer)
            report[retailer] = {
                "partition": partition,
                "enabled": retailer_policy.enabled,
                "priority": retailer_policy.priority,
                "max_concurrency": retailer_policy.max_concurrency,
                "depth": await self.queue.depth(partition),
                "tasks": await self.queue.stats(partition),
                "worker": worker.stats() if worker else None,
            }
        return report

    async def stop_worker(self, retailer: str, grace_period: Optional[float] = None) -> bool:
        worker = self.workers.pop(retailer, None)
        if worker is None:
            LOGGER.warning("No running worker for %s", retailer)
            return False
        await worker.stop(grace_period)
        LOGGER.info("Worker for %s stopped", retailer)
        return True

    async def restart_worker(self, retailer: str, grace_period: Optional[float] = None) -> Worker:
        """Replace the worker of ``retailer`` using the current policy."""
        if retailer in self.workers:
            LOGGER.info("Restarting worker for %s", retailer)
            await self.stop_worker(retailer, grace_period)

        self.queue.configure(partition_name(retailer), self.policy.for_retailer(retailer).job_options)
        worker = self._build_worker(retailer)
        worker.start()
        self.workers[retailer] = worker
        LOGGER.info(
            "Worker for %s restarted (concurrency=%d)",
            retailer,
            worker.config.concurrency,
        )
        return worker

    def reload_policy(self, policy: SchedulerPolicy) -> None:
        """Swap the policy table.

        Enabled flags, request delays and job options apply immediately;
        concurrency changes apply on ``restart_worker``.
        """
        self.policy = policy
        self.dispatcher.services.policy = policy
        self._configure_partitions()
        LOGGER.info("Scheduler policy reloaded")

    async def trigger(
        self,
        retailer: str,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Enqueue an operator-triggered task into the retailer's partition.

        Returns
        -------
        int
            Task ID
        """
        kind = Action(action)
        name_template, priority = TRIGGERS[kind]
        data = dict(payload or {})
        data.update({"retailer": retailer, "action": kind.value})
        task_id = await self.queue.enqueue(
            partition_name(retailer),
            name_template.format(retailer=retailer.upper()),
            data,
            priority=int(priority),
        )
        LOGGER.info("Triggered %s for %s as task %s", kind.value, retailer, task_id)
        return task_id

    async def purge(self, retailer: str) -> int:
        return await self.queue.purge(partition_name(retailer))

    async def cancel(self, task_id: int) -> bool:
        cancelled = await self.queue.cancel(task_id)
        if not cancelled:
            LOGGER.warning("Task %s is no longer pending, not cancelled", task_id)
        return cancelled

    async def get_task(self, task_id: int) -> Optional[Task]:
        return await self.queue.get_task(task_id)

    async def clean(self) -> Dict[str, int]:
        """Apply retention to every partition."""
        return {retailer: await self.queue.clean(partition_name(retailer)) for retailer in self.retailers}

    async def shutdown(self, grace_period: Optional[float] = None) -> None:
        """Stop every worker concurrently."""
        LOGGER.info("Shutting down %d worker(s)", len(self.workers))
        workers = list(self.workers.items())
        self.workers = {}
        await asyncio.gather(*(worker.stop(grace_period) for _, worker in workers))
        LOGGER.info("Scheduler stopped")
