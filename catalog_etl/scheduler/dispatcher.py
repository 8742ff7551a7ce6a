"""Routes a dequeued task to the crawler registered for it."""
from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from ..crawlers.base import SessionFactory, execute
from ..discovery import SCRAPE_PRODUCTS_TASK
from ..models import Action, Task
from .policy import JobPriority
from .queue import partition_name
from .registry import CrawlServices, SiteRegistry

LOGGER = logging.getLogger(__name__)


class SessionProvider(Protocol):
    """Hands out a session factory per retailer (``BrowserPool`` in production)."""

    def sessions(self, retailer: str, max_contexts: int) -> SessionFactory:
        ...


class Dispatcher:
    """Resolve ``(retailer, action)`` and run the crawler inside a session."""

    def __init__(
        self,
        registry: SiteRegistry,
        services: CrawlServices,
        browser: SessionProvider,
    ) -> None:
        """Initialize dispatcher.

        Parameters
        ----------
        registry : SiteRegistry
            Routing table
        services : CrawlServices
            Collaborators passed to crawler factories
        browser : SessionProvider
            Source of browsing sessions, capped per retailer by the policy
        """
        self.registry = registry
        self.services = services
        self.browser = browser

    async def dispatch(self, task: Task) -> Any:
        """Run ``task``; unroutable tasks are logged and dropped (returns None)."""
        retailer = task.retailer
        action = task.action

        if not retailer or not action:
            LOGGER.warning(
                "Task %s#%s has no retailer or action (retailer=%s, action=%s), dropping",
                task.name,
                task.id,
                retailer,
                action,
            )
            return None

        if action == Action.FULL_PIPELINE.value:
            return await self._full_pipeline(retailer, task)

        return await self._run_action(retailer, action, task)

    async def _full_pipeline(self, retailer: str, task: Task) -> Any:
        if not self.registry.has_retailer(retailer):
            LOGGER.warning(
                "No crawlers registered for retailer %r, dropping full pipeline (available: %s)",
                retailer,
                ", ".join(self.registry.retailers()),
            )
            return None

        LOGGER.info("[%s] Starting full pipeline", retailer)
        result = await self._run_action(retailer, Action.DISCOVER_CATEGORIES.value, task)

        # Catch-all for products not reachable from the leaves discovered above
        task_id = await self.services.queue.enqueue(
            partition_name(retailer),
            SCRAPE_PRODUCTS_TASK,
            {"retailer": retailer, "action": Action.SCRAPE_PRODUCTS.value},
            priority=int(JobPriority.SCRAPE_PRODUCT),
        )
        LOGGER.info(
            "[%s] Full pipeline: categories done, product scrape enqueued as task %s",
            retailer,
            task_id,
        )
        return result

    async def _run_action(self, retailer: str, action: str, task: Task) -> Optional[Any]:
        if not self.registry.has_retailer(retailer):
            LOGGER.warning(
                "No crawler registered for retailer %r (available: %s), dropping task %s#%s",
                retailer,
                ", ".join(self.registry.retailers()),
                task.name,
                task.id,
            )
            return None

        factory = self.registry.resolve(retailer, action)
        if factory is None:
            LOGGER.warning(
                "No crawler registered for retailer %r, action %r (available: %s), dropping task %s#%s",
                retailer,
                action,
                ", ".join(self.registry.actions(retailer)),
                task.name,
                task.id,
            )
            return None

        if task.action != action:
            task = task.model_copy(update={"payload": {**task.payload, "action": action}})

        crawler = factory(self.services)
        if not crawler.can_handle(task):
            LOGGER.warning(
                "[%s] %s cannot handle task %s, dropping",
                retailer,
                crawler.name,
                task.describe(),
            )
            return None

        LOGGER.info("[%s] Running %s for task %s", retailer, crawler.name, task.describe())
        max_contexts = self.services.policy.for_retailer(retailer).max_concurrency
        return await execute(crawler, task, self.browser.sessions(retailer, max_contexts))
