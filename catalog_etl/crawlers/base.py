"""Crawl task interface and the session lifecycle every task runs inside."""
from __future__ import annotations

import logging
import time
from typing import Any, Optional, Protocol

from ..errors import SessionUnavailableError
from ..models import Task

LOGGER = logging.getLogger(__name__)


class SessionFactory(Protocol):
    """Source of isolated browsing contexts (a Playwright browser or a pool)."""

    async def create_context(self) -> Any:
        """Open a fresh browsing context.

        Returns
        -------
        BrowserContext
            Object exposing ``new_page()`` and ``close()``
        """
        ...


class CrawlSession:
    """Context and page pair owned by exactly one task execution."""

    def __init__(self, context: Any, page: Any) -> None:
        self.context = context
        self.page = page


class CrawlTask(Protocol):
    """One unit of site-specific work for a (retailer, action) pair."""

    name: str
    retailer: str

    def can_handle(self, task: Task) -> bool:
        """Whether this crawler accepts ``task``."""
        ...

    async def process(self, session: CrawlSession, task: Task) -> Any:
        """Do the work with an already opened session.

        Parameters
        ----------
        session : CrawlSession
            Page and context reserved for this call
        task : Task
            Task being executed

        Returns
        -------
        Any
            Crawler specific result (discovery stats, scraped count, ...)
        """
        ...


async def execute(crawl_task: CrawlTask, task: Task, sessions: SessionFactory) -> Any:
    """Run ``crawl_task`` for ``task`` inside a freshly acquired session.

    The page and the context are closed on every exit path, including
    cancellation. Errors raised while closing are logged and never replace
    the result or the error of ``process``. Retrying is left to the queue.

    Raises
    ------
    SessionUnavailableError
        When the session factory cannot provide a usable page
    """
    LOGGER.info(
        "[%s] Starting %s for task %s",
        crawl_task.retailer,
        crawl_task.name,
        task.describe(),
    )
    start_time = time.monotonic()

    context: Optional[Any] = None
    page: Optional[Any] = None
    try:
        context = await sessions.create_context()
        if context is None:
            raise SessionUnavailableError(
                f"No browser context available for {crawl_task.retailer}"
            )
        page = await context.new_page()
        if page is None:
            raise SessionUnavailableError(
                f"Could not open a page for {crawl_task.retailer}"
            )

        result = await crawl_task.process(CrawlSession(context, page), task)
    except BaseException as exc:
        LOGGER.error(
            "[%s] %s failed for task %s after %.2fs: %s",
            crawl_task.retailer,
            crawl_task.name,
            task.describe(),
            time.monotonic() - start_time,
            str(exc) or type(exc).__name__,
        )
        raise
    finally:
        await _close_quietly(page, "page", crawl_task.retailer)
        await _close_quietly(context, "context", crawl_task.retailer)

    LOGGER.info(
        "[%s] Finished %s for task %s (took %.2fs)",
        crawl_task.retailer,
        crawl_task.name,
        task.describe(),
        time.monotonic() - start_time,
    )
    return result


async def _close_quietly(resource: Optional[Any], kind: str, retailer: str) -> None:
    if resource is None:
        return
    try:
        await resource.close()
    except Exception as exc:
        LOGGER.warning("[%s] Error closing %s: %s", retailer, kind, exc)
