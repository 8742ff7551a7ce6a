"""Shared Playwright browser handing out isolated, capped browsing contexts."""
from __future__ import annotations

import asyncio
import logging
import os
import random
from typing import Any, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright

LOGGER = logging.getLogger(__name__)

HEADLESS_ENV = "CRAWL_HEADLESS"

DESKTOP_USER_AGENTS: List[str] = [
    # Chrome on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    # Chrome on macOS
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    # Chrome on Linux
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    # Edge on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
]

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]


def headless_from_env() -> bool:
    return os.getenv(HEADLESS_ENV, "true").strip().lower() not in ("0", "false", "no")


def context_options(user_agent: Optional[str] = None) -> Dict[str, Any]:
    """Browser context settings for Argentine retail sites."""
    return {
        "user_agent": user_agent or random.choice(DESKTOP_USER_AGENTS),
        "viewport": {"width": 1920, "height": 1080},
        "locale": "es-AR",
        "timezone_id": "America/Argentina/Buenos_Aires",
        "permissions": ["geolocation"],
        "geolocation": {"latitude": -34.6037, "longitude": -58.3816},
    }


class PooledContext:
    """Browser context that gives its slot back when closed.

    Everything except ``close`` is delegated to the wrapped context.
    """

    def __init__(self, context: BrowserContext, slots: asyncio.Semaphore) -> None:
        self._context = context
        self._slots = slots
        self._released = False

    def __getattr__(self, name: str) -> Any:
        return getattr(self._context, name)

    async def new_page(self) -> Any:
        return await self._context.new_page()

    async def close(self) -> None:
        try:
            await self._context.close()
        finally:
            if not self._released:
                self._released = True
                self._slots.release()


class RetailerSessions:
    """Session factory for one retailer, capped at ``max_contexts`` open contexts."""

    def __init__(self, pool: "BrowserPool", retailer: str, max_contexts: int) -> None:
        self.pool = pool
        self.retailer = retailer
        self.max_contexts = max_contexts
        self._slots = asyncio.Semaphore(max_contexts)

    async def create_context(self) -> PooledContext:
        await self._slots.acquire()
        try:
            browser = await self.pool.get_browser()
            context = await browser.new_context(**context_options())
        except BaseException:
            self._slots.release()
            raise
        LOGGER.debug("[%s] Opened browser context", self.retailer)
        return PooledContext(context, self._slots)


class BrowserPool:
    """One lazily launched Chromium shared by every retailer.

    Contexts are never shared: each ``create_context`` call opens a new one.
    """

    def __init__(self, *, headless: Optional[bool] = None) -> None:
        """Initialize browser pool.

        Parameters
        ----------
        headless : bool, optional
            Run Chromium headless; defaults to ``$CRAWL_HEADLESS`` (true)
        """
        self.headless = headless_from_env() if headless is None else headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock: Optional[asyncio.Lock] = None
        self._sessions: Dict[str, RetailerSessions] = {}

    async def get_browser(self) -> Browser:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser

            if self._playwright is None:
                self._playwright = await async_playwright().start()
            LOGGER.info("Launching Chromium (headless=%s)", self.headless)
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=LAUNCH_ARGS,
            )
            return self._browser

    def sessions(self, retailer: str, max_contexts: int) -> RetailerSessions:
        """Session factory for ``retailer``.

        The factory is rebuilt when the cap changes; contexts opened through
        the previous factory keep releasing into their own semaphore.
        """
        current = self._sessions.get(retailer)
        if current is None or current.max_contexts != max_contexts:
            current = RetailerSessions(self, retailer, max_contexts)
            self._sessions[retailer] = current
        return current

    async def close(self) -> None:
        """Close the browser and stop Playwright."""
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as exc:
                LOGGER.warning("Error closing browser: %s", exc)
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        LOGGER.info("Browser pool closed")
