"""Crawlers for retailers running on the VTEX storefront platform.

Every VTEX store exposes the same public catalog API, so one implementation
per action covers carrefour, jumbo, vea, disco and dia. All API calls go
through ``page.context.request`` to reuse the cookies set by the home page.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..discovery import (
    SCRAPE_PRODUCTS_TASK,
    DiscoveryStats,
    discover_categories,
    find_subtree,
)
from ..errors import ConfigurationError
from ..models import Action, CategoryNode, Retailer, ScrapedProduct, Task
from ..scheduler.policy import JobPriority
from ..scheduler.queue import TaskQueue, partition_name
from ..upsert import CategoryStore, ProductStore
from .base import CrawlSession

LOGGER = logging.getLogger(__name__)

NAVIGATION_TIMEOUT_MS = 60_000


@dataclass(frozen=True)
class VtexSite:
    """Storefront location of one VTEX retailer."""

    retailer: str
    base_url: str
    tree_depth: int = 3
    page_size: int = 50

    @property
    def home_url(self) -> str:
        return f"{self.base_url}/"

    @property
    def category_tree_url(self) -> str:
        return f"{self.base_url}/api/catalog_system/pub/category/tree/{self.tree_depth}"

    def search_url(self, id_path: str, start: int) -> str:
        end = start + self.page_size - 1
        return (
            f"{self.base_url}/api/catalog_system/pub/products/search"
            f"?fq=C:{id_path}&_from={start}&_to={end}"
        )


VTEX_SITES: Dict[str, VtexSite] = {
    Retailer.CARREFOUR.value: VtexSite(Retailer.CARREFOUR.value, "https://www.carrefour.com.ar"),
    Retailer.JUMBO.value: VtexSite(Retailer.JUMBO.value, "https://www.jumbo.com.ar"),
    Retailer.VEA.value: VtexSite(Retailer.VEA.value, "https://www.vea.com.ar"),
    Retailer.DISCO.value: VtexSite(Retailer.DISCO.value, "https://www.disco.com.ar"),
    Retailer.DIA.value: VtexSite(Retailer.DIA.value, "https://diaonline.supermercadosdia.com.ar"),
}


async def open_home(page: Any, site: VtexSite) -> None:
    """Load the storefront so the session carries the site's cookies."""
    await page.goto(site.home_url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)


async def fetch_category_tree(page: Any, site: VtexSite) -> List[CategoryNode]:
    """Fetch and parse the category tree; any failure yields an empty tree."""
    try:
        response = await page.context.request.get(site.category_tree_url)
        if not response.ok:
            LOGGER.error(
                "[%s] Category tree request failed with status %s",
                site.retailer,
                response.status,
            )
            return []
        raw = await response.json()
    except Exception as exc:
        LOGGER.error("[%s] Failed to fetch category tree: %s", site.retailer, exc)
        return []
    return CategoryNode.parse_tree(raw)


def parse_product(
    retailer: str,
    raw: Dict[str, Any],
    category_id: Optional[int] = None,
) -> Optional[ScrapedProduct]:
    """Map one search API product onto a ScrapedProduct.

    Prices come from the default seller of the first SKU. Products without
    SKUs or without an id are skipped (returns None).
    """
    items = raw.get("items") or []
    if not items or raw.get("productId") is None:
        return None

    main_item = items[0]
    sellers = main_item.get("sellers") or []
    seller = next((s for s in sellers if s.get("sellerDefault")), sellers[0] if sellers else None)
    offer = (seller or {}).get("commertialOffer") or {}

    return ScrapedProduct(
        retailer=retailer,
        external_id=str(raw["productId"]),
        name=raw.get("productName") or "",
        brand=raw.get("brand") or None,
        url=raw.get("link") or "",
        category_id=category_id,
        ean=main_item.get("ean") or None,
        price=offer.get("Price"),
        list_price=offer.get("ListPrice"),
        available=(offer.get("AvailableQuantity") or 0) > 0,
        raw=raw,
    )


class VtexCategoryDiscovery:
    """Walks the whole category tree of a VTEX retailer."""

    name = "category-discovery"

    def __init__(self, site: VtexSite, store: CategoryStore, queue: TaskQueue) -> None:
        self.site = site
        self.retailer = site.retailer
        self.store = store
        self.queue = queue

    def can_handle(self, task: Task) -> bool:
        return task.action == Action.DISCOVER_CATEGORIES.value

    async def process(self, session: CrawlSession, task: Task) -> DiscoveryStats:
        await open_home(session.page, self.site)
        LOGGER.info("[%s] Fetching full category tree via API", self.retailer)
        nodes = await fetch_category_tree(session.page, self.site)
        return await discover_categories(self.retailer, nodes, store=self.store, queue=self.queue)


class VtexSubcategoryCrawl:
    """Re-discovers the subtree below one category.

    The payload addresses the category by ``idPath`` or by ``categoryId``
    (resolved through this retailer's mapping).
    """

    name = "subcategory-crawl"

    def __init__(self, site: VtexSite, store: CategoryStore, queue: TaskQueue) -> None:
        self.site = site
        self.retailer = site.retailer
        self.store = store
        self.queue = queue

    def can_handle(self, task: Task) -> bool:
        return task.action == Action.DISCOVER_SUBCATEGORIES.value

    async def _resolve_id_path(self, task: Task) -> str:
        id_path = task.payload.get("idPath")
        if id_path:
            return str(id_path).strip("/")

        category_id = task.payload.get("categoryId")
        if category_id is not None:
            category = await self.store.get(int(category_id))
            mapping = category.mapping_for(self.retailer) if category else None
            if mapping is not None and mapping.id_path:
                return mapping.id_path

        raise ConfigurationError(
            f"{Action.DISCOVER_SUBCATEGORIES.value} for {self.retailer} needs an idPath "
            "or a categoryId mapped to this retailer"
        )

    async def process(self, session: CrawlSession, task: Task) -> DiscoveryStats:
        id_path = await self._resolve_id_path(task)

        await open_home(session.page, self.site)
        nodes = await fetch_category_tree(session.page, self.site)
        node = find_subtree(nodes, id_path)
        if node is None:
            LOGGER.warning("[%s] Category %s not found in current tree", self.retailer, id_path)
            return DiscoveryStats()

        parent_path = id_path.rsplit("/", 1)[0] if "/" in id_path else ""
        parent_id = None
        if parent_path:
            parent = await self.store.find_by_id_path(self.retailer, parent_path)
            if parent is None:
                LOGGER.warning(
                    "[%s] Parent %s of %s is not stored yet; subtree is attached at the root",
                    self.retailer,
                    parent_path,
                    id_path,
                )
            else:
                parent_id = parent.id

        return await discover_categories(
            self.retailer,
            [node],
            store=self.store,
            queue=self.queue,
            parent_id=parent_id,
            id_path=parent_path,
            level=id_path.count("/"),
        )


class VtexProductScrape:
    """Pages through the product search API for one category.

    Without a category in the payload the task fans out one product-scrape
    task per leaf category already mapped for this retailer.
    """

    name = "product-scrape"

    def __init__(
        self,
        site: VtexSite,
        store: CategoryStore,
        product_store: ProductStore,
        queue: TaskQueue,
        *,
        request_delay: float = 1.0,
    ) -> None:
        self.site = site
        self.retailer = site.retailer
        self.store = store
        self.product_store = product_store
        self.queue = queue
        self.request_delay = request_delay

    def can_handle(self, task: Task) -> bool:
        return task.action == Action.SCRAPE_PRODUCTS.value

    async def process(self, session: CrawlSession, task: Task) -> int:
        id_path = task.payload.get("idPath") or task.payload.get("externalId")
        if not id_path:
            return await self.fan_out()

        await open_home(session.page, self.site)
        return await self.scrape_category(
            session.page,
            str(id_path),
            category_id=task.payload.get("categoryId"),
        )

    async def fan_out(self) -> int:
        """Enqueue one product-scrape task per mapped leaf category."""
        leaves = await self.store.find_leaves(self.retailer)
        for category in leaves:
            mapping = category.mapping_for(self.retailer)
            await self.queue.enqueue(
                partition_name(self.retailer),
                SCRAPE_PRODUCTS_TASK,
                {
                    "retailer": self.retailer,
                    "action": Action.SCRAPE_PRODUCTS.value,
                    "categoryId": category.id,
                    "externalId": mapping.external_id,
                    "url": mapping.url,
                    "idPath": mapping.id_path,
                },
                priority=int(JobPriority.SCRAPE_PRODUCT),
            )
        LOGGER.info("[%s] Enqueued product scrape for %d leaf categories", self.retailer, len(leaves))
        return len(leaves)

    async def scrape_category(
        self,
        page: Any,
        id_path: str,
        *,
        category_id: Optional[int] = None,
    ) -> int:
        """Scrape every page of results for a category.

        Returns
        -------
        int
            Number of products written
        """
        LOGGER.info("[%s] Fetching products for category %s", self.retailer, id_path)
        start = 0
        scraped = 0

        while True:
            response = await page.context.request.get(self.site.search_url(id_path, start))
            if not response.ok:
                LOGGER.warning(
                    "[%s] Search API returned status %s for %s (offset %d)",
                    self.retailer,
                    response.status,
                    id_path,
                    start,
                )
                break

            try:
                products = await response.json()
            except Exception as exc:
                LOGGER.error("[%s] Search API JSON parse error: %s", self.retailer, exc)
                break
            if not products:
                break

            LOGGER.info("[%s] Processing %d products (offset %d)", self.retailer, len(products), start)
            for raw in products:
                try:
                    product = parse_product(self.retailer, raw, category_id)
                    if product is None:
                        continue
                    await self.product_store.upsert(product)
                    scraped += 1
                except Exception as exc:
                    LOGGER.error(
                        "[%s] Error saving product %s: %s",
                        self.retailer,
                        raw.get("productId") if isinstance(raw, dict) else raw,
                        exc,
                    )

            if len(products) < self.site.page_size:
                break
            start += self.site.page_size
            await asyncio.sleep(self.request_delay)

        LOGGER.info("[%s] Category %s done: %d products", self.retailer, id_path, scraped)
        return scraped
