"""Static routing table from (retailer, action) to crawler factories."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..crawlers.base import CrawlTask
from ..crawlers.vtex import (
    VTEX_SITES,
    VtexCategoryDiscovery,
    VtexProductScrape,
    VtexSite,
    VtexSubcategoryCrawl,
)
from ..models import Action
from ..upsert import CategoryStore, ProductStore
from .policy import SchedulerPolicy
from .queue import TaskQueue

LOGGER = logging.getLogger(__name__)


@dataclass
class CrawlServices:
    """Collaborators handed to every crawler factory.

    ``policy`` is swapped by ``Scheduler.reload_policy``; factories read it
    on every dispatch.
    """

    store: CategoryStore
    product_store: ProductStore
    queue: TaskQueue
    policy: SchedulerPolicy = field(default_factory=SchedulerPolicy)


CrawlerFactory = Callable[[CrawlServices], CrawlTask]


class SiteRegistry:
    """Mapping ``retailer -> action -> factory``."""

    def __init__(self) -> None:
        self._factories: Dict[str, Dict[str, CrawlerFactory]] = {}

    def register(self, retailer: str, action: str, factory: CrawlerFactory) -> None:
        self._factories.setdefault(retailer, {})[action] = factory

    def has_retailer(self, retailer: str) -> bool:
        return retailer in self._factories

    def resolve(self, retailer: str, action: str) -> Optional[CrawlerFactory]:
        return self._factories.get(retailer, {}).get(action)

    def retailers(self) -> List[str]:
        return sorted(self._factories)

    def actions(self, retailer: str) -> List[str]:
        return sorted(self._factories.get(retailer, {}))


def _category_discovery(site: VtexSite) -> CrawlerFactory:
    def factory(services: CrawlServices) -> CrawlTask:
        return VtexCategoryDiscovery(site, services.store, services.queue)

    return factory


def _subcategory_crawl(site: VtexSite) -> CrawlerFactory:
    def factory(services: CrawlServices) -> CrawlTask:
        return VtexSubcategoryCrawl(site, services.store, services.queue)

    return factory


def _product_scrape(site: VtexSite) -> CrawlerFactory:
    def factory(services: CrawlServices) -> CrawlTask:
        return VtexProductScrape(
            site,
            services.store,
            services.product_store,
            services.queue,
            request_delay=services.policy.for_retailer(site.retailer).request_delay,
        )

    return factory


def default_registry() -> SiteRegistry:
    """Registry with every VTEX retailer wired for all three crawl actions."""
    registry = SiteRegistry()
    for retailer, site in VTEX_SITES.items():
        registry.register(retailer, Action.DISCOVER_CATEGORIES.value, _category_discovery(site))
        registry.register(retailer, Action.DISCOVER_SUBCATEGORIES.value, _subcategory_crawl(site))
        registry.register(retailer, Action.SCRAPE_PRODUCTS.value, _product_scrape(site))
    LOGGER.debug("Registered crawlers for %s", ", ".join(registry.retailers()))
    return registry
