import asyncio

from catalog_etl.models import Task
from catalog_etl.scheduler.dispatcher import Dispatcher
from catalog_etl.scheduler.policy import JobPriority, SchedulerPolicy
from catalog_etl.scheduler.queue import MemoryQueue, partition_name
from catalog_etl.scheduler.registry import CrawlServices, SiteRegistry, default_registry
from catalog_etl.upsert import MemoryCategoryStore, MemoryProductStore

from conftest import FakeBrowser


class StubCrawler:
    def __init__(self, name, retailer, seen, accept=True):
        self.name = name
        self.retailer = retailer
        self.seen = seen
        self.accept = accept

    def can_handle(self, task):
        return self.accept

    async def process(self, session, task):
        self.seen.append((self.name, task.action))
        return f"{self.name} done"


def _services(queue=None, policy=None):
    return CrawlServices(
        MemoryCategoryStore(),
        MemoryProductStore(),
        queue or MemoryQueue(),
        policy or SchedulerPolicy(),
    )


def _task(**payload):
    return Task(id=1, partition="scraper-x", name="T", payload=payload)


def _stub_registry(seen, accept=True):
    registry = SiteRegistry()
    for action in ("discover-categories", "scrape-products"):
        registry.register(
            "vea",
            action,
            lambda services, action=action: StubCrawler(action, "vea", seen, accept),
        )
    return registry


def test_default_registry_covers_vtex_retailers():
    registry = default_registry()

    assert registry.retailers() == ["carrefour", "dia", "disco", "jumbo", "vea"]
    assert registry.actions("vea") == ["discover-categories", "discover-subcategories", "scrape-products"]
    assert registry.resolve("coto", "discover-categories") is None


def test_unknown_retailer_is_dropped_without_side_effects():
    queue = MemoryQueue()
    browser = FakeBrowser()
    dispatcher = Dispatcher(default_registry(), _services(queue), browser)

    async def scenario():
        result = await dispatcher.dispatch(_task(retailer="unknown_store", action="discover-categories"))
        return result, await queue.depth(partition_name("unknown_store"))

    result, depth = asyncio.run(scenario())
    assert result is None
    assert depth == 0
    assert browser.contexts == []


def test_unknown_action_and_missing_fields_are_dropped():
    browser = FakeBrowser()
    dispatcher = Dispatcher(default_registry(), _services(), browser)

    async def scenario():
        return [
            await dispatcher.dispatch(_task(retailer="vea", action="scrape-brands")),
            await dispatcher.dispatch(_task(retailer="vea")),
            await dispatcher.dispatch(_task(action="discover-categories")),
        ]

    assert asyncio.run(scenario()) == [None, None, None]
    assert browser.contexts == []


def test_dispatch_runs_resolved_crawler_in_capped_session():
    seen = []
    browser = FakeBrowser()
    policy = SchedulerPolicy().with_retailer("vea", max_concurrency=3)
    dispatcher = Dispatcher(_stub_registry(seen), _services(policy=policy), browser)

    result = asyncio.run(dispatcher.dispatch(_task(retailer="vea", action="scrape-products")))

    assert result == "scrape-products done"
    assert seen == [("scrape-products", "scrape-products")]
    assert browser.requested_caps == {"vea": 3}
    assert browser.contexts[0].closed


def test_rejected_task_is_dropped():
    seen = []
    browser = FakeBrowser()
    dispatcher = Dispatcher(_stub_registry(seen, accept=False), _services(), browser)

    result = asyncio.run(dispatcher.dispatch(_task(retailer="vea", action="scrape-products")))

    assert result is None
    assert seen == []
    assert browser.contexts == []


def test_full_pipeline_discovers_then_enqueues_catch_all_scrape():
    seen = []
    queue = MemoryQueue()
    dispatcher = Dispatcher(_stub_registry(seen), _services(queue), FakeBrowser())

    async def scenario():
        await dispatcher.dispatch(_task(retailer="vea", action="full-pipeline"))
        return await queue.dequeue(partition_name("vea"), timeout=0)

    follow_up = asyncio.run(scenario())
    assert seen == [("discover-categories", "discover-categories")]
    assert follow_up.name == "SCRAPE_PRODUCTS"
    assert follow_up.priority == JobPriority.SCRAPE_PRODUCT
    assert follow_up.payload == {"retailer": "vea", "action": "scrape-products"}


def test_full_pipeline_for_unknown_retailer_enqueues_nothing():
    queue = MemoryQueue()
    dispatcher = Dispatcher(default_registry(), _services(queue), FakeBrowser())

    async def scenario():
        await dispatcher.dispatch(_task(retailer="unknown_store", action="full-pipeline"))
        return await queue.depth(partition_name("unknown_store"))

    assert asyncio.run(scenario()) == 0
