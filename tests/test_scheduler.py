import asyncio

import pytest

from catalog_etl.models import TaskStatus
from catalog_etl.scheduler.dispatcher import Dispatcher
from catalog_etl.scheduler.policy import JobOptions, JobPriority, SchedulerPolicy
from catalog_etl.scheduler.queue import MemoryQueue, partition_name
from catalog_etl.scheduler.registry import CrawlServices, SiteRegistry
from catalog_etl.scheduler.scheduler import Scheduler
from catalog_etl.scheduler.worker import WorkerConfig
from catalog_etl.upsert import MemoryCategoryStore, MemoryProductStore

from conftest import FakeBrowser


class EchoCrawler:
    name = "echo"

    def __init__(self, retailer, done):
        self.retailer = retailer
        self.done = done

    def can_handle(self, task):
        return True

    async def process(self, session, task):
        self.done.append((self.retailer, task.id))
        return task.id


def _scheduler(policy=None, done=None, retailers=("vea", "jumbo")):
    done = done if done is not None else []
    queue = MemoryQueue()
    registry = SiteRegistry()
    for retailer in retailers:
        registry.register(retailer, "scrape-products", lambda services, r=retailer: EchoCrawler(r, done))
    services = CrawlServices(MemoryCategoryStore(), MemoryProductStore(), queue)
    dispatcher = Dispatcher(registry, services, FakeBrowser())
    return Scheduler(
        queue,
        dispatcher,
        policy or SchedulerPolicy(),
        retailers=retailers,
        worker_config=WorkerConfig(dequeue_timeout=0.01),
    )


async def _wait_for(predicate, attempts=100):
    for _ in range(attempts):
        if await predicate():
            return True
        await asyncio.sleep(0.01)
    return False


def test_start_builds_one_worker_per_retailer_from_policy():
    policy = SchedulerPolicy().with_retailer("vea", max_concurrency=4)
    scheduler = _scheduler(policy)

    async def scenario():
        await scheduler.start()
        workers = {r: w.config.concurrency for r, w in scheduler.workers.items()}
        status = await scheduler.status()
        await scheduler.shutdown(grace_period=1)
        return workers, status

    workers, status = asyncio.run(scenario())
    assert workers == {"jumbo": 1, "vea": 4}
    assert list(status) == ["jumbo", "vea"]
    assert status["vea"]["partition"] == "scraper-vea"
    assert status["vea"]["worker"]["running"] is True
    assert status["vea"]["tasks"]["waiting"] == 0
    assert scheduler.workers == {}


def test_trigger_uses_action_name_and_priority():
    scheduler = _scheduler()

    async def scenario():
        ids = [
            await scheduler.trigger("vea", "discover-categories"),
            await scheduler.trigger("vea", "discover-subcategories", {"idPath": "2"}),
            await scheduler.trigger("vea", "scrape-products", {"categoryId": 3}),
            await scheduler.trigger("vea", "full-pipeline"),
        ]
        return [await scheduler.get_task(task_id) for task_id in ids]

    discover, crawl, scrape, pipeline = asyncio.run(scenario())
    assert (discover.name, discover.priority) == ("DISCOVER_VEA", JobPriority.DISCOVER)
    assert (crawl.name, crawl.priority) == ("CRAWL_CATEGORY", JobPriority.CRAWL_CATEGORY)
    assert crawl.payload == {"idPath": "2", "retailer": "vea", "action": "discover-subcategories"}
    assert (scrape.name, scrape.priority) == ("SCRAPE_PRODUCT", JobPriority.SCRAPE_PRODUCT)
    assert pipeline.name == "FULL_PIPELINE"
    assert all(t.partition == "scraper-vea" for t in (discover, crawl, scrape, pipeline))


def test_trigger_rejects_unknown_action():
    scheduler = _scheduler()

    with pytest.raises(ValueError):
        asyncio.run(scheduler.trigger("vea", "scrape-brands"))


def test_triggered_tasks_are_processed_by_workers():
    done = []
    scheduler = _scheduler(done=done)

    async def scenario():
        await scheduler.start()
        vea_id = await scheduler.trigger("vea", "scrape-products", {"idPath": "1"})
        jumbo_id = await scheduler.trigger("jumbo", "scrape-products", {"idPath": "1"})

        async def both_done():
            return len(done) == 2

        await _wait_for(both_done)
        await scheduler.shutdown(grace_period=1)
        return vea_id, jumbo_id, await scheduler.get_task(vea_id)

    vea_id, jumbo_id, vea_task = asyncio.run(scenario())
    assert sorted(done) == [("jumbo", jumbo_id), ("vea", vea_id)]
    assert vea_task.status == TaskStatus.COMPLETED


def test_stop_and_restart_worker_applies_new_policy():
    scheduler = _scheduler()

    async def scenario():
        await scheduler.start()
        stopped = await scheduler.stop_worker("vea", grace_period=1)
        stopped_again = await scheduler.stop_worker("vea")
        scheduler.reload_policy(scheduler.policy.with_retailer("vea", max_concurrency=2))
        worker = await scheduler.restart_worker("vea", grace_period=1)
        concurrency = worker.config.concurrency
        running = worker.running
        await scheduler.shutdown(grace_period=1)
        return stopped, stopped_again, concurrency, running

    stopped, stopped_again, concurrency, running = asyncio.run(scenario())
    assert stopped is True
    assert stopped_again is False
    assert concurrency == 2
    assert running is True


def test_reload_policy_reconfigures_partitions():
    scheduler = _scheduler()
    policy = SchedulerPolicy.from_dict({"job_options": {"attempts": 6}})

    async def scenario():
        scheduler.reload_policy(policy)
        task_id = await scheduler.trigger("jumbo", "scrape-products")
        return await scheduler.get_task(task_id)

    task = asyncio.run(scenario())
    assert task.max_attempts == 6
    assert scheduler.dispatcher.services.policy is policy


def test_cancel_and_purge():
    scheduler = _scheduler()

    async def scenario():
        first = await scheduler.trigger("vea", "scrape-products")
        await scheduler.trigger("vea", "scrape-products")
        await scheduler.trigger("vea", "scrape-products")
        cancelled = await scheduler.cancel(first)
        purged = await scheduler.purge("vea")
        return cancelled, purged, await scheduler.get_task(first)

    cancelled, purged, task = asyncio.run(scenario())
    assert cancelled is True
    assert purged == 2
    assert task.status == TaskStatus.CANCELLED


def test_partitions_get_policy_job_options():
    policy = SchedulerPolicy.from_dict({"retailers": {"vea": {"job_options": {"attempts": 9}}}})
    scheduler = _scheduler(policy)

    assert scheduler.queue.options_for(partition_name("vea")) == JobOptions(attempts=9)
    assert scheduler.queue.options_for(partition_name("jumbo")).attempts == 3
