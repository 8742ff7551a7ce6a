import asyncio
import os

import pytest

from catalog_etl.db import create_pool
from catalog_etl.errors import DuplicateSlugError
from catalog_etl.models import RetailerMapping, TaskStatus
from catalog_etl.scheduler.policy import JobOptions
from catalog_etl.scheduler.queue import PostgresQueue, partition_name
from catalog_etl.upsert import CategoryMatch, CategoryUpdate, PostgresCategoryStore

pytestmark = pytest.mark.skipif(not os.getenv("DATABASE_URL"), reason="DATABASE_URL is not set")

PARTITION = partition_name("vea")


def _run(scenario, options=None):
    async def wrapper():
        pool = await create_pool(min_size=1, max_size=4)
        try:
            queue = PostgresQueue(pool, options, poll_interval=0.05)
            store = PostgresCategoryStore(pool)
            await queue.ensure_schema()
            await store.ensure_schema()
            async with pool.acquire() as conn:
                await conn.execute("TRUNCATE scraper_tasks, categories RESTART IDENTITY")
            return await scenario(pool, queue, store)
        finally:
            await pool.close()

    return asyncio.run(wrapper())


async def _upsert(store, retailer, external_id, name, slug, parent_id=None, match_slug=None):
    return await store.upsert(
        CategoryMatch(
            retailer=retailer,
            external_id=external_id,
            name=name,
            parent_id=parent_id,
            slug=match_slug or slug,
        ),
        CategoryUpdate(
            name=name,
            slug=slug,
            url=f"/{slug}",
            level=0 if parent_id is None else 1,
            parent_id=parent_id,
            retailer=retailer,
            mapping=RetailerMapping(external_id=external_id, url=f"/{slug}", id_path=external_id),
        ),
    )


def test_external_id_match_wins_over_slug_match():
    async def scenario(pool, queue, store):
        almacen = await _upsert(store, "vea", "1", "Almacén", "almacen")
        bebidas = await _upsert(store, "jumbo", "7", "Bebidas", "bebidas")
        again = await _upsert(store, "vea", "1", "Almacén", "almacen", match_slug="bebidas")
        return almacen, bebidas, again

    almacen, bebidas, again = _run(scenario)
    assert again.id == almacen.id
    assert again.id != bebidas.id


def test_same_slug_merges_retailer_mappings():
    async def scenario(pool, queue, store):
        first = await _upsert(store, "jumbo", "500", "Almacén", "almacen")
        second = await _upsert(store, "vea", "9", "Almacén", "almacen")
        return first, second, await store.get(first.id)

    first, second, stored = _run(scenario)
    assert first.id == second.id
    assert stored.mapping_for("jumbo").external_id == "500"
    assert stored.mapping_for("vea").external_id == "9"


def test_slug_taken_by_other_document_is_rejected():
    async def scenario(pool, queue, store):
        await _upsert(store, "vea", "1", "Almacén", "almacen")
        await _upsert(store, "vea", "2", "Bebidas", "bebidas")
        await _upsert(store, "vea", "1", "Almacén", "bebidas", match_slug="almacen")

    with pytest.raises(DuplicateSlugError):
        _run(scenario)


def test_leaves_and_id_path_lookup():
    async def scenario(pool, queue, store):
        parent = await _upsert(store, "vea", "2", "Bebidas", "bebidas")
        child = await _upsert(store, "vea", "21", "Gaseosas", "bebidasgaseosas", parent_id=parent.id)
        leaves = await store.find_leaves("vea")
        return child, leaves, await store.find_by_id_path("vea", "21")

    child, leaves, by_path = _run(scenario)
    assert [leaf.id for leaf in leaves] == [child.id]
    assert by_path.id == child.id


def test_concurrent_dequeue_claims_distinct_tasks():
    async def scenario(pool, queue, store):
        low = await queue.enqueue(PARTITION, "DISCOVER", {"retailer": "vea"}, priority=1)
        high = await queue.enqueue(PARTITION, "SCRAPE", {"retailer": "vea"}, priority=10)
        claimed = await asyncio.gather(
            queue.dequeue(PARTITION, timeout=0),
            queue.dequeue(PARTITION, timeout=0),
        )
        return low, high, claimed

    low, high, claimed = _run(scenario)
    assert sorted(task.id for task in claimed) == sorted([low, high])
    assert all(task.status == TaskStatus.ACTIVE for task in claimed)


def test_nack_retries_then_fails_with_reason():
    async def scenario(pool, queue, store):
        task_id = await queue.enqueue(PARTITION, "SCRAPE", {"retailer": "vea"})
        await queue.dequeue(PARTITION, timeout=0)
        first = await queue.nack(task_id, "timeout")
        second = await queue.nack(task_id, "timeout again", retry=False)
        return first, second, await queue.get_task(task_id)

    first, second, task = _run(scenario, JobOptions(attempts=3))
    assert first == TaskStatus.DELAYED
    assert second == TaskStatus.FAILED
    assert task.attempts_made == 2
    assert task.error == "timeout again"


def test_retention_keeps_latest_completed_tasks():
    async def scenario(pool, queue, store):
        ids = [await queue.enqueue(PARTITION, "SCRAPE", {"retailer": "vea"}) for _ in range(3)]
        for task_id in ids:
            await queue.dequeue(PARTITION, timeout=0)
            await queue.ack(task_id)
        return await queue.stats(PARTITION)

    stats = _run(scenario, JobOptions(keep_completed_count=1))
    assert stats["completed"] == 1


def test_stalled_active_task_is_redelivered():
    async def scenario(pool, queue, store):
        task_id = await queue.enqueue(PARTITION, "SCRAPE", {"retailer": "vea"})
        await queue.dequeue(PARTITION, timeout=0)
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE scraper_tasks SET started_at = NOW() - INTERVAL '2 hours' WHERE task_id = $1",
                task_id,
            )
        return task_id, await queue.dequeue(PARTITION, timeout=0)

    task_id, again = _run(scenario, JobOptions(stalled_timeout=3600))
    assert again.id == task_id
    assert again.attempts_made == 0
