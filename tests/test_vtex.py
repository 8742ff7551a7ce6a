import asyncio

import pytest

from catalog_etl.crawlers.base import execute
from catalog_etl.crawlers.vtex import (
    VTEX_SITES,
    VtexCategoryDiscovery,
    VtexProductScrape,
    VtexSite,
    VtexSubcategoryCrawl,
    parse_product,
)
from catalog_etl.errors import ConfigurationError
from catalog_etl.models import Task
from catalog_etl.scheduler.policy import JobPriority
from catalog_etl.scheduler.queue import MemoryQueue, partition_name
from catalog_etl.upsert import MemoryCategoryStore, MemoryProductStore

from conftest import FakeBrowser, FakeResponse

VEA = VTEX_SITES["vea"]

TREE = [
    {"id": 1, "name": "Almacén", "url": "https://www.vea.com.ar/almacen", "hasChildren": False, "children": []},
    {
        "id": 2,
        "name": "Bebidas",
        "url": "https://www.vea.com.ar/bebidas",
        "hasChildren": True,
        "children": [
            {"id": 21, "name": "Gaseosas", "url": "https://www.vea.com.ar/bebidas/gaseosas", "children": []},
        ],
    },
]


def _vtex_product(product_id, price=100.0, quantity=5, ean="7790001"):
    return {
        "productId": str(product_id),
        "productName": f"Producto {product_id}",
        "brand": "Marca",
        "link": f"https://www.vea.com.ar/producto-{product_id}/p",
        "items": [
            {
                "itemId": f"{product_id}0",
                "ean": ean,
                "sellers": [
                    {"sellerDefault": False, "commertialOffer": {"Price": 1.0, "ListPrice": 1.0, "AvailableQuantity": 0}},
                    {
                        "sellerDefault": True,
                        "commertialOffer": {"Price": price, "ListPrice": price * 1.2, "AvailableQuantity": quantity},
                    },
                ],
            }
        ],
    }


def _task(action, **payload):
    return Task(id=7, partition="scraper-vea", name="T", payload={"retailer": "vea", "action": action, **payload})


async def _drain(queue, retailer="vea"):
    tasks = []
    while (task := await queue.dequeue(partition_name(retailer), timeout=0)) is not None:
        tasks.append(task)
    return tasks


def test_site_urls():
    assert VEA.category_tree_url == "https://www.vea.com.ar/api/catalog_system/pub/category/tree/3"
    assert VEA.search_url("2/21", 50) == (
        "https://www.vea.com.ar/api/catalog_system/pub/products/search?fq=C:2/21&_from=50&_to=99"
    )
    assert VTEX_SITES["dia"].home_url == "https://diaonline.supermercadosdia.com.ar/"


def test_category_discovery_walks_api_tree():
    browser = FakeBrowser({VEA.category_tree_url: FakeResponse(TREE)})

    async def scenario():
        store = MemoryCategoryStore()
        queue = MemoryQueue()
        crawler = VtexCategoryDiscovery(VEA, store, queue)
        stats = await execute(crawler, _task("discover-categories"), browser)
        return stats, store.all(), await _drain(queue)

    stats, docs, tasks = asyncio.run(scenario())
    assert stats.upserted == 3
    assert {doc.slug for doc in docs} == {"almacen", "bebidas", "bebidasgaseosas"}
    assert len(tasks) == 2
    assert browser.contexts[0].pages[0].visited == ["https://www.vea.com.ar/"]


def test_category_tree_failure_yields_empty_run():
    browser = FakeBrowser({VEA.category_tree_url: FakeResponse(status=503)})

    async def scenario():
        store = MemoryCategoryStore()
        crawler = VtexCategoryDiscovery(VEA, store, MemoryQueue())
        return await execute(crawler, _task("discover-categories"), browser), store.all()

    stats, docs = asyncio.run(scenario())
    assert stats.upserted == 0
    assert docs == []


def test_subcategory_crawl_rediscovers_one_branch():
    browser = FakeBrowser({VEA.category_tree_url: FakeResponse(TREE)})

    async def scenario():
        store = MemoryCategoryStore()
        queue = MemoryQueue()
        await execute(VtexCategoryDiscovery(VEA, store, queue), _task("discover-categories"), browser)
        await _drain(queue)

        crawler = VtexSubcategoryCrawl(VEA, store, queue)
        stats = await execute(crawler, _task("discover-subcategories", idPath="2"), browser)
        return stats, store.all(), await _drain(queue)

    stats, docs, tasks = asyncio.run(scenario())
    assert stats.upserted == 2
    assert len(docs) == 3
    assert [t.payload["idPath"] for t in tasks] == ["2/21"]


def test_subcategory_crawl_without_category_is_a_configuration_error():
    async def scenario():
        crawler = VtexSubcategoryCrawl(VEA, MemoryCategoryStore(), MemoryQueue())
        await execute(crawler, _task("discover-subcategories"), FakeBrowser())

    with pytest.raises(ConfigurationError):
        asyncio.run(scenario())


def test_product_scrape_pages_until_short_page():
    site = VtexSite("vea", "https://www.vea.com.ar", page_size=2)
    browser = FakeBrowser(
        {
            site.search_url("2/21", 0): FakeResponse([_vtex_product(1), _vtex_product(2)]),
            site.search_url("2/21", 2): FakeResponse([_vtex_product(3, quantity=0, ean="")]),
        }
    )

    async def scenario():
        products = MemoryProductStore()
        crawler = VtexProductScrape(site, MemoryCategoryStore(), products, MemoryQueue(), request_delay=0)
        count = await execute(crawler, _task("scrape-products", externalId="21", idPath="2/21", categoryId=3), browser)
        return count, products.products

    count, products = asyncio.run(scenario())
    assert count == 3
    assert len(browser.request.calls) == 2
    first = products[("vea", "1")]
    assert first.price == 100.0
    assert first.category_id == 3
    assert first.ean == "7790001"
    assert products[("vea", "3")].available is False
    assert products[("vea", "3")].ean is None


def test_product_scrape_stops_on_http_error():
    site = VtexSite("vea", "https://www.vea.com.ar", page_size=2)
    browser = FakeBrowser({site.search_url("5", 0): FakeResponse(status=500)})

    async def scenario():
        crawler = VtexProductScrape(site, MemoryCategoryStore(), MemoryProductStore(), MemoryQueue(), request_delay=0)
        return await execute(crawler, _task("scrape-products", externalId="5"), browser)

    assert asyncio.run(scenario()) == 0


def test_product_scrape_without_category_fans_out_per_leaf():
    browser = FakeBrowser({VEA.category_tree_url: FakeResponse(TREE)})

    async def scenario():
        store = MemoryCategoryStore()
        queue = MemoryQueue()
        await execute(VtexCategoryDiscovery(VEA, store, queue), _task("discover-categories"), browser)
        await _drain(queue)

        crawler = VtexProductScrape(VEA, store, MemoryProductStore(), queue, request_delay=0)
        count = await execute(crawler, _task("scrape-products"), browser)
        return count, await _drain(queue)

    count, tasks = asyncio.run(scenario())
    assert count == 2
    assert {t.payload["idPath"] for t in tasks} == {"1", "2/21"}
    assert all(t.priority == JobPriority.SCRAPE_PRODUCT for t in tasks)


def test_parse_product_uses_default_seller():
    product = parse_product("vea", _vtex_product(10, price=250.5), category_id=4)

    assert product.external_id == "10"
    assert product.price == 250.5
    assert product.list_price == pytest.approx(300.6)
    assert product.available is True
    assert product.brand == "Marca"


def test_parse_product_skips_products_without_items():
    assert parse_product("vea", {"productId": "1", "items": []}) is None
    assert parse_product("vea", {"items": [{"sellers": []}]}) is None


def test_crawlers_accept_only_their_action():
    store, queue = MemoryCategoryStore(), MemoryQueue()

    assert VtexCategoryDiscovery(VEA, store, queue).can_handle(_task("discover-categories"))
    assert not VtexCategoryDiscovery(VEA, store, queue).can_handle(_task("scrape-products"))
    assert VtexProductScrape(VEA, store, MemoryProductStore(), queue).can_handle(_task("scrape-products"))
