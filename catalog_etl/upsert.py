"""Document-store helpers for idempotent category and product upserts."""
from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

import asyncpg
from asyncpg import Pool, Record

from .errors import DuplicateSlugError
from .models import Category, RetailerMapping, ScrapedProduct, utcnow

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryMatch:
    """Filter for finding the document a discovered node belongs to.

    A document matches when ANY of these hold (checked in this order):
    it carries this retailer's mapping with ``external_id``; it has the same
    name, a mapping for this retailer and the same parent; it has ``slug``.
    """

    retailer: str
    external_id: str
    name: str
    parent_id: Optional[int]
    slug: str


@dataclass(frozen=True)
class CategoryUpdate:
    """Fields written on upsert; only ``retailer``'s mapping is touched."""

    name: str
    slug: str
    url: str
    level: int
    parent_id: Optional[int]
    retailer: str
    mapping: RetailerMapping
    active: bool = True


class CategoryStore(Protocol):
    """Category collection supporting upsert-by-filter."""

    async def upsert(self, match: CategoryMatch, update: CategoryUpdate) -> Category:
        """Find-one-and-update with upsert; returns the document after update."""
        ...

    async def get(self, category_id: int) -> Optional[Category]:
        ...

    async def find_by_mapping(self, retailer: str, external_id: str) -> Optional[Category]:
        ...

    async def find_by_id_path(self, retailer: str, id_path: str) -> Optional[Category]:
        ...

    async def find_leaves(self, retailer: str) -> List[Category]:
        """Active categories mapped for ``retailer`` with no mapped children."""
        ...

    async def set_active(self, category_id: int, active: bool) -> None:
        ...


class ProductStore(Protocol):
    """Sink for scraped product rows."""

    async def upsert(self, product: ScrapedProduct) -> None:
        ...


class MemoryCategoryStore:
    """Dictionary-backed category collection.

    Every method runs without awaiting inside, so each upsert is atomic with
    respect to other coroutines on the loop.
    """

    def __init__(self) -> None:
        self._docs: Dict[int, Category] = {}
        self._ids = itertools.count(1)

    def all(self) -> List[Category]:
        return [doc.model_copy(deep=True) for doc in self._docs.values()]

    def _find(self, match: CategoryMatch) -> Optional[Category]:
        docs = list(self._docs.values())
        for doc in docs:
            mapping = doc.mapping_for(match.retailer)
            if mapping is not None and mapping.external_id == match.external_id:
                return doc
        for doc in docs:
            if (
                doc.name == match.name
                and match.retailer in doc.mappings
                and doc.parent_id == match.parent_id
            ):
                return doc
        for doc in docs:
            if doc.slug == match.slug:
                return doc
        return None

    async def upsert(self, match: CategoryMatch, update: CategoryUpdate) -> Category:
        doc = self._find(match)
        owner = next((d for d in self._docs.values() if d.slug == update.slug), None)
        if owner is not None and (doc is None or owner.id != doc.id):
            raise DuplicateSlugError(f"slug {update.slug!r} already used by category {owner.id}")

        if doc is None:
            doc = Category(id=next(self._ids), name=update.name, slug=update.slug)
            self._docs[doc.id] = doc

        doc.name = update.name
        doc.slug = update.slug
        doc.url = update.url
        doc.active = update.active
        doc.level = update.level
        doc.parent_id = update.parent_id
        doc.last_scraped = utcnow()
        doc.mappings[update.retailer] = update.mapping.model_copy()
        return doc.model_copy(deep=True)

    async def get(self, category_id: int) -> Optional[Category]:
        doc = self._docs.get(category_id)
        return doc.model_copy(deep=True) if doc else None

    async def find_by_mapping(self, retailer: str, external_id: str) -> Optional[Category]:
        for doc in self._docs.values():
            mapping = doc.mapping_for(retailer)
            if mapping is not None and mapping.external_id == external_id:
                return doc.model_copy(deep=True)
        return None

    async def find_by_id_path(self, retailer: str, id_path: str) -> Optional[Category]:
        for doc in self._docs.values():
            mapping = doc.mapping_for(retailer)
            if mapping is not None and mapping.id_path == id_path:
                return doc.model_copy(deep=True)
        return None

    async def find_leaves(self, retailer: str) -> List[Category]:
        mapped = [doc for doc in self._docs.values() if retailer in doc.mappings]
        parents = {doc.parent_id for doc in mapped if doc.parent_id is not None}
        return [
            doc.model_copy(deep=True)
            for doc in mapped
            if doc.active and doc.id not in parents
        ]

    async def set_active(self, category_id: int, active: bool) -> None:
        doc = self._docs.get(category_id)
        if doc is not None:
            doc.active = active


class MemoryProductStore:
    """Dictionary-backed product sink keyed by (retailer, external_id)."""

    def __init__(self) -> None:
        self.products: Dict[tuple, ScrapedProduct] = {}

    async def upsert(self, product: ScrapedProduct) -> None:
        self.products[(product.retailer, product.external_id)] = product


def _decimal(value: Optional[float]) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _to_category(row: Record) -> Category:
    mappings = row["store_mappings"]
    if isinstance(mappings, str):
        mappings = json.loads(mappings)
    return Category(
        id=row["id"],
        name=row["name"],
        slug=row["slug"],
        url=row["url"],
        parent_id=row["parent_id"],
        level=row["level"],
        active=row["active"],
        mappings={k: RetailerMapping(**v) for k, v in (mappings or {}).items()},
        last_scraped=row["last_scraped"],
    )


class PostgresCategoryStore:
    """Category collection stored in ``categories`` with JSONB retailer mappings."""

    def __init__(self, pool: Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id BIGSERIAL PRIMARY KEY,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL UNIQUE,
                    url TEXT NOT NULL DEFAULT '',
                    parent_id BIGINT REFERENCES categories(id),
                    level INTEGER NOT NULL DEFAULT 0,
                    active BOOLEAN NOT NULL DEFAULT TRUE,
                    store_mappings JSONB NOT NULL DEFAULT '{}'::jsonb,
                    last_scraped TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                );

                CREATE INDEX IF NOT EXISTS idx_categories_parent
                    ON categories(parent_id, active);
                CREATE INDEX IF NOT EXISTS idx_categories_mappings
                    ON categories USING GIN (store_mappings);
                """
            )
        LOGGER.info("Ensured categories table exists")

    async def upsert(self, match: CategoryMatch, update: CategoryUpdate) -> Category:
        find_sql = """
        SELECT id
        FROM categories
        WHERE store_mappings -> $1::text ->> 'external_id' = $2
           OR (name = $3 AND store_mappings ? $1::text AND parent_id IS NOT DISTINCT FROM $4::bigint)
           OR slug = $5
        ORDER BY
            CASE
                WHEN store_mappings -> $1::text ->> 'external_id' = $2 THEN 0
                WHEN name = $3 AND store_mappings ? $1::text
                     AND parent_id IS NOT DISTINCT FROM $4::bigint THEN 1
                ELSE 2
            END,
            id
        LIMIT 1
        FOR UPDATE
        """
        update_sql = """
        UPDATE categories
        SET name = $2,
            slug = $3,
            url = $4,
            active = $5,
            level = $6,
            parent_id = $7,
            store_mappings = store_mappings || jsonb_build_object($8::text, $9::jsonb),
            last_scraped = NOW(),
            updated_at = NOW()
        WHERE id = $1
        RETURNING *
        """
        insert_sql = """
        INSERT INTO categories (name, slug, url, active, level, parent_id, store_mappings, last_scraped)
        VALUES ($1, $2, $3, $4, $5, $6, jsonb_build_object($7::text, $8::jsonb), NOW())
        ON CONFLICT (slug) DO UPDATE
        SET name = EXCLUDED.name,
            url = EXCLUDED.url,
            active = EXCLUDED.active,
            level = EXCLUDED.level,
            parent_id = EXCLUDED.parent_id,
            store_mappings = categories.store_mappings || EXCLUDED.store_mappings,
            last_scraped = NOW(),
            updated_at = NOW()
        RETURNING *
        """
        mapping_json = update.mapping.model_dump_json()

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    existing_id = await conn.fetchval(
                        find_sql,
                        match.retailer,
                        match.external_id,
                        match.name,
                        match.parent_id,
                        match.slug,
                    )
                    if existing_id is not None:
                        row = await conn.fetchrow(
                            update_sql,
                            existing_id,
                            update.name,
                            update.slug,
                            update.url,
                            update.active,
                            update.level,
                            update.parent_id,
                            update.retailer,
                            mapping_json,
                        )
                    else:
                        row = await conn.fetchrow(
                            insert_sql,
                            update.name,
                            update.slug,
                            update.url,
                            update.active,
                            update.level,
                            update.parent_id,
                            update.retailer,
                            mapping_json,
                        )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateSlugError(f"slug {update.slug!r} already in use") from exc

        return _to_category(row)

    async def get(self, category_id: int) -> Optional[Category]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM categories WHERE id = $1", category_id)
        return _to_category(row) if row else None

    async def find_by_mapping(self, retailer: str, external_id: str) -> Optional[Category]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM categories
                WHERE store_mappings -> $1::text ->> 'external_id' = $2
                ORDER BY id
                LIMIT 1
                """,
                retailer,
                external_id,
            )
        return _to_category(row) if row else None

    async def find_by_id_path(self, retailer: str, id_path: str) -> Optional[Category]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM categories
                WHERE store_mappings -> $1::text ->> 'id_path' = $2
                ORDER BY id
                LIMIT 1
                """,
                retailer,
                id_path,
            )
        return _to_category(row) if row else None

    async def find_leaves(self, retailer: str) -> List[Category]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT c.*
                FROM categories c
                WHERE c.active
                  AND c.store_mappings ? $1::text
                  AND NOT EXISTS (
                      SELECT 1 FROM categories child
                      WHERE child.parent_id = c.id
                        AND child.store_mappings ? $1::text
                  )
                ORDER BY c.id
                """,
                retailer,
            )
        return [_to_category(row) for row in rows]

    async def set_active(self, category_id: int, active: bool) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE categories SET active = $2, updated_at = NOW() WHERE id = $1",
                category_id,
                active,
            )


class PostgresProductStore:
    """Product rows keyed by (retailer, external_id)."""

    def __init__(self, pool: Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scraped_products (
                    retailer VARCHAR(50) NOT NULL,
                    external_id VARCHAR(200) NOT NULL,
                    name TEXT NOT NULL,
                    brand TEXT,
                    url TEXT NOT NULL DEFAULT '',
                    category_id BIGINT,
                    ean VARCHAR(50),
                    price NUMERIC(14, 2),
                    list_price NUMERIC(14, 2),
                    available BOOLEAN NOT NULL DEFAULT TRUE,
                    raw_data JSONB,
                    first_seen TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    last_seen TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (retailer, external_id)
                );
                """
            )
        LOGGER.info("Ensured scraped_products table exists")

    async def upsert(self, product: ScrapedProduct) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO scraped_products (
                    retailer, external_id, name, brand, url, category_id,
                    ean, price, list_price, available, raw_data
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb)
                ON CONFLICT (retailer, external_id) DO UPDATE
                SET
                    name = EXCLUDED.name,
                    brand = COALESCE(EXCLUDED.brand, scraped_products.brand),
                    url = EXCLUDED.url,
                    category_id = COALESCE(EXCLUDED.category_id, scraped_products.category_id),
                    ean = COALESCE(EXCLUDED.ean, scraped_products.ean),
                    price = EXCLUDED.price,
                    list_price = EXCLUDED.list_price,
                    available = EXCLUDED.available,
                    raw_data = EXCLUDED.raw_data,
                    last_seen = NOW()
                """,
                product.retailer,
                product.external_id,
                product.name,
                product.brand,
                product.url,
                product.category_id,
                product.ean,
                _decimal(product.price),
                _decimal(product.list_price),
                product.available,
                json.dumps(product.raw, default=str),
            )
