"""PostgreSQL connection helpers."""
from __future__ import annotations

import logging
import os

import asyncpg
from asyncpg import Pool
from tenacity import retry, stop_after_attempt, wait_random

LOGGER = logging.getLogger(__name__)


def get_dsn() -> str:
    """Get database connection string from environment."""
    # Check for full connection string first
    if dsn := os.getenv("DATABASE_URL"):
        return dsn

    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "catalog")
    password = os.getenv("PG_PASS", "catalog")
    database = os.getenv("PG_DB", "catalog")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


@retry(stop=stop_after_attempt(3), wait=wait_random(1, 3), reraise=True)
async def create_pool(dsn: str | None = None, *, min_size: int = 2, max_size: int = 10) -> Pool:
    """Open a connection pool, retrying while the database comes up."""
    dsn = dsn or get_dsn()
    pool = await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size)
    LOGGER.info("Connected to PostgreSQL (pool %d-%d)", min_size, max_size)
    return pool
