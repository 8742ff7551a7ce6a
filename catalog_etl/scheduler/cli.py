"""CLI for the catalog crawl scheduler."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import click
from dotenv import load_dotenv

from ..crawlers.browser import BrowserPool
from ..db import create_pool
from ..errors import ConfigurationError, TaskNotFoundError
from ..models import Action, Retailer
from ..upsert import (
    CategoryStore,
    MemoryCategoryStore,
    MemoryProductStore,
    PostgresCategoryStore,
    PostgresProductStore,
    ProductStore,
)
from .dispatcher import Dispatcher
from .policy import SchedulerPolicy
from .queue import MemoryQueue, PostgresQueue, TaskQueue
from .registry import CrawlServices, default_registry
from .scheduler import Scheduler

LOGGER = logging.getLogger(__name__)

QUEUE_BACKEND_ENV = "CRAWL_QUEUE_BACKEND"
RETAILERS = [retailer.value for retailer in Retailer]


@dataclass
class Backends:
    """Queue and stores the scheduler runs against."""

    queue: TaskQueue
    store: CategoryStore
    product_store: ProductStore


@asynccontextmanager
async def open_backends() -> AsyncIterator[Backends]:
    """Open the backend selected by ``$CRAWL_QUEUE_BACKEND`` (postgres or memory)."""
    backend = os.getenv(QUEUE_BACKEND_ENV, "postgres").strip().lower()
    if backend == "memory":
        LOGGER.warning("Using in-memory backend: tasks and categories are lost on exit")
        yield Backends(MemoryQueue(), MemoryCategoryStore(), MemoryProductStore())
        return
    if backend != "postgres":
        raise ConfigurationError(f"Unknown {QUEUE_BACKEND_ENV} value: {backend!r}")

    pool = await create_pool()
    try:
        queue = PostgresQueue(pool)
        store = PostgresCategoryStore(pool)
        product_store = PostgresProductStore(pool)
        await queue.ensure_schema()
        await store.ensure_schema()
        await product_store.ensure_schema()
        yield Backends(queue, store, product_store)
    finally:
        await pool.close()


def build_scheduler(
    backends: Backends,
    policy: SchedulerPolicy,
    browser: Optional[BrowserPool] = None,
    *,
    retailers: Optional[Tuple[str, ...]] = None,
) -> Scheduler:
    services = CrawlServices(backends.store, backends.product_store, backends.queue, policy)
    dispatcher = Dispatcher(default_registry(), services, browser or BrowserPool())
    return Scheduler(backends.queue, dispatcher, policy, retailers=retailers or None)


async def _with_scheduler(operation: str, *args: Any) -> Any:
    async with open_backends() as backends:
        scheduler = build_scheduler(backends, SchedulerPolicy.from_env())
        return await getattr(scheduler, operation)(*args)


def _run_async(operation: str, *args: Any) -> Any:
    try:
        return asyncio.run(_with_scheduler(operation, *args))
    except (ConfigurationError, TaskNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


retailer_argument = click.argument("retailer", type=click.Choice(RETAILERS))


@click.group()
@click.option("--log-level", default=None, help="Logging level (defaults to $LOG_LEVEL or INFO)")
def cli(log_level: Optional[str]) -> None:
    """Catalog crawl scheduler CLI."""
    load_dotenv()
    logging.basicConfig(
        level=(log_level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )


def _trigger(retailer: str, action: Action, payload: Optional[Dict[str, Any]] = None) -> None:
    task_id = _run_async("trigger", retailer, action.value, payload)
    click.echo(f"✅ Enqueued task {task_id}: {retailer}/{action.value}")


@cli.command()
@retailer_argument
def discover(retailer: str) -> None:
    """Enqueue category discovery for a retailer."""
    _trigger(retailer, Action.DISCOVER_CATEGORIES)


@cli.command("crawl-subcategories")
@retailer_argument
@click.option("--id-path", help="Retailer id path of the category (e.g. 1/23)")
@click.option("--category-id", type=int, help="Stored category id")
def crawl_subcategories(retailer: str, id_path: Optional[str], category_id: Optional[int]) -> None:
    """Enqueue re-discovery of the subtree below one category."""
    if not id_path and category_id is None:
        raise click.UsageError("Pass --id-path or --category-id")
    payload: Dict[str, Any] = {}
    if id_path:
        payload["idPath"] = id_path
    if category_id is not None:
        payload["categoryId"] = category_id
    _trigger(retailer, Action.DISCOVER_SUBCATEGORIES, payload)


@cli.command()
@retailer_argument
@click.option("--category-id", type=int, help="Stored category id")
@click.option("--id-path", help="Retailer id path of the category")
def scrape(retailer: str, category_id: Optional[int], id_path: Optional[str]) -> None:
    """Enqueue a product scrape (every leaf category when none is given)."""
    payload: Dict[str, Any] = {}
    if category_id is not None:
        payload["categoryId"] = category_id
    if id_path:
        payload["idPath"] = id_path
    _trigger(retailer, Action.SCRAPE_PRODUCTS, payload)


@cli.command("full-pipeline")
@retailer_argument
def full_pipeline(retailer: str) -> None:
    """Enqueue discovery followed by a catch-all product scrape."""
    _trigger(retailer, Action.FULL_PIPELINE)


async def _serve(retailers: Tuple[str, ...], grace_period: float) -> None:
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_requested.set)

    browser = BrowserPool()
    async with open_backends() as backends:
        scheduler = build_scheduler(
            backends,
            SchedulerPolicy.from_env(),
            browser,
            retailers=retailers,
        )
        await scheduler.start()
        try:
            await stop_requested.wait()
            LOGGER.info("Received shutdown signal, stopping gracefully...")
        finally:
            await scheduler.shutdown(grace_period)
            await browser.close()


@cli.command()
@click.option(
    "--retailer",
    "retailers",
    multiple=True,
    type=click.Choice(RETAILERS),
    help="Only run workers for these retailers (repeatable)",
)
@click.option(
    "--grace-period",
    default=30.0,
    type=float,
    help="Seconds to wait for in-flight tasks on shutdown",
)
def run(retailers: Tuple[str, ...], grace_period: float) -> None:
    """Run the workers until SIGINT/SIGTERM."""
    click.echo(f"🚀 Starting scheduler ({', '.join(retailers) or 'all retailers'})")
    try:
        asyncio.run(_serve(retailers, grace_period))
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
def status() -> None:
    """Show queue statistics per retailer."""
    report = _run_async("status")

    click.echo("\n📊 Queue Statistics\n" + "=" * 60)
    for retailer, info in report.items():
        flag = "" if info["enabled"] else " (disabled)"
        click.echo(
            f"{retailer:12s} depth={info['depth']:5d} "
            f"concurrency={info['max_concurrency']} priority={info['priority']}{flag}"
        )
        for task_status, count in info["tasks"].items():
            if count:
                click.echo(f"    {task_status:10s}: {count:6d}")
    click.echo()


@cli.command()
@click.argument("task_id", type=int)
def task(task_id: int) -> None:
    """Show status, retry count and failure reason of one task."""
    found = _run_async("get_task", task_id)
    if found is None:
        raise click.ClickException(str(TaskNotFoundError(task_id)))

    click.echo(f"Task {found.id}: {found.name}")
    click.echo(f"  partition : {found.partition}")
    click.echo(f"  status    : {found.status.value}")
    click.echo(f"  priority  : {found.priority}")
    click.echo(f"  attempts  : {found.attempts_made}/{found.max_attempts}")
    click.echo(f"  enqueued  : {found.enqueued_at.isoformat()}")
    if found.error:
        click.echo(f"  error     : {found.error}")
    click.echo(f"  payload   : {found.payload}")


@cli.command()
@click.argument("task_id", type=int)
def cancel(task_id: int) -> None:
    """Cancel a task that has not started yet."""
    if _run_async("cancel", task_id):
        click.echo(f"✅ Cancelled task {task_id}")
    else:
        click.echo(f"⚠️  Task {task_id} already started or finished, not cancelled")


@cli.command()
@retailer_argument
@click.confirmation_option(prompt="Are you sure you want to drop every pending task?")
def purge(retailer: str) -> None:
    """Drop waiting and delayed tasks of a retailer."""
    count = _run_async("purge", retailer)
    click.echo(f"✅ Purged {count} pending task(s) from {retailer}")


@cli.command()
def clean() -> None:
    """Apply retention to finished tasks."""
    removed = _run_async("clean")
    click.echo(f"✅ Removed {sum(removed.values())} finished task(s)")


@cli.command()
def policy() -> None:
    """Print the effective retailer policy table."""
    try:
        current = SchedulerPolicy.from_env()
    except (OSError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"{'retailer':12s} {'prio':>4s} {'conc':>4s} {'delay':>6s} {'attempts':>8s}  enabled")
    for retailer in current.ordered_retailers():
        entry = current.for_retailer(retailer)
        click.echo(
            f"{retailer:12s} {entry.priority:4d} {entry.max_concurrency:4d} "
            f"{entry.request_delay:6.1f} {entry.job_options.attempts:8d}  {entry.enabled}"
        )


if __name__ == "__main__":
    cli()
