"""Recursive category-tree discovery shared by every retailer.

Walks a retailer's category tree depth-first, upserts one Category document
per node (merging with documents other retailers already created) and
enqueues one product-scrape task per leaf into the retailer's partition.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .models import Action, CategoryNode, RetailerMapping
from .normalize import category_slug, join_id_path, strip_origin
from .scheduler.policy import JobPriority
from .scheduler.queue import TaskQueue, partition_name
from .upsert import CategoryMatch, CategoryStore, CategoryUpdate

LOGGER = logging.getLogger(__name__)

SCRAPE_PRODUCTS_TASK = "SCRAPE_PRODUCTS"


@dataclass
class DiscoveryStats:
    """Counters for one discovery run. Failures never fail the run."""

    upserted: int = 0
    enqueued: int = 0
    failed: int = 0
    failed_nodes: List[str] = field(default_factory=list)


async def discover_categories(
    retailer: str,
    nodes: Sequence[CategoryNode],
    *,
    store: CategoryStore,
    queue: TaskQueue,
    parent_id: Optional[int] = None,
    id_path: str = "",
    level: int = 0,
) -> DiscoveryStats:
    """Run discovery over a whole tree (or a subtree below ``parent_id``).

    An empty tree is logged and treated as a successful no-op: retailer APIs
    occasionally return empty catalogs transiently.
    """
    if not nodes:
        LOGGER.warning("[%s] Category API returned 0 categories under %r", retailer, id_path or "/")
        return DiscoveryStats()

    LOGGER.info("[%s] Processing category tree (%d top-level nodes)", retailer, len(nodes))
    stats = await discover_category_tree(
        nodes,
        retailer=retailer,
        store=store,
        queue=queue,
        parent_id=parent_id,
        id_path=id_path,
        level=level,
    )
    LOGGER.info(
        "[%s] Discovery finished: upserted=%d, product tasks=%d, failed=%d",
        retailer,
        stats.upserted,
        stats.enqueued,
        stats.failed,
    )
    return stats


async def discover_category_tree(
    nodes: Sequence[CategoryNode],
    *,
    retailer: str,
    store: CategoryStore,
    queue: TaskQueue,
    parent_id: Optional[int] = None,
    id_path: str = "",
    level: int = 0,
    stats: Optional[DiscoveryStats] = None,
) -> DiscoveryStats:
    """Upsert ``nodes`` and their descendants, one node at a time.

    Parameters
    ----------
    nodes : sequence of CategoryNode
        Siblings to process, in order
    retailer : str
        Retailer whose mapping is written
    store : CategoryStore
        Category collection
    queue : TaskQueue
        Queue receiving product-scrape tasks for leaves
    parent_id : int, optional
        Category id of the parent document (None for roots)
    id_path : str
        Parent's retailer id path ("" for roots)
    level : int
        Depth of ``nodes`` in the tree
    stats : DiscoveryStats, optional
        Accumulator shared by the recursion

    Returns
    -------
    DiscoveryStats
        Counters for the processed subtree
    """
    if stats is None:
        stats = DiscoveryStats()

    for node in nodes:
        current_id_path = join_id_path(id_path, node.id)
        try:
            await _process_node(
                node,
                retailer=retailer,
                store=store,
                queue=queue,
                parent_id=parent_id,
                id_path=current_id_path,
                level=level,
                stats=stats,
            )
        except Exception as exc:
            stats.failed += 1
            stats.failed_nodes.append(current_id_path)
            LOGGER.error(
                "[%s] Error processing category %r (id=%s, path=%s): %s",
                retailer,
                node.name,
                node.id,
                current_id_path,
                exc,
            )

    return stats


async def _process_node(
    node: CategoryNode,
    *,
    retailer: str,
    store: CategoryStore,
    queue: TaskQueue,
    parent_id: Optional[int],
    id_path: str,
    level: int,
    stats: DiscoveryStats,
) -> None:
    url = strip_origin(node.url)
    slug = category_slug(url, node.name, node.id)

    category = await store.upsert(
        CategoryMatch(
            retailer=retailer,
            external_id=node.id,
            name=node.name,
            parent_id=parent_id,
            slug=slug,
        ),
        CategoryUpdate(
            name=node.name,
            slug=slug,
            url=url,
            level=level,
            parent_id=parent_id,
            retailer=retailer,
            mapping=RetailerMapping(external_id=node.id, url=url, id_path=id_path),
        ),
    )
    stats.upserted += 1

    if node.is_leaf:
        await queue.enqueue(
            partition_name(retailer),
            SCRAPE_PRODUCTS_TASK,
            {
                "retailer": retailer,
                "action": Action.SCRAPE_PRODUCTS.value,
                "categoryId": category.id,
                "externalId": node.id,
                "url": url,
                "idPath": id_path,
            },
            priority=int(JobPriority.DISCOVER),
        )
        stats.enqueued += 1
        return

    # Children are walked one at a time, never concurrently.
    await discover_category_tree(
        node.children,
        retailer=retailer,
        store=store,
        queue=queue,
        parent_id=category.id,
        id_path=id_path,
        level=level + 1,
        stats=stats,
    )


def find_subtree(nodes: Sequence[CategoryNode], id_path: str) -> Optional[CategoryNode]:
    """Locate the node addressed by a slash-joined external id path."""
    parts = [part for part in id_path.split("/") if part]
    current: Optional[CategoryNode] = None
    level = list(nodes)
    for part in parts:
        current = next((node for node in level if node.id == part), None)
        if current is None:
            return None
        level = current.children
    return current
