"""Pydantic models shared across scheduler and crawler components."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Retailer(str, Enum):
    """Retail sites the scheduler knows about."""

    CARREFOUR = "carrefour"
    COTO = "coto"
    DIA = "dia"
    DISCO = "disco"
    JUMBO = "jumbo"
    LA_ANONIMA = "la_anonima"
    VEA = "vea"


class Action(str, Enum):
    """Unit of work a task asks a retailer's crawler to perform."""

    DISCOVER_CATEGORIES = "discover-categories"
    DISCOVER_SUBCATEGORIES = "discover-subcategories"
    SCRAPE_PRODUCTS = "scrape-products"
    FULL_PIPELINE = "full-pipeline"


class TaskStatus(str, Enum):
    """Task execution status."""

    WAITING = "waiting"
    DELAYED = "delayed"  # Waiting for its backoff to elapse
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"  # Dead letter
    CANCELLED = "cancelled"


PENDING_STATUSES = (TaskStatus.WAITING, TaskStatus.DELAYED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Task(BaseModel):
    """A queued crawl job.

    ``retailer`` and ``action`` travel inside the payload so that a trigger
    only has to agree on the payload shape with the dispatcher.
    """

    id: int
    partition: str
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0  # Higher = served first
    attempts_made: int = 0
    max_attempts: int = 3
    status: TaskStatus = TaskStatus.WAITING
    enqueued_at: datetime = Field(default_factory=utcnow)
    available_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def retailer(self) -> Optional[str]:
        return self.payload.get("retailer")

    @property
    def action(self) -> Optional[str]:
        return self.payload.get("action")

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts_made, 0)

    def describe(self) -> str:
        """Short identity used in log lines."""
        return f"{self.name}#{self.id} ({self.retailer}/{self.action})"


class RetailerMapping(BaseModel):
    """How one retailer identifies a category."""

    external_id: str
    url: str = ""
    id_path: str = ""


class Category(BaseModel):
    """Category document shared by every retailer that maps onto it."""

    id: int
    name: str
    slug: str
    url: str = ""
    parent_id: Optional[int] = None
    level: int = 0
    active: bool = True
    mappings: Dict[str, RetailerMapping] = Field(default_factory=dict)
    last_scraped: Optional[datetime] = None

    def mapping_for(self, retailer: str) -> Optional[RetailerMapping]:
        return self.mappings.get(retailer)


class CategoryNode(BaseModel):
    """Node of a retailer's category tree as returned by its catalog API."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    url: str = ""
    children: List["CategoryNode"] = Field(default_factory=list)

    @classmethod
    def parse_tree(cls, raw: Any) -> List["CategoryNode"]:
        """Build nodes from the raw JSON list, ignoring malformed entries."""
        if not isinstance(raw, list):
            return []
        nodes = []
        for item in raw:
            if not isinstance(item, dict) or item.get("id") is None:
                continue
            nodes.append(
                cls(
                    id=str(item["id"]),
                    name=str(item.get("name") or ""),
                    url=item.get("url") or "",
                    children=cls.parse_tree(item.get("children") or []),
                )
            )
        return nodes

    @property
    def is_leaf(self) -> bool:
        return not self.children


class ScrapedProduct(BaseModel):
    """Product row written by product-scrape tasks."""

    retailer: str
    external_id: str
    name: str
    brand: Optional[str] = None
    url: str = ""
    category_id: Optional[int] = None
    ean: Optional[str] = None
    price: Optional[float] = None
    list_price: Optional[float] = None
    available: bool = True
    raw: Dict[str, Any] = Field(default_factory=dict)


CategoryNode.model_rebuild()
