"""Per-retailer concurrency, priority and retry policy."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import IntEnum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from ..models import Retailer

LOGGER = logging.getLogger(__name__)

POLICY_FILE_ENV = "CRAWL_POLICY_FILE"


class JobPriority(IntEnum):
    """Enqueue priority per task kind (higher = served first)."""

    DISCOVER = 1
    CRAWL_CATEGORY = 5
    SCRAPE_PRODUCT = 10


@dataclass(frozen=True)
class JobOptions:
    """Default job options applied to every task of a partition."""

    attempts: int = 3
    backoff_delay: float = 2.0  # Seconds before the first retry
    backoff_multiplier: float = 2.0
    max_backoff: float = 600.0
    keep_completed_age: float = 24 * 3600
    keep_completed_count: int = 1000
    keep_failed_age: float = 7 * 24 * 3600
    stalled_timeout: float = 3600.0  # Active tasks older than this go back to waiting

    def backoff_for(self, attempts_made: int) -> float:
        """Exponential delay before the retry following ``attempts_made`` failures."""
        exponent = max(attempts_made - 1, 0)
        delay = self.backoff_delay * (self.backoff_multiplier ** exponent)
        return min(delay, self.max_backoff)


@dataclass(frozen=True)
class RetailerPolicy:
    """Limits for one retailer."""

    max_concurrency: int = 1
    priority: int = 100  # Lower = served first when there is a choice
    enabled: bool = True
    request_delay: float = 1.0  # Pause between paged API calls
    job_options: JobOptions = field(default_factory=JobOptions)


DEFAULT_RETAILER_POLICIES: Dict[str, RetailerPolicy] = {
    Retailer.COTO.value: RetailerPolicy(max_concurrency=2, priority=1),
    Retailer.CARREFOUR.value: RetailerPolicy(max_concurrency=2, priority=2),
    Retailer.JUMBO.value: RetailerPolicy(max_concurrency=1, priority=3),
    Retailer.DIA.value: RetailerPolicy(max_concurrency=1, priority=4),
    Retailer.VEA.value: RetailerPolicy(max_concurrency=1, priority=5),
    Retailer.DISCO.value: RetailerPolicy(max_concurrency=1, priority=6),
    Retailer.LA_ANONIMA.value: RetailerPolicy(max_concurrency=1, priority=7),
}


@dataclass(frozen=True)
class SchedulerPolicy:
    """Immutable policy table for one deployment.

    Build a new instance (``from_file``, ``with_retailer``) and hand it to
    ``Scheduler.reload_policy`` to change limits at runtime.
    """

    retailers: Dict[str, RetailerPolicy] = field(
        default_factory=lambda: dict(DEFAULT_RETAILER_POLICIES)
    )

    def for_retailer(self, retailer: str) -> RetailerPolicy:
        policy = self.retailers.get(retailer)
        if policy is None:
            LOGGER.debug("No policy for retailer %s, using defaults", retailer)
            return RetailerPolicy()
        return policy

    def ordered_retailers(self) -> List[str]:
        """Retailers sorted by priority weight, then name."""
        return sorted(self.retailers, key=lambda r: (self.retailers[r].priority, r))

    def with_retailer(self, retailer: str, **changes: Any) -> "SchedulerPolicy":
        retailers = dict(self.retailers)
        retailers[retailer] = replace(self.for_retailer(retailer), **changes)
        return SchedulerPolicy(retailers=retailers)

    # ---------- Loaders ----------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SchedulerPolicy":
        """Build a policy from a mapping shaped like the YAML file.

        Retailers missing from ``data`` keep their built-in defaults;
        ``job_options`` at the top level apply to every retailer unless a
        retailer overrides them.
        """
        base_options = _job_options(data.get("job_options") or {}, JobOptions())
        retailers: Dict[str, RetailerPolicy] = {
            name: replace(policy, job_options=base_options)
            for name, policy in DEFAULT_RETAILER_POLICIES.items()
        }

        for name, raw in (data.get("retailers") or {}).items():
            raw = dict(raw or {})
            current = retailers.get(name, RetailerPolicy(job_options=base_options))
            options = _job_options(raw.pop("job_options", None) or {}, current.job_options)
            unknown = set(raw) - {"max_concurrency", "priority", "enabled", "request_delay"}
            if unknown:
                raise ValueError(f"Unknown policy keys for {name}: {sorted(unknown)}")
            policy = replace(current, job_options=options, **raw)
            if policy.max_concurrency <= 0:
                raise ValueError(f"max_concurrency for {name} must be > 0")
            retailers[name] = policy

        return cls(retailers=retailers)

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> "SchedulerPolicy":
        """Load the policy table from a YAML file."""
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError("policy file must contain a mapping")
        LOGGER.info("Loaded scheduler policy from %s", path)
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> "SchedulerPolicy":
        """Use ``$CRAWL_POLICY_FILE`` when set, built-in defaults otherwise."""
        path: Optional[str] = os.getenv(POLICY_FILE_ENV)
        if path:
            return cls.from_file(path)
        return cls()


def _job_options(raw: Mapping[str, Any], base: JobOptions) -> JobOptions:
    if not raw:
        return base
    unknown = set(raw) - set(JobOptions.__dataclass_fields__)
    if unknown:
        raise ValueError(f"Unknown job option keys: {sorted(unknown)}")
    options = replace(base, **raw)
    if options.attempts < 1:
        raise ValueError("attempts must be >= 1")
    return options
