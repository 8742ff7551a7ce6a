"""Error taxonomy shared by the scheduler and the crawlers."""
from __future__ import annotations


class CatalogEtlError(Exception):
    """Base class for scheduler errors."""


class ConfigurationError(CatalogEtlError):
    """Routing or setup problem: the task is dropped and never retried."""


class SessionUnavailableError(ConfigurationError):
    """Browsing session could not provide a usable page."""


class TaskNotFoundError(CatalogEtlError):
    """Queue operation referenced an unknown task id."""

    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class DuplicateSlugError(CatalogEtlError):
    """A category update would steal the slug of another document."""
