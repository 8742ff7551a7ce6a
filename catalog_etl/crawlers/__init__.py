"""Site crawlers and the browsing session lifecycle they run inside."""

from .base import CrawlSession, CrawlTask, SessionFactory, execute

__all__ = [
    "CrawlSession",
    "CrawlTask",
    "SessionFactory",
    "execute",
]
