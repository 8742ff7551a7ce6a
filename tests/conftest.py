"""Fake Playwright objects and small builders shared by the tests."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from catalog_etl.models import CategoryNode


class FakeResponse:
    def __init__(self, data: Any = None, status: int = 200) -> None:
        self.data = data
        self.status = status

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    async def json(self) -> Any:
        if isinstance(self.data, Exception):
            raise self.data
        return self.data


class FakeRequest:
    """``context.request`` answering from a url -> response table."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None) -> None:
        self.routes = dict(routes or {})
        self.calls: List[str] = []

    async def get(self, url: str) -> FakeResponse:
        self.calls.append(url)
        response = self.routes.get(url, FakeResponse(status=404))
        if isinstance(response, Exception):
            raise response
        return response


class FakePage:
    def __init__(self, context: "FakeContext") -> None:
        self.context = context
        self.visited: List[str] = []
        self.closed = False

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.visited.append(url)

    async def close(self) -> None:
        self.closed = True
        if self.context.fail_page_close:
            raise RuntimeError("page close failed")


class FakeContext:
    def __init__(
        self,
        request: FakeRequest,
        *,
        no_page: bool = False,
        fail_page_close: bool = False,
    ) -> None:
        self.request = request
        self.no_page = no_page
        self.fail_page_close = fail_page_close
        self.pages: List[FakePage] = []
        self.closed = False

    async def new_page(self) -> Optional[FakePage]:
        if self.no_page:
            return None
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    """Session factory and session provider in one, recording every context."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None, **context_kwargs: Any) -> None:
        self.request = FakeRequest(routes)
        self.context_kwargs = context_kwargs
        self.contexts: List[FakeContext] = []
        self.requested_caps: Dict[str, int] = {}

    def sessions(self, retailer: str, max_contexts: int) -> "FakeBrowser":
        self.requested_caps[retailer] = max_contexts
        return self

    async def create_context(self) -> FakeContext:
        context = FakeContext(self.request, **self.context_kwargs)
        self.contexts.append(context)
        return context


def node(node_id: str, name: str, url: str = "", children: Optional[List[CategoryNode]] = None) -> CategoryNode:
    return CategoryNode(id=node_id, name=name, url=url, children=children or [])


@pytest.fixture
def two_level_tree() -> List[CategoryNode]:
    """``root -> [catA, catB -> [catB1]]`` as returned by a category API."""
    return [
        node("1", "Almacén", "https://www.vea.com.ar/almacen"),
        node(
            "2",
            "Bebidas",
            "https://www.vea.com.ar/bebidas",
            [node("21", "Gaseosas", "https://www.vea.com.ar/bebidas/gaseosas")],
        ),
    ]
