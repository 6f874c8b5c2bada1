from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from llm_spider.config import SpiderConfig
from llm_spider.errors import ModelUnavailable, ProviderUnavailable
from llm_spider.providers.base import ScoredLink, SearchHit


# ---- Deterministic provider stubs ------------------------------------------

class StaticSeeder:
    def __init__(self, urls: Sequence[str], fail: bool = False) -> None:
        self.urls = list(urls)
        self.fail = fail
        self.calls: List[Tuple[str, int]] = []

    async def search(self, query: str, limit: int) -> List[SearchHit]:
        self.calls.append((query, limit))
        if self.fail:
            raise ProviderUnavailable("search is down")
        return [SearchHit(url=u, rank=i) for i, u in enumerate(self.urls[:limit])]


class StubModel:
    """Picks the *last* `limit` candidates so tests can tell it apart from the fallback."""

    def __init__(
        self,
        fail: bool = False,
        choose: Optional[Callable[[str, Sequence[ScoredLink], int], List[str]]] = None,
    ) -> None:
        self.fail = fail
        self.choose = choose
        self.calls: List[Tuple[str, List[str], int]] = []

    async def select(self, excerpt: str, candidates: Sequence[ScoredLink], limit: int, *, query: str = "") -> List[str]:
        self.calls.append((excerpt, [c.url for c in candidates], limit))
        if self.fail:
            raise ModelUnavailable("forced failure")
        if self.choose is not None:
            return self.choose(excerpt, candidates, limit)
        return [c.url for c in candidates][-limit:]


def make_config(**budget) -> SpiderConfig:
    cfg = SpiderConfig(
        api_key="test-key",
        allow_local=True,
        min_host_interval=0.0,
        request_timeout=2.0,
        robots_timeout=1.0,
        retries=0,
        drain_grace=0.5,
    )
    return cfg.with_budget(**budget)


# ---- Local site ---------------------------------------------------------------

Response = Union[str, Tuple[int, str], Tuple[int, str, Dict[str, str]]]
# A fixed response, or a callable taking the hit count for that path.
Route = Union[Response, Callable[[int], Response]]


@dataclass
class Site:
    server: TestServer
    hits: Counter = field(default_factory=Counter)
    release: asyncio.Event = field(default_factory=asyncio.Event)

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))


def page(title: str, body: str) -> str:
    return f"<html><head><title>{title}</title></head><body>{body}</body></html>"


def default_routes() -> Dict[str, Route]:
    return {
        "/start": page(
            "Start",
            "<h1>Start</h1><p>Start page text.</p>"
            '<a href="/a">Page A</a> <a href="/b">Page B</a>',
        ),
        "/a": page("A", "<h1>A</h1><p>Alpha text.</p>"),
        "/b": page("B", "<h1>B</h1><p>Beta text.</p>"),
    }


async def start_site(routes: Dict[str, Route]) -> Site:
    site: Site

    async def handler(request: web.Request) -> web.StreamResponse:
        path = request.path
        site.hits[path] += 1
        if path == "/slow":
            try:
                await asyncio.wait_for(site.release.wait(), timeout=5)
            except asyncio.TimeoutError:
                pass
        route = routes.get(path)
        if route is None:
            return web.Response(status=404, text="<html><body>not found</body></html>", content_type="text/html")
        if callable(route):
            route = route(site.hits[path])
        headers: Dict[str, str] = {}
        if isinstance(route, str):
            status, body = 200, route
        elif len(route) == 2:
            status, body = route
        else:
            status, body, headers = route
        headers = dict(headers)
        content_type = headers.pop("Content-Type", "text/plain" if path == "/robots.txt" else "text/html")
        return web.Response(status=status, text=body, content_type=content_type, headers=headers)

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", handler)
    server = TestServer(app, host="127.0.0.1")
    site = Site(server=server)
    await server.start_server()
    return site


@pytest_asyncio.fixture
async def make_site():
    sites: List[Site] = []

    async def _make(routes: Optional[Dict[str, Route]] = None) -> Site:
        site = await start_site(routes if routes is not None else default_routes())
        sites.append(site)
        return site

    yield _make
    for site in sites:
        site.release.set()
        await site.server.close()


@pytest.fixture
def config_factory():
    return make_config
