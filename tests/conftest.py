"""Shared fixtures for the crawler engine tests."""

import sys
from collections import Counter
from pathlib import Path
from typing import Callable, Dict, List, Union

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

sys.path.insert(0, str(Path(__file__).parent.parent))

from pipelines.models import CrawlJob, CrawlType


def make_crawl_job(crawl_type=CrawlType.DOCS_SITE, full_name="acme/widgets", **overrides) -> CrawlJob:
    """Create a crawl job with sensible test defaults."""
    fields = dict(
        library_id="lib-1",
        library_name=full_name.split('/')[-1],
        full_name=full_name,
        version="1.0.0",
        repository_url=f"https://github.com/{full_name}",
        crawl_type=crawl_type,
        metadata={},
    )
    fields.update(overrides)
    return CrawlJob(**fields)


class FakeJob:
    """Stand-in for the queue's job handle."""

    def __init__(self, data: CrawlJob, job_id: str = "1"):
        self.id = job_id
        self.data = data
        self.attempts_made = 0
        self.progress_updates: List[int] = []

    async def update_progress(self, progress):
        self.progress_updates.append(int(progress))


def html_page(title: str, body: str, links: List[str] = (), extra_head: str = "") -> str:
    """Build a documentation page with a <main> region and nav links."""
    anchors = "".join(f'<li><a href="{href}">{href}</a></li>' for href in links)
    return f"""<!DOCTYPE html>
<html>
<head><title>{title} | Docs</title>{extra_head}</head>
<body>
  <nav><ul>{anchors}</ul></nav>
  <main>
    <h1>{title}</h1>
    <p>{body}</p>
  </main>
  <footer>Copyright Acme</footer>
</body>
</html>"""


Route = Union[str, Callable]


@pytest.fixture
def make_job():
    return make_crawl_job


@pytest_asyncio.fixture
async def serve():
    """Start a local HTTP server for a mapping of path -> HTML or handler.

    The returned server exposes ``hits``, a Counter of requested paths.
    """
    servers = []

    async def _serve(routes: Dict[str, Route]) -> TestServer:
        hits = Counter()

        @web.middleware
        async def count_hits(request, handler):
            hits[request.path] += 1
            return await handler(request)

        app = web.Application(middlewares=[count_hits])
        for path, route in routes.items():
            if callable(route):
                app.router.add_get(path, route)
            else:
                app.router.add_get(path, _static(route))

        server = TestServer(app)
        await server.start_server()
        server.hits = hits
        servers.append(server)
        return server

    yield _serve

    for server in servers:
        await server.close()


def _static(html: str):
    async def handler(request):
        return web.Response(text=html, content_type='text/html')
    return handler


def base_url(server: TestServer, path: str = "/") -> str:
    return str(server.make_url(path))
