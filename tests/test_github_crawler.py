"""Tests for the repository crawler against a fake repository API."""

import base64
import json
from typing import Dict, List, Optional
from unittest.mock import Mock

import aiohttp
import pytest
from aiohttp import web

from config.settings import GitHubSettings
from conftest import FakeJob, base_url, make_crawl_job
from pipelines.errors import FormatError, NotFoundError, TransientError
from pipelines.github_crawler import DOC_FILE_RE, GitHubCrawler, GitHubCrawlProcessor
from pipelines.models import CrawlType, JobOutcome


def encode(text: str) -> str:
    # The API wraps base64 content at 60 characters
    raw = base64.b64encode(text.encode()).decode()
    return "\n".join(raw[i:i + 60] for i in range(0, len(raw), 60))


class FakeRepoAPI:
    """Serves one repository's metadata, README, contents and tags."""

    def __init__(self, files: Optional[Dict[str, str]] = None, readme: Optional[str] = None,
                 tags: Optional[List[str]] = None, exists: bool = True,
                 errors: Optional[Dict[str, int]] = None, headers: Optional[Dict[str, str]] = None,
                 garbled: Optional[List[str]] = None):
        self.files = files or {}
        self.readme = readme
        self.tags = tags
        self.exists = exists
        self.errors = errors or {}
        self.headers = headers or {}
        self.garbled = set(garbled or [])
        self.requests: List[aiohttp.web.Request] = []

    def routes(self):
        return {
            "/repos/{owner}/{repo}": self.repo,
            "/repos/{owner}/{repo}/readme": self.readme_handler,
            "/repos/{owner}/{repo}/contents/{path:.*}": self.contents,
            "/repos/{owner}/{repo}/tags": self.tags_handler,
        }

    def _fail(self, key: str):
        status = self.errors.get(key)
        if status:
            return web.json_response({"message": "error"}, status=status, headers=self.headers)
        return None

    async def repo(self, request):
        self.requests.append(request)
        failure = self._fail("repo")
        if failure:
            return failure
        if not self.exists:
            return web.json_response({"message": "Not Found"}, status=404)
        owner, repo = request.match_info["owner"], request.match_info["repo"]
        return web.json_response({"full_name": f"{owner}/{repo}", "stargazers_count": 42})

    async def readme_handler(self, request):
        if self.readme is None:
            return web.json_response({"message": "Not Found"}, status=404)
        return web.json_response({"content": encode(self.readme), "encoding": "base64"})

    async def contents(self, request):
        path = request.match_info["path"].strip("/")
        failure = self._fail(path)
        if failure:
            return failure
        if path in self.garbled:
            return web.Response(text="<html>upstream proxy error</html>", content_type="text/html")

        if path in self.files:
            return web.json_response({
                "type": "file",
                "path": path,
                "content": encode(self.files[path]),
                "encoding": "base64",
                "html_url": f"https://github.com/acme/widgets/blob/main/{path}",
            })

        children = {}
        for file_path in sorted(self.files):
            if file_path.startswith(path + "/"):
                name = file_path[len(path) + 1:].split("/")[0]
                child = f"{path}/{name}"
                children[child] = "file" if child in self.files else "dir"
        if not children:
            return web.json_response({"message": "Not Found"}, status=404)
        return web.json_response([{"path": p, "type": t} for p, t in sorted(children.items())])

    async def tags_handler(self, request):
        failure = self._fail("tags")
        if failure:
            return failure
        return web.json_response([{"name": name} for name in self.tags or []])


@pytest.fixture
def api_server(serve):
    async def _start(api: FakeRepoAPI, **settings):
        server = await serve(api.routes())
        processor = GitHubCrawlProcessor(GitHubSettings(api_url=base_url(server), **settings))
        return server, processor
    return _start


def repo_job(full_name="acme/widgets"):
    return FakeJob(make_crawl_job(crawl_type=CrawlType.REPO, full_name=full_name))


class TestParseFullName:
    """Test suite for owner/project validation."""

    def test_valid_name(self):
        assert GitHubCrawler.parse_full_name("acme/widgets.js") == ("acme", "widgets.js")

    @pytest.mark.parametrize("full_name", [
        "", "widgets", "/widgets", "acme/", "acme/widgets/extra", "acme widgets/x", "acme//widgets", None,
    ])
    def test_malformed_names(self, full_name):
        with pytest.raises(FormatError):
            GitHubCrawler.parse_full_name(full_name)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("full_name", ["widgets", "a/b/c", " / "])
    async def test_initialize_makes_no_request_for_malformed_name(self, full_name):
        session = Mock(spec=aiohttp.ClientSession)
        crawler = GitHubCrawler(session)

        with pytest.raises(FormatError):
            await crawler.initialize(full_name)

        session.get.assert_not_called()


class TestCrawl:
    """Test suite for GitHubCrawlProcessor end to end."""

    @pytest.mark.asyncio
    async def test_full_repository(self, api_server):
        api = FakeRepoAPI(
            readme="# Widgets\n\nComposable widgets.",
            files={
                "package.json": json.dumps({"name": "widgets", "version": "2.1.0"}),
                "docs/index.md": "# Docs",
                "docs/image.png": "binary",
                "docs/guide/setup.mdx": "# Setup",
                "examples/basic.ts": "export const answer = 42;",
                "examples/README.txt": "not code",
            },
        )
        _, processor = await api_server(api)
        job = repo_job()

        async with processor:
            result = await processor.process_job(job)

        assert result.status == JobOutcome.COMPLETED
        content = result.payload
        assert [f.path for f in content.files] == ["docs/index.md", "docs/guide/setup.mdx", "examples/basic.ts"]
        assert content.files[0].content == "# Docs"
        assert content.files[0].url.endswith("docs/index.md")
        assert content.readme == "# Widgets\n\nComposable widgets."
        assert content.manifest == {"name": "widgets", "version": "2.1.0"}
        assert content.example_count == 1
        assert result.pages_crawled == 4
        assert result.pages_indexed == 4
        assert job.progress_updates == [10, 20, 50, 80, 100]

    @pytest.mark.asyncio
    async def test_empty_repository_is_still_completed(self, api_server):
        _, processor = await api_server(FakeRepoAPI(readme=None, files={}))

        async with processor:
            result = await processor.process_job(repo_job())

        assert result.status == JobOutcome.COMPLETED
        assert result.payload.files == []
        assert result.payload.readme is None
        assert result.payload.manifest is None
        assert result.payload.example_count == 0
        assert result.pages_crawled == 0

    @pytest.mark.asyncio
    async def test_missing_repository_fails_without_retry(self, api_server):
        _, processor = await api_server(FakeRepoAPI(exists=False))

        async with processor:
            result = await processor.process_job(repo_job())

        assert result.status == JobOutcome.FAILED
        assert result.retryable is False
        assert "Repository not found" in result.error
        assert result.pages_crawled == 0

    @pytest.mark.asyncio
    async def test_malformed_name_fails_without_retry(self, api_server):
        api = FakeRepoAPI()
        _, processor = await api_server(api)

        async with processor:
            result = await processor.process_job(repo_job("not-a-repo"))

        assert result.status == JobOutcome.FAILED
        assert result.retryable is False
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_server_error_on_initialize_is_retryable(self, api_server):
        _, processor = await api_server(FakeRepoAPI(errors={"repo": 502}))

        async with processor:
            result = await processor.process_job(repo_job())

        assert result.status == JobOutcome.FAILED
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, api_server):
        api = FakeRepoAPI(errors={"repo": 403}, headers={"X-RateLimit-Remaining": "0"})
        _, processor = await api_server(api)

        async with processor:
            crawler = processor.create_crawler()
            with pytest.raises(TransientError):
                await crawler.initialize("acme/widgets")

    @pytest.mark.asyncio
    async def test_token_sent_as_bearer(self, api_server):
        api = FakeRepoAPI()
        _, processor = await api_server(api, token="s3cret")

        async with processor:
            await processor.create_crawler().initialize("acme/widgets")

        assert api.requests[0].headers["Authorization"] == "Bearer s3cret"
        assert api.requests[0].headers["Accept"] == "application/vnd.github+json"

    @pytest.mark.asyncio
    async def test_first_candidate_directory_with_files_wins(self, api_server):
        api = FakeRepoAPI(files={
            "doc/notes.txt": "plain",
            "website/intro.md": "# Intro",
            "documentation/other.md": "# Other",
        })
        _, processor = await api_server(api)

        async with processor:
            crawler = processor.create_crawler()
            await crawler.initialize("acme/widgets")
            files = await crawler.get_documentation_files()

        assert [f.path for f in files] == ["website/intro.md"]

    @pytest.mark.asyncio
    async def test_file_cap(self, api_server):
        api = FakeRepoAPI(files={f"docs/page{i}.md": f"# Page {i}" for i in range(5)})
        _, processor = await api_server(api, max_files=3)

        async with processor:
            crawler = processor.create_crawler()
            await crawler.initialize("acme/widgets")
            files = await crawler.get_files_from_directory("docs", DOC_FILE_RE)

        assert len(files) == 3

    @pytest.mark.asyncio
    async def test_unreadable_subdirectory_is_skipped(self, api_server):
        api = FakeRepoAPI(
            files={"docs/a.md": "# A", "docs/broken/x.md": "# X", "docs/z/y.md": "# Y"},
            errors={"docs/broken": 500},
        )
        _, processor = await api_server(api)

        async with processor:
            crawler = processor.create_crawler()
            await crawler.initialize("acme/widgets")
            files = await crawler.get_documentation_files()

        assert [f.path for f in files] == ["docs/a.md", "docs/z/y.md"]

    @pytest.mark.asyncio
    async def test_file_with_undecodable_response_is_skipped(self, api_server):
        api = FakeRepoAPI(
            files={"docs/a.md": "# A", "docs/b.md": "# B", "docs/c.md": "# C"},
            garbled=["docs/b.md"],
        )
        _, processor = await api_server(api)

        async with processor:
            crawler = processor.create_crawler()
            await crawler.initialize("acme/widgets")
            files = await crawler.get_documentation_files()

        assert [f.path for f in files] == ["docs/a.md", "docs/c.md"]

    @pytest.mark.asyncio
    async def test_missing_root_directory_raises_not_found(self, api_server):
        _, processor = await api_server(FakeRepoAPI(files={}))

        async with processor:
            crawler = processor.create_crawler()
            await crawler.initialize("acme/widgets")
            with pytest.raises(NotFoundError):
                await crawler.get_files_from_directory("docs", DOC_FILE_RE)

    @pytest.mark.asyncio
    async def test_invalid_manifest_is_ignored(self, api_server):
        api = FakeRepoAPI(readme="hi", files={"package.json": "{not json"})
        _, processor = await api_server(api)

        async with processor:
            result = await processor.process_job(repo_job())

        assert result.status == JobOutcome.COMPLETED
        assert result.payload.manifest is None
        assert result.pages_crawled == 1

    @pytest.mark.asyncio
    async def test_failing_step_does_not_abort_crawl(self, api_server):
        api = FakeRepoAPI(
            readme="# Widgets",
            files={"package.json": "{}", "examples/run.py": "print('hi')"},
            errors={"package.json": 500},
        )
        _, processor = await api_server(api)

        async with processor:
            result = await processor.process_job(repo_job())

        assert result.status == JobOutcome.COMPLETED
        assert result.payload.manifest is None
        assert [f.path for f in result.payload.files] == ["examples/run.py"]


class TestVersions:
    """Test suite for GitHubCrawler.get_versions."""

    @pytest.mark.asyncio
    async def test_semver_tags_only(self, api_server):
        tags = ["v1.2.3", "2.0.0-beta.1", "latest", "v0.1", "release-3"] + [f"v0.0.{i}" for i in range(12)]
        _, processor = await api_server(FakeRepoAPI(tags=tags))

        async with processor:
            crawler = processor.create_crawler()
            await crawler.initialize("acme/widgets")
            versions = await crawler.get_versions()

        assert len(versions) == 10
        assert versions[:3] == ["1.2.3", "2.0.0-beta.1", "0.0.0"]

    @pytest.mark.asyncio
    async def test_failure_returns_empty_list(self, api_server):
        _, processor = await api_server(FakeRepoAPI(errors={"tags": 500}))

        async with processor:
            crawler = processor.create_crawler()
            await crawler.initialize("acme/widgets")
            assert await crawler.get_versions() == []
