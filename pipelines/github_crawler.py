"""Repository crawler.

Pulls a repository's README, manifest, documentation files and example
files through the GitHub REST API. Every step is independent: a failing
step is logged and the crawl carries on with what it has.
"""

import base64
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional, Pattern, Sequence, Tuple

import aiohttp

from config.settings import DEFAULT_USER_AGENT, GitHubSettings
from observability.logging import get_job_logger
from .errors import CrawlError, FormatError, NotFoundError, is_retryable
from .fetch import create_session, get_json
from .models import CrawlJobResult, ExtractedContent, RepoFile

logger = logging.getLogger(__name__)

FULL_NAME_RE = re.compile(r'^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)$')
VERSION_RE = re.compile(r'^\d+\.\d+\.\d+')

DOC_PATHS = ("docs", "doc", "website", "documentation")
EXAMPLE_PATHS = ("examples", "example", "samples", "demo", "demos")
DOC_FILE_RE = re.compile(r'\.(md|markdown|mdx|rst)$', re.IGNORECASE)
EXAMPLE_FILE_RE = re.compile(r'\.(js|ts|jsx|tsx|py|java|go|rs)$', re.IGNORECASE)

MAX_VERSIONS = 10


@dataclass
class StepResult:
    """Outcome of one best-effort crawl step."""
    name: str
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def decode_content(data: Dict[str, Any]) -> Optional[str]:
    """Decode the base64 ``content`` of a contents/readme API response."""
    if not isinstance(data, dict) or data.get('content') is None:
        return None
    if data.get('encoding', 'base64') != 'base64':
        return data['content']
    return base64.b64decode(data['content']).decode('utf-8', errors='replace')


class GitHubCrawler:
    """Extracts documentation, examples and metadata from one repository.

    An instance holds the state of a single crawl; create a new one per job.
    """

    def __init__(self, session: aiohttp.ClientSession,
                 api_url: str = "https://api.github.com",
                 max_files: int = 50,
                 manifest_path: str = "package.json"):
        self.session = session
        self.api_url = api_url.rstrip('/')
        self.max_files = max_files
        self.manifest_path = manifest_path
        self.owner = ""
        self.repo = ""

    @staticmethod
    def parse_full_name(full_name: str) -> Tuple[str, str]:
        """Split ``owner/project`` into its parts.

        Raises:
            FormatError: if the name is not exactly two non-empty segments
        """
        match = FULL_NAME_RE.match(full_name or "")
        if not match:
            raise FormatError(f"Invalid full name format: {full_name!r} (expected owner/project)")
        return match.group(1), match.group(2)

    @property
    def repo_url(self) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}"

    async def _get(self, path: str = "", params: Optional[Dict[str, str]] = None):
        return await get_json(self.session, f"{self.repo_url}{path}", target="github", params=params)

    async def initialize(self, full_name: str) -> Dict[str, Any]:
        """Validate the name and fetch repository metadata.

        Raises:
            FormatError: malformed name (no request is made)
            NotFoundError: repository does not exist
            TransientError: API unavailable or rate limited
        """
        self.owner, self.repo = self.parse_full_name(full_name)

        try:
            repo_data = await self._get()
        except NotFoundError:
            raise NotFoundError(f"Repository not found: {full_name}")

        logger.info(
            f"Initialized crawler for {repo_data.get('full_name', full_name)} "
            f"({repo_data.get('stargazers_count', 0)} stars)"
        )
        return repo_data

    async def crawl(self, job=None) -> ExtractedContent:
        """Crawl the repository.

        Args:
            job: Optional queued job used to report progress

        Returns:
            ExtractedContent aggregated from every step that succeeded
        """
        readme = await self._run_step("readme", self.get_readme())
        await self._report(job, 10)

        manifest = await self._run_step("manifest", self.get_manifest())
        await self._report(job, 20)

        docs = await self._run_step("documentation", self.get_documentation_files())
        await self._report(job, 50)

        examples = await self._run_step("examples", self.get_example_files())
        await self._report(job, 80)

        example_files = examples.value or []
        content = ExtractedContent(
            files=(docs.value or []) + example_files,
            readme=readme.value,
            manifest=manifest.value,
            example_count=len(example_files),
        )

        failed = [step.name for step in (readme, manifest, docs, examples) if not step.ok]
        if failed:
            logger.warning(f"{self.owner}/{self.repo}: crawl steps failed: {', '.join(failed)}")

        await self._report(job, 100)
        return content

    async def _run_step(self, name: str, step: Awaitable) -> StepResult:
        try:
            return StepResult(name=name, value=await step)
        except Exception as e:
            logger.warning(f"Could not fetch {name} for {self.owner}/{self.repo}: {e}")
            return StepResult(name=name, error=str(e) or type(e).__name__)

    @staticmethod
    async def _report(job, progress: int):
        if job is not None:
            await job.update_progress(progress)

    async def get_readme(self) -> Optional[str]:
        """README text, or None when the repository has none."""
        try:
            data = await self._get("/readme")
        except NotFoundError:
            return None
        return decode_content(data)

    async def get_manifest(self) -> Optional[Dict[str, Any]]:
        """Decoded project manifest (``package.json`` by default), or None."""
        try:
            data = await self._get(f"/contents/{self.manifest_path}")
        except NotFoundError:
            return None

        if isinstance(data, list) or data.get('type') != 'file':
            return None

        raw = decode_content(data)
        if raw is None:
            return None
        try:
            manifest = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in {self.manifest_path}: {e}")
            return None
        return manifest if isinstance(manifest, dict) else None

    async def get_documentation_files(self) -> List[RepoFile]:
        return await self._search_directories(DOC_PATHS, DOC_FILE_RE)

    async def get_example_files(self) -> List[RepoFile]:
        return await self._search_directories(EXAMPLE_PATHS, EXAMPLE_FILE_RE)

    async def _search_directories(self, candidates: Sequence[str], pattern: Pattern) -> List[RepoFile]:
        """Return the files of the first candidate directory that has any."""
        for path in candidates:
            try:
                files = await self.get_files_from_directory(path, pattern)
            except NotFoundError:
                continue
            except CrawlError as e:
                logger.warning(f"Skipping {path}/ in {self.owner}/{self.repo}: {e}")
                continue
            if files:
                logger.info(f"Found {len(files)} files under {path}/ in {self.owner}/{self.repo}")
                return files
        return []

    async def get_files_from_directory(self, path: str, pattern: Pattern,
                                       max_files: Optional[int] = None) -> List[RepoFile]:
        """Walk a directory tree collecting files whose path matches ``pattern``.

        Uses an explicit stack, so deep trees do not grow the call stack.
        Unreadable files and subdirectories are skipped; a missing root
        directory raises NotFoundError.
        """
        max_files = max_files or self.max_files
        files: List[RepoFile] = []
        stack = [path]
        seen = set()

        while stack and len(files) < max_files:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)

            try:
                listing = await self._get(f"/contents/{current}")
            except CrawlError as e:
                if current == path:
                    raise
                logger.warning(f"Failed to list {current}: {e}")
                continue

            if not isinstance(listing, list):
                continue

            subdirs = []
            for item in listing:
                if len(files) >= max_files:
                    break
                item_path = item.get('path', '')
                if item.get('type') == 'file' and pattern.search(item_path):
                    try:
                        file_data = await self._get(f"/contents/{item_path}")
                    except CrawlError as e:
                        logger.warning(f"Failed to get file {item_path}: {e}")
                        continue
                    content = decode_content(file_data)
                    if content is not None:
                        files.append(RepoFile(
                            path=item_path,
                            kind='file',
                            content=content,
                            url=file_data.get('html_url'),
                        ))
                elif item.get('type') == 'dir':
                    subdirs.append(item_path)

            # Reversed so the first subdirectory is walked next
            stack.extend(reversed(subdirs))

        return files

    async def get_versions(self) -> List[str]:
        """Up to 10 most recent semver tags with any leading ``v`` removed."""
        try:
            tags = await self._get("/tags", params={"per_page": "100"})
        except Exception as e:
            logger.warning(f"Could not fetch versions for {self.owner}/{self.repo}: {e}")
            return []

        versions = [re.sub(r'^v', '', tag.get('name', '')) for tag in tags or []]
        return [v for v in versions if VERSION_RE.match(v)][:MAX_VERSIONS]


class GitHubCrawlProcessor:
    """Queue processor for ``repo`` crawl jobs.

    Owns the HTTP session shared across jobs; crawl state is per job.
    """

    def __init__(self, settings: Optional[GitHubSettings] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 user_agent: str = DEFAULT_USER_AGENT):
        self.settings = settings or GitHubSettings()
        self.user_agent = user_agent
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            headers = {
                'Accept': 'application/vnd.github+json',
                'X-GitHub-Api-Version': '2022-11-28',
            }
            if self.settings.token:
                headers['Authorization'] = f"Bearer {self.settings.token}"
            self.session = create_session(self.user_agent, self.settings.request_timeout, headers)
        return self.session

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    def create_crawler(self) -> GitHubCrawler:
        return GitHubCrawler(
            self._ensure_session(),
            api_url=self.settings.api_url,
            max_files=self.settings.max_files,
            manifest_path=self.settings.manifest_path,
        )

    async def crawl(self, job) -> ExtractedContent:
        """Initialize and crawl the repository named by ``job.data``."""
        crawler = self.create_crawler()
        await crawler.initialize(job.data.full_name)
        return await crawler.crawl(job)

    async def process_job(self, job) -> CrawlJobResult:
        """Process a crawl job from the queue. Never raises."""
        start_time = time.monotonic()
        data = job.data
        job_logger = get_job_logger(__name__, job.id, data.crawl_type.value, library=data.full_name)

        try:
            content = await self.crawl(job)
        except Exception as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            job_logger.error(f"Repository crawl failed: {e}")
            return CrawlJobResult.failed(
                job.id, data.library_id,
                error=str(e) or type(e).__name__,
                duration_ms=duration_ms,
                retryable=is_retryable(e),
            )

        duration_ms = int((time.monotonic() - start_time) * 1000)
        job_logger.info(
            f"Repository crawl completed: {content.pages_crawled} items "
            f"({content.example_count} examples) in {duration_ms}ms"
        )
        return CrawlJobResult.completed(
            job.id, data.library_id,
            pages=content.pages_crawled,
            duration_ms=duration_ms,
            payload=content,
        )
