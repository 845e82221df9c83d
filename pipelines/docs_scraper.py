"""Documentation site scraper.

Depth-first crawl of a documentation site, one request at a time with a
fixed delay between requests. Every invocation gets its own visited set.
"""

import asyncio
import logging
import time
from typing import List, Optional, Set, Tuple
from urllib.parse import urldefrag, urljoin, urlparse

import aiohttp
from bs4 import BeautifulSoup

from config.settings import ScraperSettings
from observability.logging import get_job_logger
from .errors import CrawlError, NotFoundError, TransientError, is_retryable
from .fetch import create_session, get_text
from .github_crawler import GitHubCrawler
from .models import CrawlJob, CrawlJobResult, PageType, ScrapedPage

logger = logging.getLogger(__name__)

CONTENT_SELECTORS = (
    'main', 'article', '[role="main"]', '.content',
    '.documentation', '.docs', '.page-content',
)
BOILERPLATE_SELECTORS = 'script, style, nav, header, footer, aside, .sidebar, .toc, .table-of-contents'

# Checked in order; first match wins
PAGE_TYPE_RULES: Tuple[Tuple[PageType, Tuple[str, ...]], ...] = (
    (PageType.API, ('api', 'reference')),
    (PageType.GUIDE, ('guide', 'tutorial')),
    (PageType.EXAMPLE, ('example', 'sample')),
)

DOCS_URL_PATTERNS = (
    "https://{repo}.dev",
    "https://{repo}.io",
    "https://{owner}.github.io/{repo}",
    "https://docs.{owner}.com",
    "https://{repo}.readthedocs.io",
)

MIN_CONTENT_LENGTH = 100
MAX_TOPICS = 10


def classify_page_type(url: str, heading: str = "") -> PageType:
    """Classify a page by URL path keywords, then by its top heading."""
    path = urlparse(url).path.lower()
    for page_type, keywords in PAGE_TYPE_RULES:
        if any(f"/{keyword}" in path for keyword in keywords):
            return page_type

    heading = heading.lower()
    for page_type, keywords in PAGE_TYPE_RULES:
        if any(keyword in heading for keyword in keywords):
            return page_type

    return PageType.OTHER


def extract_title(soup: BeautifulSoup) -> str:
    h1 = soup.find('h1')
    if h1 and h1.get_text(strip=True):
        return h1.get_text(" ", strip=True)
    if soup.title and soup.title.get_text(strip=True):
        return soup.title.get_text(strip=True)
    return "Untitled"


def extract_main_content(soup: BeautifulSoup) -> str:
    """Text of the first content region longer than 100 characters.

    Boilerplate is stripped from each candidate region; falls back to the
    whole body. Mutates ``soup``.
    """
    for selector in CONTENT_SELECTORS:
        region = soup.select_one(selector)
        if region is None:
            continue
        for element in region.select(BOILERPLATE_SELECTORS):
            element.decompose()
        text = region.get_text("\n", strip=True)
        if len(text) > MIN_CONTENT_LENGTH:
            return text

    body = soup.body or soup
    for element in body.select(BOILERPLATE_SELECTORS):
        element.decompose()
    return body.get_text("\n", strip=True)


def extract_topics(soup: BeautifulSoup) -> List[str]:
    """Section headings then meta keywords, deduplicated in order."""
    topics: List[str] = []

    def add(topic: str):
        if topic not in topics:
            topics.append(topic)

    for heading in soup.find_all(['h2', 'h3']):
        text = heading.get_text(" ", strip=True).lower()
        if 3 < len(text) < 100:
            add(text)

    keywords = soup.find('meta', attrs={'name': 'keywords'})
    if keywords and keywords.get('content'):
        for keyword in keywords['content'].split(','):
            keyword = keyword.strip().lower()
            if len(keyword) > 3:
                add(keyword)

    return topics[:MAX_TOPICS]


def extract_links(soup: BeautifulSoup, page_url: str, limit: int = 20) -> List[str]:
    """Same-host http(s) links in document order, without fragments."""
    current = urldefrag(page_url)[0]
    host = urlparse(current).hostname
    links: List[str] = []

    for anchor in soup.find_all('a', href=True):
        href = anchor['href'].strip()
        if not href or href.startswith('#'):
            continue
        try:
            url = urldefrag(urljoin(current, href))[0]
            parsed = urlparse(url)
            hostname = parsed.hostname
        except ValueError:
            logger.debug(f"Ignoring malformed link {href!r} on {page_url}")
            continue
        if parsed.scheme not in ('http', 'https') or hostname != host:
            continue
        if url == current or url in links:
            continue
        links.append(url)
        if len(links) >= limit:
            break

    return links


def candidate_docs_urls(full_name: str) -> List[str]:
    """Conventional documentation URLs for ``owner/project``."""
    owner, repo = GitHubCrawler.parse_full_name(full_name)
    return [pattern.format(owner=owner, repo=repo) for pattern in DOCS_URL_PATTERNS]


class DocsScraper:
    """Scrapes documentation sites and processes ``docs-site`` crawl jobs."""

    def __init__(self, settings: Optional[ScraperSettings] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings or ScraperSettings()
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = create_session(
                self.settings.user_agent,
                self.settings.request_timeout,
                headers={'Accept': 'text/html,application/xhtml+xml'},
            )
        return self.session

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def _fetch(self, url: str) -> str:
        await asyncio.sleep(self.settings.request_delay_ms / 1000)
        return await get_text(self._ensure_session(), url, target="docs")

    async def _scrape_page(self, url: str, depth: int) -> Tuple[Optional[ScrapedPage], List[str]]:
        """Fetch and extract one page. Returns the page (None when too thin) and its links."""
        html = await self._fetch(url)
        soup = BeautifulSoup(html, 'html.parser')
        h1 = soup.find('h1')
        title = extract_title(soup)
        page_type = classify_page_type(url, h1.get_text(" ", strip=True) if h1 else "")
        topics = extract_topics(soup)
        links = extract_links(soup, url, self.settings.max_links_per_page)
        content = extract_main_content(soup)

        if len(content) <= MIN_CONTENT_LENGTH:
            logger.debug(f"Skipping {url}: not enough content ({len(content)} chars)")
            return None, links

        page = ScrapedPage(
            url=url,
            title=title,
            content=content,
            type=page_type,
            topics=topics,
            depth=depth,
        )
        return page, links

    async def scrape(self, base_url: str, job=None) -> List[ScrapedPage]:
        """Crawl ``base_url`` and return the pages with meaningful content.

        A page that fails to fetch or parse is skipped; only the root page
        failing transiently (or unexpectedly) aborts the crawl.

        Raises:
            TransientError: the root page could not be fetched
        """
        max_pages = self.settings.max_pages
        max_depth = self.settings.max_depth
        pages: List[ScrapedPage] = []
        visited: Set[str] = set()
        stack: List[Tuple[str, int]] = [(urldefrag(base_url)[0], 0)]

        while stack and len(pages) < max_pages:
            url, depth = stack.pop()
            if depth > max_depth or url in visited or len(visited) >= max_pages:
                continue
            visited.add(url)

            try:
                page, links = await self._scrape_page(url, depth)
            except TransientError:
                if depth == 0:
                    raise
                logger.warning(f"Failed to fetch {url}, skipping")
                continue
            except CrawlError as e:
                logger.warning(f"Skipping {url}: {e}")
                continue
            except Exception as e:
                if depth == 0:
                    raise
                logger.warning(f"Skipping {url}: {type(e).__name__}: {e}")
                continue

            if page is not None:
                pages.append(page)
                if job is not None:
                    await job.update_progress(int(len(pages) / max_pages * 100))

            if depth < max_depth:
                # Reversed so links are visited in document order
                stack.extend((link, depth + 1) for link in reversed(links) if link not in visited)

        logger.info(f"Scraped {len(pages)} pages from {base_url} ({len(visited)} URLs visited)")
        return pages

    async def is_reachable(self, url: str) -> bool:
        try:
            await get_text(self._ensure_session(), url, target="docs")
        except CrawlError as e:
            logger.debug(f"Candidate {url} not reachable: {e}")
            return False
        return True

    async def resolve_docs_url(self, job: CrawlJob) -> str:
        """Scrape target for a job.

        ``metadata["docsUrl"]`` (or ``docs_url``) wins. Otherwise the first
        conventional URL derived from the repository name is used, or with
        ``validate_candidates`` the first one that answers.
        """
        explicit = job.metadata.get('docsUrl') or job.metadata.get('docs_url')
        if explicit:
            return explicit

        candidates = candidate_docs_urls(job.full_name)
        if not self.settings.validate_candidates:
            return candidates[0]

        for candidate in candidates:
            if await self.is_reachable(candidate):
                return candidate
        raise NotFoundError(f"No reachable documentation site for {job.full_name}")

    async def process_job(self, job) -> CrawlJobResult:
        """Process a crawl job from the queue. Never raises."""
        start_time = time.monotonic()
        data = job.data
        job_logger = get_job_logger(__name__, job.id, data.crawl_type.value, library=data.full_name)

        try:
            docs_url = await self.resolve_docs_url(data)
            job_logger.info(f"Scraping documentation site {docs_url}")
            pages = await self.scrape(docs_url, job)
        except Exception as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            job_logger.error(f"Documentation scrape failed: {e}")
            return CrawlJobResult.failed(
                job.id, data.library_id,
                error=str(e) or type(e).__name__,
                duration_ms=duration_ms,
                retryable=is_retryable(e),
            )

        duration_ms = int((time.monotonic() - start_time) * 1000)
        job_logger.info(f"Documentation scrape completed: {len(pages)} pages in {duration_ms}ms")
        return CrawlJobResult.completed(
            job.id, data.library_id,
            pages=len(pages),
            duration_ms=duration_ms,
            payload=pages,
        )
