"""Crawl-type routing for the job queue."""

import logging
import time
from typing import Dict

from pipelines.docs_scraper import DocsScraper
from pipelines.github_crawler import GitHubCrawlProcessor
from pipelines.models import CrawlJobResult, CrawlType, JobOutcome
from observability.logging import get_job_logger
from .jobs import JobQueue, Processor

logger = logging.getLogger(__name__)


class ScaledProgress:
    """Maps a sub-crawl's 0-100 progress onto a slice of the parent job."""

    def __init__(self, job, offset: int, span: int):
        self._job = job
        self.offset = offset
        self.span = span

    def __getattr__(self, name):
        return getattr(self._job, name)

    async def update_progress(self, progress):
        await self._job.update_progress(self.offset + progress * self.span / 100)


class FullCrawlProcessor:
    """Repository crawl followed by a documentation site scrape.

    The repository crawl decides the outcome; a failed site scrape only
    drops the docs pages from the totals.
    """

    def __init__(self, repo_processor: GitHubCrawlProcessor, docs_scraper: DocsScraper):
        self.repo_processor = repo_processor
        self.docs_scraper = docs_scraper

    async def process_job(self, job) -> CrawlJobResult:
        start_time = time.monotonic()
        job_logger = get_job_logger(__name__, job.id, job.data.crawl_type.value, library=job.data.full_name)

        repo_result = await self.repo_processor.process_job(ScaledProgress(job, 0, 50))
        if repo_result.status == JobOutcome.FAILED:
            repo_result.duration_ms = int((time.monotonic() - start_time) * 1000)
            return repo_result

        docs_result = await self.docs_scraper.process_job(ScaledProgress(job, 50, 50))
        docs_pages = []
        if docs_result.status == JobOutcome.COMPLETED:
            docs_pages = docs_result.payload or []
        else:
            job_logger.warning(f"Documentation site skipped: {docs_result.error}")

        duration_ms = int((time.monotonic() - start_time) * 1000)
        return CrawlJobResult.completed(
            job.id, job.data.library_id,
            pages=repo_result.pages_crawled + len(docs_pages),
            duration_ms=duration_ms,
            payload={"repo": repo_result.payload, "docs": docs_pages},
        )


def build_processors(repo_processor: GitHubCrawlProcessor,
                     docs_scraper: DocsScraper) -> Dict[CrawlType, Processor]:
    """One processor per crawl type."""
    full = FullCrawlProcessor(repo_processor, docs_scraper)
    return {
        CrawlType.REPO: repo_processor.process_job,
        CrawlType.DOCS_SITE: docs_scraper.process_job,
        CrawlType.FULL: full.process_job,
    }


def register_processors(queue: JobQueue, processors: Dict[CrawlType, Processor]):
    for crawl_type, processor in processors.items():
        queue.register_processor(crawl_type, processor)
    logger.info(f"Registered {len(processors)} crawl processors")
