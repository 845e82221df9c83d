"""Crawler engine.

Composition root: builds the job store, queue, crawlers and parsers, wires
processors to crawl types and exposes the submission/status surface.
"""

import logging
from typing import Any, Dict, List, Optional

from config.settings import CrawlerSettings
from pipelines.code_extractor import CodeExtractor
from pipelines.docs_scraper import DocsScraper
from pipelines.github_crawler import DOC_FILE_RE, GitHubCrawlProcessor
from pipelines.markdown_parser import MarkdownParser
from pipelines.models import CrawlJob, ExtractedContent
from .job_handlers import build_processors, register_processors
from .job_store import JobStore, create_job_store
from .jobs import JobQueue, JobStatus, QueueNotReadyError, ResultSink

logger = logging.getLogger(__name__)


class CrawlerEngine:
    """Orchestrates crawling, parsing and job processing."""

    def __init__(self, settings: Optional[CrawlerSettings] = None,
                 store: Optional[JobStore] = None,
                 on_result: Optional[ResultSink] = None):
        self.settings = settings or CrawlerSettings()
        self.on_result = on_result
        self._store = store
        self.queue: Optional[JobQueue] = None

        self.repo_processor = GitHubCrawlProcessor(self.settings.github, user_agent=self.settings.scraper.user_agent)
        self.docs_scraper = DocsScraper(self.settings.scraper)
        self.markdown_parser = MarkdownParser()
        self.code_extractor = CodeExtractor()

    async def initialize(self, start_workers: bool = True):
        """Connect the queue, register processors and start the workers."""
        logger.info("Initializing crawler engine...")
        store = self._store or await create_job_store(self.settings.redis, self.settings.queue.name)
        self.queue = JobQueue(store, self.settings.queue, on_result=self.on_result)
        await self.queue.initialize()
        self.register_processors()
        if start_workers:
            await self.queue.start()
        logger.info("Crawler engine ready")

    def register_processors(self):
        register_processors(self.queue, build_processors(self.repo_processor, self.docs_scraper))

    def _require_queue(self) -> JobQueue:
        if self.queue is None:
            raise QueueNotReadyError("Crawler engine is not initialized")
        return self.queue

    async def queue_crawl(self, job: CrawlJob, priority: Optional[int] = None, delay_ms: int = 0) -> str:
        """Queue a library for crawling and return the job id."""
        return await self._require_queue().enqueue(job, priority=priority, delay_ms=delay_ms)

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        return await self._require_queue().status(job_id)

    async def get_queue_stats(self) -> Dict[str, int]:
        return await self._require_queue().stats()

    async def cleanup(self, older_than_ms: Optional[int] = None) -> int:
        return await self._require_queue().cleanup(older_than_ms)

    def parse_repository_content(self, content: ExtractedContent) -> List[Dict[str, Any]]:
        """Parse the README and documentation files of a repository crawl.

        Returns one entry per document with its parsed markup and the code
        examples found in it, ready for a result sink to store.
        """
        documents = []
        sources = [("README", content.readme)] if content.readme else []
        sources += [(f.path, f.content) for f in content.files if f.content and DOC_FILE_RE.search(f.path)]

        for path, text in sources:
            parsed = self.markdown_parser.parse(text)
            documents.append({
                "path": path,
                "title": parsed.title,
                "description": parsed.description,
                "topics": parsed.topics,
                "headings": parsed.headings,
                "examples": self.code_extractor.extract_examples(text),
            })
        return documents

    async def shutdown(self):
        """Drain the queue and release network resources."""
        if self.queue:
            await self.queue.shutdown()
        await self.repo_processor.close()
        await self.docs_scraper.close()
        logger.info("Crawler engine shut down")
