"""Crawl job queue.

Priority-ordered, retrying job queue with a bounded pool of asyncio
workers. State lives in a ``JobStore`` (Redis, or memory-only when Redis
is unavailable) so any number of workers can share one queue.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from config.settings import QueueSettings
from observability.metrics import record_job_result, record_job_retry, update_queue_depth
from pipelines.models import CrawlJob, CrawlJobResult, CrawlType, JobOutcome
from .job_store import JobRecord, JobState, JobStore

logger = logging.getLogger(__name__)

Processor = Callable[['QueuedJob'], Awaitable[CrawlJobResult]]
ResultSink = Callable[[str, CrawlJobResult], Awaitable[Any]]


class QueueError(Exception):
    """Base class for job queue errors."""
    pass


class QueueNotReadyError(QueueError):
    """Queue is not initialized or has been shut down."""
    pass


class ProcessorConflictError(QueueError):
    """A processor is already registered for the crawl type."""
    pass


@dataclass
class JobStatus:
    """Snapshot of a job returned by status queries."""
    id: str
    state: str
    progress: int
    job: CrawlJob
    attempts_made: int
    result: Optional[CrawlJobResult] = None
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state,
            "progress": self.progress,
            "job": self.job.to_dict(),
            "attempts_made": self.attempts_made,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "logs": list(self.logs),
        }


class QueuedJob:
    """The handle a processor receives for one attempt of a job."""

    def __init__(self, record: JobRecord, store: JobStore):
        self._record = record
        self._store = store

    @property
    def id(self) -> str:
        return self._record.id

    @property
    def data(self) -> CrawlJob:
        return self._record.data

    @property
    def attempts_made(self) -> int:
        """Attempts finished before this one."""
        return self._record.attempts_made

    @property
    def progress(self) -> int:
        return self._record.progress

    async def update_progress(self, progress: Union[int, float]):
        """Record progress, clamped to 0-100."""
        self._record.progress = max(0, min(100, int(progress)))
        await self._store.save(self._record)

    async def log(self, message: str):
        self._record.add_log(message)
        await self._store.save(self._record)


class JobQueue:
    """Durable crawl job queue with a bounded worker pool."""

    def __init__(self, store: JobStore, settings: Optional[QueueSettings] = None,
                 on_result: Optional[ResultSink] = None):
        self.store = store
        self.settings = settings or QueueSettings()
        self.on_result = on_result
        self._processors: Dict[CrawlType, Processor] = {}
        self._workers: List[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._accepting = False
        self._closed = False

    @property
    def ready(self) -> bool:
        return self._accepting

    async def initialize(self):
        """Connect the backing store and start accepting jobs."""
        if self._closed:
            raise QueueNotReadyError("Job queue has been shut down")
        await self.store.connect()
        self._accepting = True
        logger.info(f"Job queue '{self.settings.name}' initialized")

    def register_processor(self, crawl_type: Union[CrawlType, str], processor: Processor):
        """Register the single processor for a crawl type.

        Raises:
            UnknownCrawlTypeError: crawl type is not supported
            ProcessorConflictError: a processor is already registered
        """
        crawl_type = CrawlType.parse(crawl_type)
        if crawl_type in self._processors:
            raise ProcessorConflictError(f"Processor already registered for crawl type: {crawl_type.value}")
        self._processors[crawl_type] = processor
        logger.info(f"Registered processor for crawl type: {crawl_type.value}")

    async def enqueue(self, job: Union[CrawlJob, Dict[str, Any]], priority: Optional[int] = None,
                      delay_ms: int = 0) -> str:
        """Add a job to the queue.

        Args:
            job: Job to run
            priority: Lower runs first; defaults to the configured priority
            delay_ms: Keep the job delayed this long before it can run

        Returns:
            The new job id

        Raises:
            QueueNotReadyError: queue not initialized or shut down
        """
        if not self._accepting:
            raise QueueNotReadyError("Job queue is not accepting jobs")

        if isinstance(job, dict):
            job = CrawlJob.from_dict(job)

        seq = await self.store.next_id()
        record = JobRecord(
            id=str(seq),
            data=job,
            state=JobState.WAITING,
            priority=self.settings.default_priority if priority is None else priority,
            seq=seq,
            created_at=datetime.now(),
        )
        if delay_ms > 0:
            record.state = JobState.DELAYED
            record.run_at = time.time() + delay_ms / 1000
        record.add_log(f"Enqueued with priority {record.priority}")

        await self.store.put(record)
        logger.info(f"Enqueued job {record.id} ({job.crawl_type.value}) for {job.full_name}")
        return record.id

    async def start(self):
        """Launch the worker pool."""
        if not self._accepting:
            raise QueueNotReadyError("Job queue must be initialized before starting workers")
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"crawl-worker-{index}")
            for index in range(self.settings.concurrency)
        ]
        logger.info(f"Started {len(self._workers)} crawl workers")

    async def status(self, job_id: str) -> Optional[JobStatus]:
        record = await self.store.get(job_id)
        if record is None:
            return None
        return JobStatus(
            id=record.id,
            state=record.state.value,
            progress=record.progress,
            job=record.data,
            attempts_made=record.attempts_made,
            result=CrawlJobResult.from_dict(record.result) if record.result else None,
            error=record.error,
            logs=list(record.logs),
        )

    async def stats(self) -> Dict[str, int]:
        counts = await self.store.counts()
        update_queue_depth(counts)
        return counts

    async def cleanup(self, older_than_ms: Optional[int] = None) -> int:
        """Delete completed and failed jobs that finished more than ``older_than_ms`` ago."""
        if older_than_ms is None:
            older_than_ms = self.settings.cleanup_age_ms
        removed = await self.store.purge(time.time() - older_than_ms / 1000)
        if removed:
            logger.info(f"Cleaned up {removed} finished jobs")
        return removed

    async def shutdown(self):
        """Stop accepting jobs, let in-flight jobs finish, then close the store."""
        if self._closed:
            return
        self._accepting = False
        self._closed = True
        self._stopping.set()

        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers = []

        await self.store.close()
        logger.info("Job queue shutdown complete")

    async def _worker(self, index: int):
        while not self._stopping.is_set():
            try:
                await self.store.promote_due()
                record = await self.store.claim()
            except Exception as e:
                logger.error(f"Worker {index} could not read the queue: {e}")
                record = None

            if record is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.settings.poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            try:
                await self._run(record)
            except Exception as e:
                logger.exception(f"Worker {index} failed to record job {record.id}: {e}")
                await self._abandon(record, e)

    async def _abandon(self, record: JobRecord, error: Exception):
        """Fail a job whose bookkeeping broke so it does not stay active."""
        message = f"Job bookkeeping failed: {str(error) or type(error).__name__}"
        result = CrawlJobResult.failed(record.id, record.data.library_id, message, duration_ms=0)
        try:
            await self._fail(record, result, 0.0)
        except Exception as e:
            logger.error(f"Job {record.id} left in state {record.state.value}: {e}")

    async def _run(self, record: JobRecord):
        """Run one attempt of a claimed job and record its outcome."""
        job = record.data
        processor = self._processors.get(job.crawl_type)
        if processor is None:
            error = f"No processor registered for crawl type: {job.crawl_type.value}"
            logger.error(f"Job {record.id} failed: {error}")
            await self._fail(record, CrawlJobResult.failed(record.id, job.library_id, error, duration_ms=0), 0.0)
            return

        record.add_log(f"Attempt {record.attempts_made + 1} started")
        await self.store.save(record)
        logger.info(f"Processing job {record.id} ({job.crawl_type.value}) for {job.full_name}")

        start_time = time.monotonic()
        try:
            result = await processor(QueuedJob(record, self.store))
        except Exception as e:
            duration = time.monotonic() - start_time
            error = str(e) or type(e).__name__
            logger.exception(f"Job {record.id} raised: {error}")
            result = CrawlJobResult.failed(record.id, job.library_id, error,
                                           duration_ms=int(duration * 1000), retryable=True)
        duration = time.monotonic() - start_time

        record.attempts_made += 1
        if result.status == JobOutcome.COMPLETED:
            await self._complete(record, result, duration)
        elif result.retryable and record.attempts_made < self.settings.max_attempts:
            await self._retry(record, result.error)
        else:
            await self._fail(record, result, duration)

    async def _retry(self, record: JobRecord, error: str):
        delay_ms = self.settings.backoff_ms * 2 ** (record.attempts_made - 1)
        record.state = JobState.DELAYED
        record.run_at = time.time() + delay_ms / 1000
        record.error = error
        record.add_log(f"Attempt {record.attempts_made} failed: {error}; retrying in {delay_ms}ms")
        await self.store.put(record)

        record_job_retry(record.data.crawl_type.value)
        logger.warning(
            f"Job {record.id} attempt {record.attempts_made}/{self.settings.max_attempts} failed: "
            f"{error}. Retrying in {delay_ms}ms"
        )

    async def _complete(self, record: JobRecord, result: CrawlJobResult, duration: float):
        record.state = JobState.COMPLETED
        record.finished_at = datetime.now()
        record.error = None
        record.result = result.to_dict()
        record.add_log(f"Completed: {result.pages_crawled} pages")
        await self.store.put(record)

        record_job_result(record.data.crawl_type.value, result.status.value, duration, result.pages_crawled)
        logger.info(f"Job {record.id} completed: {result.pages_crawled} pages in {result.duration_ms}ms")
        await self._emit(record.id, result)

    async def _fail(self, record: JobRecord, result: CrawlJobResult, duration: float):
        record.state = JobState.FAILED
        record.finished_at = datetime.now()
        record.error = result.error
        record.result = result.to_dict()
        record.add_log(f"Failed: {result.error}")
        await self.store.put(record)

        record_job_result(record.data.crawl_type.value, result.status.value, duration)
        logger.error(f"Job {record.id} failed after {record.attempts_made} attempt(s): {result.error}")
        await self._emit(record.id, result)

    async def _emit(self, job_id: str, result: CrawlJobResult):
        if self.on_result is None:
            return
        try:
            await self.on_result(job_id, result)
        except Exception as e:
            logger.error(f"Result handler failed for job {job_id}: {e}")
