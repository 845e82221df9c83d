"""Prometheus metrics for the crawler engine."""

import logging
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

# Dedicated registry so the worker never mixes with default process collectors
crawler_registry = CollectorRegistry()

jobs_total = Counter(
    'crawler_jobs_total',
    'Crawl jobs that reached a terminal state',
    ['crawl_type', 'status'],
    registry=crawler_registry
)

job_retries_total = Counter(
    'crawler_job_retries_total',
    'Failed attempts that were scheduled for retry',
    ['crawl_type'],
    registry=crawler_registry
)

job_duration = Histogram(
    'crawler_job_duration_seconds',
    'Job attempt duration in seconds',
    ['crawl_type'],
    buckets=[0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
    registry=crawler_registry
)

pages_crawled_total = Counter(
    'crawler_pages_crawled_total',
    'Pages or files crawled by completed jobs',
    ['crawl_type'],
    registry=crawler_registry
)

http_fetches_total = Counter(
    'crawler_http_fetches_total',
    'Outbound HTTP fetches by target and status class',
    ['target', 'status_class'],
    registry=crawler_registry
)

queue_depth = Gauge(
    'crawler_queue_jobs',
    'Jobs in the queue by state',
    ['state'],
    registry=crawler_registry
)


def record_job_result(crawl_type: str, status: str, duration_seconds: float, pages: int = 0):
    """Record a terminal job outcome."""
    jobs_total.labels(crawl_type=crawl_type, status=status).inc()
    job_duration.labels(crawl_type=crawl_type).observe(duration_seconds)
    if pages:
        pages_crawled_total.labels(crawl_type=crawl_type).inc(pages)


def record_job_retry(crawl_type: str):
    job_retries_total.labels(crawl_type=crawl_type).inc()


def record_fetch(target: str, status_code: Optional[int]):
    """Record an outbound fetch. ``status_code`` is None for network errors."""
    status_class = f"{status_code // 100}xx" if status_code else "error"
    http_fetches_total.labels(target=target, status_class=status_class).inc()


def update_queue_depth(stats: Dict[str, int]):
    for state, count in stats.items():
        queue_depth.labels(state=state).set(count)


def get_metrics_summary() -> str:
    """Render the registry in the Prometheus text exposition format."""
    return generate_latest(crawler_registry).decode('utf-8')
