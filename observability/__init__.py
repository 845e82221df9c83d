"""Observability package for the crawler engine."""

from .logging import (
    setup_logging,
    get_job_logger,
    JobLogger
)
from .metrics import (
    record_job_result,
    record_job_retry,
    record_fetch,
    update_queue_depth,
    get_metrics_summary,
    crawler_registry
)

__all__ = [
    'setup_logging',
    'get_job_logger',
    'JobLogger',
    'record_job_result',
    'record_job_retry',
    'record_fetch',
    'update_queue_depth',
    'get_metrics_summary',
    'crawler_registry'
]
