"""Error taxonomy for the crawl pipelines.

Crawlers raise these; processors convert them into failed job results at
their ``process_job`` boundary.
"""


class CrawlError(Exception):
    """Base class for crawl failures."""
    pass


class ValidationError(CrawlError):
    """Input is malformed. Fatal to the job and never worth retrying."""
    pass


class FormatError(ValidationError):
    """Library identifier is not in ``owner/project`` form."""
    pass


class UnknownCrawlTypeError(ValidationError, ValueError):
    """Crawl type is not one of the supported ``CrawlType`` values."""
    pass


class NotFoundError(CrawlError):
    """A remote resource does not exist."""
    pass


class TransientError(CrawlError):
    """Timeouts, server errors and rate limiting. The queue retries these."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


def is_retryable(error: BaseException) -> bool:
    """Check whether a failure should send the job back through the queue."""
    return isinstance(error, TransientError)
