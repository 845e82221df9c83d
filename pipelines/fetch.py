"""HTTP helpers shared by the crawlers.

Maps transport failures and response statuses onto the crawl error
taxonomy so callers only deal with ``NotFoundError``/``TransientError``.
"""

import asyncio
import logging
from typing import Dict, Mapping, Optional

import aiohttp

from observability.metrics import record_fetch
from .errors import CrawlError, NotFoundError, TransientError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
NOT_FOUND_STATUS_CODES = {404, 410}


def create_session(user_agent: str, timeout: float = 30.0,
                   headers: Optional[Dict[str, str]] = None,
                   max_connections: int = 10) -> aiohttp.ClientSession:
    """Create a client session with the crawler's identity and timeouts."""
    connector = aiohttp.TCPConnector(limit=max_connections)
    session_headers = {'User-Agent': user_agent}
    if headers:
        session_headers.update(headers)

    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout),
        headers=session_headers
    )


def is_rate_limited(status: int, headers: Mapping[str, str]) -> bool:
    """403/429 with an exhausted rate-limit budget."""
    if status == 429:
        return True
    return status == 403 and headers.get('X-RateLimit-Remaining') == '0'


def error_for_status(status: int, url: str, headers: Mapping[str, str] = None) -> Optional[CrawlError]:
    """Return the error a response status stands for, or None for 2xx."""
    headers = headers or {}
    if 200 <= status < 300:
        return None
    if status in NOT_FOUND_STATUS_CODES:
        return NotFoundError(f"Not found: {url}")
    if status in RETRYABLE_STATUS_CODES or status >= 500 or is_rate_limited(status, headers):
        return TransientError(f"HTTP {status} for {url}", status_code=status)
    return CrawlError(f"HTTP {status} for {url}")


def is_transient_exception(exception: BaseException) -> bool:
    """Timeouts and connection-level failures are worth retrying."""
    if isinstance(exception, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return True
    return isinstance(exception, (aiohttp.ClientConnectionError,
                                  aiohttp.ClientPayloadError))


async def _get(session: aiohttp.ClientSession, url: str, target: str,
               params: Optional[Dict[str, str]], as_json: bool):
    try:
        async with session.get(url, params=params) as response:
            record_fetch(target, response.status)
            error = error_for_status(response.status, url, response.headers)
            if error:
                raise error
            if as_json:
                return await response.json(content_type=None)
            return await response.text(errors='replace')
    except CrawlError:
        raise
    except Exception as e:
        if is_transient_exception(e):
            record_fetch(target, None)
            raise TransientError(f"Request to {url} failed: {str(e) or type(e).__name__}") from e
        if isinstance(e, (aiohttp.ClientError, ValueError)):
            # Redirect loops, invalid URLs and undecodable bodies
            raise CrawlError(f"Request to {url} failed: {str(e) or type(e).__name__}") from e
        raise


async def get_json(session: aiohttp.ClientSession, url: str, target: str,
                   params: Optional[Dict[str, str]] = None):
    """GET a JSON document, raising crawl errors for failures.

    Args:
        session: Client session to use
        url: Absolute URL
        target: Metrics label for the remote service
        params: Optional query parameters

    Raises:
        NotFoundError: 404/410
        TransientError: timeouts, connection failures, 5xx, rate limiting
        CrawlError: any other non-2xx status
    """
    return await _get(session, url, target, params, as_json=True)


async def get_text(session: aiohttp.ClientSession, url: str, target: str) -> str:
    """GET a response body as text. Raises the same errors as ``get_json``."""
    return await _get(session, url, target, None, as_json=False)
