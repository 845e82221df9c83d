"""Crawler engine configuration.

Settings come from three layers, lowest precedence first: built-in
defaults, an optional YAML file (``CRAWLER_CONFIG``), and environment
variables.
"""

import os
import logging
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "doccrawl/1.0 (+https://github.com/doccrawl/doccrawl)"


class RedisSettings(BaseModel):
    """Backing store for the job queue."""
    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    db: int = Field(default=2, description="Logical database reserved for the crawl queue")
    password: Optional[str] = Field(default=None, description="Redis password")


class QueueSettings(BaseModel):
    name: str = Field(default="crawler:jobs", description="Key prefix for queue data")
    concurrency: int = Field(default=3, ge=1, description="Jobs processed in parallel")
    max_attempts: int = Field(default=3, ge=1, description="Attempts before a job fails terminally")
    backoff_ms: int = Field(default=2000, ge=0, description="First retry delay, doubled per attempt")
    default_priority: int = Field(default=10, description="Lower runs first")
    poll_interval: float = Field(default=0.5, gt=0, description="Idle worker poll interval in seconds")
    cleanup_age_ms: int = Field(default=86_400_000, description="Terminal jobs older than this are purged")


class GitHubSettings(BaseModel):
    token: Optional[str] = Field(default=None, description="Repository API access token")
    api_url: str = Field(default="https://api.github.com", description="Repository API base URL")
    max_files: int = Field(default=50, ge=1, description="File cap per directory search")
    manifest_path: str = Field(default="package.json", description="Project manifest to decode")
    request_timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")


class ScraperSettings(BaseModel):
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    max_pages: int = Field(default=200, ge=1)
    max_depth: int = Field(default=5, ge=0)
    request_delay_ms: int = Field(default=500, ge=0, description="Fixed delay before every request")
    request_timeout: float = Field(default=30.0, gt=0)
    max_links_per_page: int = Field(default=20, ge=1)
    validate_candidates: bool = Field(default=False, description="Probe guessed docs URLs before use")


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO")
    use_json: bool = Field(default=False)
    log_file: Optional[str] = Field(default=None)


class CrawlerSettings(BaseModel):
    """Top-level settings for the crawler worker."""
    redis: RedisSettings = Field(default_factory=RedisSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    github: GitHubSettings = Field(default_factory=GitHubSettings)
    scraper: ScraperSettings = Field(default_factory=ScraperSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_yaml(cls, path: str) -> 'CrawlerSettings':
        """Create settings from a YAML file."""
        return cls.model_validate(_load_yaml(path))

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'CrawlerSettings':
        """Create settings from environment variables, layered over ``CRAWLER_CONFIG``."""
        env = os.environ if environ is None else environ

        data: Dict[str, Any] = {}
        config_path = env.get('CRAWLER_CONFIG')
        if config_path:
            data = _load_yaml(config_path)

        overrides = {
            'redis': {
                'host': env.get('REDIS_HOST'),
                'port': env.get('REDIS_PORT'),
                'db': env.get('REDIS_DB'),
                'password': env.get('REDIS_PASSWORD'),
            },
            'queue': {
                'name': env.get('CRAWLER_QUEUE_NAME'),
                'concurrency': env.get('CRAWLER_CONCURRENCY'),
            },
            'github': {
                'token': env.get('GITHUB_TOKEN'),
                'api_url': env.get('GITHUB_API_URL'),
            },
            'scraper': {
                'user_agent': env.get('CRAWLER_USER_AGENT'),
                'request_delay_ms': env.get('CRAWLER_REQUEST_DELAY_MS'),
                'max_pages': env.get('CRAWLER_MAX_PAGES'),
                'max_depth': env.get('CRAWLER_MAX_DEPTH'),
            },
            'logging': {
                'level': env.get('CRAWLER_LOG_LEVEL'),
                'use_json': env.get('CRAWLER_LOG_JSON'),
                'log_file': env.get('CRAWLER_LOG_FILE'),
            },
        }
        # Unset variables must not shadow file values
        overrides = {
            section: {k: v for k, v in values.items() if v is not None}
            for section, values in overrides.items()
        }

        return cls.model_validate(deep_merge(data, overrides))


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _load_yaml(path: str) -> Dict[str, Any]:
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Crawler config must be a mapping: {path}")
    logger.info(f"Loaded crawler config from {path}")
    return data
