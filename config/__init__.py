"""Configuration module for the crawler engine.

Provides settings for the queue backend, crawlers and logging.
"""

from .settings import (
    CrawlerSettings,
    RedisSettings,
    QueueSettings,
    GitHubSettings,
    ScraperSettings,
    LoggingSettings,
    DEFAULT_USER_AGENT,
    deep_merge
)

__all__ = [
    'CrawlerSettings',
    'RedisSettings',
    'QueueSettings',
    'GitHubSettings',
    'ScraperSettings',
    'LoggingSettings',
    'DEFAULT_USER_AGENT',
    'deep_merge'
]
