"""Pipelines package for doccrawl.

Provides repository crawling, documentation site scraping, and markup and
code example parsing.
"""

from .errors import (
    CrawlError,
    ValidationError,
    FormatError,
    UnknownCrawlTypeError,
    NotFoundError,
    TransientError,
    is_retryable
)
from .models import (
    CrawlType,
    CrawlJob,
    CrawlJobResult,
    JobOutcome,
    ScrapedPage,
    RepoFile,
    ExtractedContent,
    ParsedMarkup,
    ExtractedCodeExample,
    CodeAnalysis
)
from .github_crawler import GitHubCrawler, GitHubCrawlProcessor
from .docs_scraper import DocsScraper
from .markdown_parser import MarkdownParser, slugify
from .code_extractor import CodeExtractor

__all__ = [
    # Errors
    'CrawlError',
    'ValidationError',
    'FormatError',
    'UnknownCrawlTypeError',
    'NotFoundError',
    'TransientError',
    'is_retryable',

    # Models
    'CrawlType',
    'CrawlJob',
    'CrawlJobResult',
    'JobOutcome',
    'ScrapedPage',
    'RepoFile',
    'ExtractedContent',
    'ParsedMarkup',
    'ExtractedCodeExample',
    'CodeAnalysis',

    # Crawlers
    'GitHubCrawler',
    'GitHubCrawlProcessor',
    'DocsScraper',

    # Parsers
    'MarkdownParser',
    'slugify',
    'CodeExtractor'
]
