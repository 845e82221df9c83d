"""Data model shared by the crawl pipelines and the job queue.

Everything here is a plain dataclass with ``to_dict``/``from_dict`` so it can
be stored as JSON in the queue backend and handed to the result sink.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import UnknownCrawlTypeError


class CrawlType(str, Enum):
    """Supported crawl types. Each maps to exactly one processor."""
    REPO = "repo"
    DOCS_SITE = "docs-site"
    FULL = "full"

    @classmethod
    def parse(cls, value) -> 'CrawlType':
        """Coerce a string (or CrawlType) into a CrawlType."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise UnknownCrawlTypeError(f"Unknown crawl type: {value!r} (expected one of: {valid})")


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class PageType(str, Enum):
    GUIDE = "guide"
    API = "api"
    EXAMPLE = "example"
    OTHER = "other"


class Difficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


@dataclass(frozen=True)
class CrawlJob:
    """One unit of crawl work describing a library to extract content from."""
    library_id: str
    library_name: str
    full_name: str  # owner/project
    version: str
    repository_url: str
    crawl_type: CrawlType
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Reject unknown crawl types at construction time
        object.__setattr__(self, "crawl_type", CrawlType.parse(self.crawl_type))
        if self.metadata is None:
            object.__setattr__(self, "metadata", {})

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["crawl_type"] = self.crawl_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlJob':
        return cls(
            library_id=data["library_id"],
            library_name=data["library_name"],
            full_name=data["full_name"],
            version=data.get("version", ""),
            repository_url=data.get("repository_url", ""),
            crawl_type=data["crawl_type"],
            metadata=data.get("metadata") or {},
        )


@dataclass
class CrawlJobResult:
    """Outcome of one job attempt.

    ``payload`` carries the crawler-specific extracted content for the
    result sink and is never serialized into the queue backend.
    """
    job_id: str
    library_id: str
    status: JobOutcome
    pages_crawled: int = 0
    pages_indexed: int = 0
    error: Optional[str] = None
    duration_ms: int = 0
    timestamp: datetime = None
    retryable: bool = False
    payload: Any = None

    def __post_init__(self):
        self.status = JobOutcome(self.status)
        if self.timestamp is None:
            self.timestamp = datetime.utcnow()
        if self.status == JobOutcome.FAILED and not self.error:
            self.error = "Unknown error"

    @classmethod
    def completed(cls, job_id: str, library_id: str, pages: int, duration_ms: int,
                  payload: Any = None) -> 'CrawlJobResult':
        return cls(
            job_id=job_id,
            library_id=library_id,
            status=JobOutcome.COMPLETED,
            pages_crawled=pages,
            pages_indexed=pages,
            duration_ms=duration_ms,
            payload=payload,
        )

    @classmethod
    def failed(cls, job_id: str, library_id: str, error: str, duration_ms: int,
               retryable: bool = False) -> 'CrawlJobResult':
        return cls(
            job_id=job_id,
            library_id=library_id,
            status=JobOutcome.FAILED,
            error=error,
            duration_ms=duration_ms,
            retryable=retryable,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization (payload excluded)."""
        return {
            "job_id": self.job_id,
            "library_id": self.library_id,
            "status": self.status.value,
            "pages_crawled": self.pages_crawled,
            "pages_indexed": self.pages_indexed,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
            "retryable": self.retryable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlJobResult':
        data = dict(data)
        if data.get("timestamp"):
            data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        return cls(**data)


@dataclass
class ScrapedPage:
    url: str
    title: str
    content: str
    type: PageType
    topics: List[str]
    depth: int

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass
class RepoFile:
    path: str
    kind: str = "file"  # 'file' or 'dir'
    content: Optional[str] = None
    url: Optional[str] = None


@dataclass
class ExtractedContent:
    """Everything pulled out of one repository crawl."""
    files: List[RepoFile] = field(default_factory=list)
    readme: Optional[str] = None
    manifest: Optional[Dict[str, Any]] = None
    example_count: int = 0

    @property
    def pages_crawled(self) -> int:
        return len(self.files) + (1 if self.readme else 0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Heading:
    level: int
    text: str
    slug: str


@dataclass
class CodeBlock:
    language: str
    code: str
    meta: Optional[str] = None
    context: str = ""


@dataclass
class ParsedMarkup:
    content: str
    title: Optional[str] = None
    description: Optional[str] = None
    headings: List[Heading] = field(default_factory=list)
    code_blocks: List[CodeBlock] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)
    frontmatter: Optional[Dict[str, Any]] = None


@dataclass
class ExtractedCodeExample:
    language: str
    code: str
    description: str
    topics: List[str]
    context: str
    difficulty: Difficulty

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["difficulty"] = self.difficulty.value
        return data


@dataclass
class CodeAnalysis:
    language: str
    functions: List[str]
    classes: List[str]
    imports: List[str]
    complexity: Complexity
