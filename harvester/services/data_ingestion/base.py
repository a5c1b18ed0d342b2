"""
Base classes and data models for content scraping.
"""

from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

import structlog

from harvester.models.domain import (
    Content,
    Failure,
    FailureKind,
    FetchOutcome,
    SourceDescriptor,
    SourceKind,
)

if TYPE_CHECKING:
    from harvester.services.data_ingestion.fetcher import SourceFetcher
    from harvester.services.data_ingestion.normalizer import ContentNormalizer


@dataclass
class RawResponse:
    """Body and headers of a successful HTTP fetch, before extraction."""
    url: str
    final_url: str
    status_code: int
    text: str
    content_type: str = ""
    fetched_at: Optional[datetime] = None


@dataclass
class FeedItem:
    """
    One accepted RSS item or Atom entry.

    Intermediate format between feed XML and the aggregated content.
    """
    title: str
    link: str
    content: str = ""
    author: Optional[str] = None
    published_at: Optional[datetime] = None
    categories: list[str] = field(default_factory=list)


@dataclass
class ParsedFeed:
    """Feed-level fields plus the items that survived validation."""
    format: str  # "rss" or "atom"
    title: Optional[str] = None
    link: Optional[str] = None
    description: Optional[str] = None
    items: list[FeedItem] = field(default_factory=list)


@dataclass
class BatchSummary:
    """Counts for one batch of scrape outcomes."""
    total: int
    succeeded: int
    failures: dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @classmethod
    def from_outcomes(
        cls,
        outcomes: list[FetchOutcome],
        duration_seconds: float = 0.0,
    ) -> "BatchSummary":
        failures = Counter(
            outcome.kind.value for outcome in outcomes if isinstance(outcome, Failure)
        )
        return cls(
            total=len(outcomes),
            succeeded=sum(1 for outcome in outcomes if isinstance(outcome, Content)),
            failures=dict(failures),
            duration_seconds=duration_seconds,
        )

    @property
    def success(self) -> bool:
        return not self.failures

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        failed = ", ".join(f"{k}={v}" for k, v in sorted(self.failures.items())) or "none"
        return (
            f"{status} scraped={self.succeeded}/{self.total}, "
            f"failures: {failed}, time={self.duration_seconds:.1f}s"
        )


class BaseExtractor(ABC):
    """
    Abstract base class for format extractors.

    Each extractor handles:
    - Fetching its input (except newsletters, which arrive pre-fetched)
    - Parsing the format-specific structure
    - Producing validated NormalizedContent through the normalizer

    ``extract`` never raises: every problem comes back as a Failure.
    """

    kind: SourceKind

    def __init__(
        self,
        fetcher: Optional["SourceFetcher"],
        normalizer: "ContentNormalizer",
        logger=None,
    ):
        self.fetcher = fetcher
        self.normalizer = normalizer
        self.logger = logger or structlog.get_logger(self.__class__.__module__)

    @abstractmethod
    async def extract(self, descriptor: SourceDescriptor) -> FetchOutcome:
        """
        Fetch and extract one source.

        Args:
            descriptor: The job to run

        Returns:
            Content on success, Failure otherwise
        """
        pass

    def parse_failure(self, locator: str, reason: str) -> Failure:
        """Log and build a PARSE_FAILURE outcome."""
        self.logger.warning("Extraction failed", locator=locator, reason=reason)
        return Failure(locator=locator, kind=FailureKind.PARSE_FAILURE, reason=reason)
