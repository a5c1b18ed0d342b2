"""
Domain models for the content harvester.
These are the core business entities, independent of database/API representation.
"""
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class SourceKind(str, Enum):
    """Which format extractor handles a source."""
    HTML = "html"
    FEED = "feed"
    REDDIT = "reddit"
    NEWSLETTER = "newsletter"


class FailureKind(str, Enum):
    """Why a job produced no content or no topics."""
    INVALID_LOCATOR = "invalid_locator"  # Malformed URL, fatal for that job only
    RATE_LIMITED = "rate_limited"  # Host quota exceeded, retried on a future run
    NETWORK_FAILURE = "network_failure"  # Timeout, connection or HTTP error
    PARSE_FAILURE = "parse_failure"  # Extractor could not find required fields
    QUALITY_REJECTED = "quality_rejected"  # Validator gate failed
    GENERATION_FAILURE = "generation_failure"  # Topic generation call failed or was empty


# =============================================================================
# Sources
# =============================================================================

REDDIT_HOSTS = ("reddit.com", "www.reddit.com")
FEED_PATH_SEGMENTS = {"feed", "feeds", "rss"}
FEED_SUFFIXES = (".rss", ".xml")
FEED_QUERY_PATTERN = re.compile(r"[?&]feed=(rss|atom)")


def is_reddit_url(url: str) -> bool:
    """Reddit host, including subdomains such as old.reddit.com."""
    try:
        hostname = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    return hostname in REDDIT_HOSTS or hostname.endswith(".reddit.com")


def is_feed_url(url: str) -> bool:
    """URL shape suggests an RSS or Atom feed."""
    lowered = url.lower()
    try:
        parsed = urlparse(lowered)
    except ValueError:
        return False
    path = parsed.path.rstrip("/")
    # Whole segments only, so /feedback or /rsvp stay html
    if any(segment.split(".")[0] in FEED_PATH_SEGMENTS for segment in path.split("/")):
        return True
    if path.endswith(FEED_SUFFIXES):
        return True
    return bool(FEED_QUERY_PATTERN.search(lowered))


class RawEmail(BaseModel):
    """A newsletter email that was already fetched from the mailbox."""
    model_config = ConfigDict(frozen=True)

    subject: str
    sender: str
    html_body: str
    date: Optional[datetime] = None
    message_id: Optional[str] = None

    @property
    def locator(self) -> str:
        if self.message_id:
            return f"email:{self.message_id}"
        return f"email:{self.sender}/{self.subject}"


class SourceDescriptor(BaseModel):
    """One scrape job: what to fetch and which extractor handles it."""
    model_config = ConfigDict(frozen=True)

    locator: str
    kind: SourceKind
    email: Optional[RawEmail] = None
    source_id: Optional[str] = None  # Source Registry id, when known

    @classmethod
    def from_url(cls, url: str, source_id: Optional[str] = None) -> "SourceDescriptor":
        """Dispatch by URL shape: Reddit host, then feed markers, else HTML."""
        url = url.strip()
        if is_reddit_url(url):
            kind = SourceKind.REDDIT
        elif is_feed_url(url):
            kind = SourceKind.FEED
        else:
            kind = SourceKind.HTML
        return cls(locator=url, kind=kind, source_id=source_id)

    @classmethod
    def from_email(cls, email: RawEmail, source_id: Optional[str] = None) -> "SourceDescriptor":
        return cls(
            locator=email.locator,
            kind=SourceKind.NEWSLETTER,
            email=email,
            source_id=source_id,
        )

    @property
    def cache_key(self) -> str:
        """Identifier used to scope content hashes and attempt timestamps."""
        return self.source_id or self.locator


# =============================================================================
# Content
# =============================================================================

class ContentMetadata(BaseModel):
    """Optional page/feed/email metadata carried alongside the text."""
    model_config = ConfigDict(frozen=True)

    og_title: Optional[str] = None
    og_description: Optional[str] = None
    og_image: Optional[str] = None
    meta_description: Optional[str] = None
    feed_title: Optional[str] = None
    feed_url: Optional[str] = None
    subreddit: Optional[str] = None
    email_links: list[str] = Field(default_factory=list)


class NormalizedContent(BaseModel):
    """
    Cleaned, validated text from one source.

    Produced exactly once per successful fetch+extract+validate and
    never mutated afterwards.
    """
    model_config = ConfigDict(frozen=True)

    locator: str
    kind: SourceKind
    title: Optional[str] = None
    body: str
    excerpt: str
    author: Optional[str] = None
    published_at: Optional[datetime] = None
    metadata: ContentMetadata = Field(default_factory=ContentMetadata)
    fetched_at: datetime = Field(default_factory=utc_now)
    length: int


class Content(BaseModel):
    """Successful outcome of a scrape job."""
    model_config = ConfigDict(frozen=True)

    status: Literal["content"] = "content"
    content: NormalizedContent

    @property
    def locator(self) -> str:
        return self.content.locator


class Failure(BaseModel):
    """Failed outcome of a scrape job (or of topic generation), kept as data."""
    model_config = ConfigDict(frozen=True)

    status: Literal["failure"] = "failure"
    locator: str
    kind: FailureKind
    reason: str
    timestamp: datetime = Field(default_factory=utc_now)
    status_code: Optional[int] = None

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.locator}: {self.reason}"


FetchOutcome = Annotated[Union[Content, Failure], Field(discriminator="status")]


# =============================================================================
# Topics
# =============================================================================

class ExtractedTopic(BaseModel):
    """A candidate trending topic returned by the generation backend."""
    title: str
    description: str
    category: str
    trending_score: int = Field(ge=0, le=100)
    relevance: str


class StoredTopic(BaseModel):
    """A topic previously accepted for a tenant, as read back from the store."""
    title: str
    discovered_at: datetime
    source_id: Optional[str] = None
    expires_at: Optional[datetime] = None


# =============================================================================
# Rate limiting and progress
# =============================================================================

class RateLimitResult(BaseModel):
    """Decision returned by the rate limiter for one request."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime


class BatchProgress(BaseModel):
    """Progress of a batch scrape as (completed, total)."""
    completed: int
    total: int
