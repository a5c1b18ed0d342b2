"""
Content normalization and quality validation.

Turns extracted HTML into plain text with paragraph breaks and decides
whether the result is worth sending to topic extraction.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Union

import structlog
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from harvester.models.domain import (
    Content,
    ContentMetadata,
    Failure,
    FailureKind,
    NormalizedContent,
    SourceKind,
    utc_now,
)

MIN_CONTENT_LENGTH = 100
MAX_CONTENT_LENGTH = 50_000
MIN_WORD_COUNT = 10
MIN_ALPHA_RATIO = 0.3
DEFAULT_EXCERPT_LENGTH = 200

BLOCK_TAGS = [
    "address", "article", "aside", "blockquote", "dd", "div", "dl", "dt",
    "figcaption", "figure", "footer", "form", "h1", "h2", "h3", "h4", "h5",
    "h6", "header", "hr", "li", "main", "nav", "ol", "p", "pre", "section",
    "table", "td", "th", "tr", "ul",
]
NON_TEXT_TAGS = ["script", "style", "noscript", "template", "svg", "iframe"]

WHITESPACE_RUN = re.compile(r"\s+")
INLINE_WHITESPACE = re.compile(r"[ \t\r\f\v\xa0]+")
EXCESS_NEWLINES = re.compile(r"\n{3,}")


@dataclass
class ValidationResult:
    """Outcome of the quality gate."""
    valid: bool
    reason: Optional[str] = None


class ContentNormalizer:
    """
    Cleans extracted markup and applies the quality gate.

    Quality rules:
    - 100 to 50,000 characters
    - at least 10 whitespace-delimited words
    - at least 30% letters among non-whitespace characters
    """

    def __init__(self, excerpt_length: int = DEFAULT_EXCERPT_LENGTH, logger=None):
        self.excerpt_length = excerpt_length
        self.logger = logger or structlog.get_logger(__name__)

    def html_to_text(self, markup: Union[str, Tag]) -> str:
        """
        Collapse HTML into clean text.

        Block-level elements become paragraph breaks, runs of inline
        whitespace become one space, and three or more newlines become two.
        The caller's tree is not modified.
        """
        if markup is None:
            return ""

        soup = BeautifulSoup(str(markup), "html.parser")

        for tag in soup(NON_TEXT_TAGS):
            tag.decompose()
        for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()

        # Source formatting whitespace carries no meaning outside <pre>
        for string in list(soup.find_all(string=True)):
            if type(string) is NavigableString and string.find_parent("pre") is None:
                string.replace_with(WHITESPACE_RUN.sub(" ", string))

        for br in soup.find_all("br"):
            br.replace_with("\n")

        for tag in soup.find_all(BLOCK_TAGS):
            tag.insert_before("\n\n")
            tag.insert_after("\n\n")

        return self.clean_text(soup.get_text())

    def clean_text(self, text: str) -> str:
        """Normalize whitespace in already-plain text."""
        if not text:
            return ""

        text = text.replace("\r\n", "\n").replace("\r", "\n")
        text = INLINE_WHITESPACE.sub(" ", text)
        text = "\n".join(line.strip() for line in text.split("\n"))
        text = EXCESS_NEWLINES.sub("\n\n", text)
        return text.strip()

    def validate(self, text: str) -> ValidationResult:
        """Apply the quality gate. Never raises."""
        length = len(text)
        if length < MIN_CONTENT_LENGTH:
            return ValidationResult(
                False,
                f"Content too short: {length} characters (minimum {MIN_CONTENT_LENGTH})",
            )
        if length > MAX_CONTENT_LENGTH:
            return ValidationResult(
                False,
                f"Content too long: {length} characters (maximum {MAX_CONTENT_LENGTH:,})",
            )

        word_count = len(text.split())
        if word_count < MIN_WORD_COUNT:
            return ValidationResult(
                False,
                f"Too few words: {word_count} words (minimum {MIN_WORD_COUNT})",
            )

        if alphabetic_ratio(text) < MIN_ALPHA_RATIO:
            return ValidationResult(
                False,
                "Content contains too many special characters or numbers",
            )

        return ValidationResult(True)

    def make_excerpt(self, text: str, length: Optional[int] = None) -> str:
        """First ``length`` characters, with an ellipsis when truncated."""
        length = length or self.excerpt_length
        flat = WHITESPACE_RUN.sub(" ", text).strip()
        if len(flat) <= length:
            return flat
        return flat[:length].rstrip() + "..."

    def build_content(
        self,
        *,
        locator: str,
        kind: SourceKind,
        body: str,
        title: Optional[str] = None,
        excerpt: Optional[str] = None,
        author: Optional[str] = None,
        published_at: Optional[datetime] = None,
        metadata: Optional[ContentMetadata] = None,
    ) -> Union[Content, Failure]:
        """
        Validate ``body`` and wrap it as a Content outcome.

        Returns:
            Content, or Failure(QUALITY_REJECTED) citing the rule that failed
        """
        body = self.clean_text(body)
        result = self.validate(body)

        if not result.valid:
            self.logger.info(
                "Content rejected by quality gate",
                locator=locator,
                reason=result.reason,
            )
            return Failure(
                locator=locator,
                kind=FailureKind.QUALITY_REJECTED,
                reason=f"Content validation failed: {result.reason}",
            )

        content = NormalizedContent(
            locator=locator,
            kind=kind,
            title=clean_inline(title) or None,
            body=body,
            excerpt=excerpt or self.make_excerpt(body),
            author=clean_inline(author) or None,
            published_at=published_at,
            metadata=metadata or ContentMetadata(),
            fetched_at=utc_now(),
            length=len(body),
        )
        return Content(content=content)


def clean_inline(value: Optional[str]) -> str:
    """Single-line version of a short string such as a title."""
    if not value:
        return ""
    return WHITESPACE_RUN.sub(" ", value).strip()


def alphabetic_ratio(text: str) -> float:
    """Letters divided by non-whitespace characters (0.0 for empty input)."""
    visible = [c for c in text if not c.isspace()]
    if not visible:
        return 0.0
    letters = sum(1 for c in visible if c.isalpha())
    return letters / len(visible)


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse ISO-8601 or RFC 822 dates. Naive results are taken as UTC.

    Returns None for anything unparseable.
    """
    if not value or not isinstance(value, str):
        return None
    value = value.strip()

    parsed = None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        pass

    if parsed is None:
        try:
            parsed = parsedate_to_datetime(value)
        except (ValueError, TypeError, IndexError):
            pass

    if parsed is None:
        try:
            # Try without timezone or fractional seconds
            parsed = datetime.fromisoformat(value[:19])
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
