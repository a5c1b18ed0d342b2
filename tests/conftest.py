"""
Shared fixtures.

Every HTTP call goes through httpx.MockTransport and delays default to
zero, so the suite runs without network access and without sleeping.
Pacing tests swap asyncio.sleep for a recorder instead.
"""

import asyncio

import httpx
import pytest

from harvester.services.data_ingestion.aggregator import SourceAggregator
from harvester.services.data_ingestion.fetcher import SourceFetcher
from harvester.services.data_ingestion.newsletter import NewsletterExtractor
from harvester.services.data_ingestion.normalizer import ContentNormalizer
from harvester.services.data_ingestion.rate_limiter import InMemoryQuotaStore, RateLimiter
from harvester.services.data_ingestion.reddit import RedditExtractor
from harvester.services.data_ingestion.rss import FeedExtractor
from harvester.services.data_ingestion.webpage import WebPageExtractor
from harvester.services.topic_extraction import GenerationError, GenerationService


ARTICLE_PARAGRAPHS = [
    "Independent developers are adopting AI coding assistants at a remarkable pace this year.",
    "Teams report that routine refactoring work now takes a fraction of the time it used to.",
    "Critics warn that generated code still needs careful review before it reaches production.",
]


def render_article(title: str, paragraphs: list[str] = ARTICLE_PARAGRAPHS) -> str:
    body = "\n".join(f"<p>{paragraph}</p>" for paragraph in paragraphs)
    return f"""<html>
<head><title>{title} | Example News</title></head>
<body>
  <nav><a href="/">Home</a> <a href="/about">About us</a></nav>
  <article>
    <h1>{title}</h1>
    {body}
  </article>
  <footer>Copyright Example News</footer>
</body>
</html>"""


class FakeGenerator(GenerationService):
    """Generation backend returning canned responses and recording prompts."""

    def __init__(self, response: str = "[]", error: Exception = None):
        self.response = response
        self.error = error
        self.prompts: list[str] = []

    async def generate(self, prompt, system_prompt=None, max_tokens=2000):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def normalizer():
    return ContentNormalizer()


@pytest.fixture
def article_page():
    """Factory for a well-formed article page."""
    return render_article


@pytest.fixture
def fake_generator():
    """Factory for FakeGenerator instances."""
    def factory(response: str = "[]", error: Exception = None) -> FakeGenerator:
        return FakeGenerator(response, error)
    return factory


@pytest.fixture
def failing_generator():
    return FakeGenerator(error=GenerationError("backend unavailable"))


@pytest.fixture
def recorded_sleeps(monkeypatch):
    """Replace asyncio.sleep with a recorder that returns at once."""
    sleeps: list[float] = []

    async def fake_sleep(delay, result=None):
        sleeps.append(delay)
        return result

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return sleeps


@pytest.fixture
def make_fetcher():
    """Factory for a zero-delay fetcher over a mock transport."""
    def factory(
        handler,
        timeout_seconds: float = 30.0,
        delay_range: tuple[float, float] = (0.0, 0.0),
    ) -> SourceFetcher:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return SourceFetcher(
            client=client,
            timeout_seconds=timeout_seconds,
            delay_range=delay_range,
        )
    return factory


@pytest.fixture
def make_aggregator(make_fetcher, normalizer):
    """Factory for a fully wired, zero-delay aggregator."""
    def factory(handler, limit: int = 10, concurrency: int = 3) -> SourceAggregator:
        fetcher = make_fetcher(handler)
        extractors = [
            WebPageExtractor(fetcher, normalizer),
            FeedExtractor(fetcher, normalizer),
            RedditExtractor(fetcher, normalizer, post_spacing_seconds=0),
            NewsletterExtractor(normalizer),
        ]
        return SourceAggregator(
            extractors=extractors,
            rate_limiter=RateLimiter(InMemoryQuotaStore(), limit=limit, window_seconds=60),
            concurrency=concurrency,
            batch_delay_range=(0.0, 0.0),
        )
    return factory
