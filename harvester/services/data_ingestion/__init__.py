"""
Data Ingestion Services for the content harvester.

This module provides the scraping side of the pipeline:
- Web pages, RSS/Atom feeds, Reddit and newsletter emails
- Per-host rate limiting and bounded-timeout fetching
- Text normalization and the quality gate
- Batch orchestration under bounded concurrency
"""

from harvester.services.data_ingestion.base import (
    BaseExtractor,
    BatchSummary,
    RawResponse,
)
from harvester.services.data_ingestion.fetcher import SourceFetcher
from harvester.services.data_ingestion.normalizer import ContentNormalizer
from harvester.services.data_ingestion.rate_limiter import (
    InMemoryQuotaStore,
    QuotaStore,
    QuotaStoreUnavailable,
    RateLimiter,
)
from harvester.services.data_ingestion.webpage import WebPageExtractor
from harvester.services.data_ingestion.rss import FeedExtractor
from harvester.services.data_ingestion.reddit import RedditExtractor
from harvester.services.data_ingestion.newsletter import NewsletterExtractor
from harvester.services.data_ingestion.aggregator import SourceAggregator

__all__ = [
    "BaseExtractor",
    "BatchSummary",
    "RawResponse",
    "SourceFetcher",
    "ContentNormalizer",
    "InMemoryQuotaStore",
    "QuotaStore",
    "QuotaStoreUnavailable",
    "RateLimiter",
    "WebPageExtractor",
    "FeedExtractor",
    "RedditExtractor",
    "NewsletterExtractor",
    "SourceAggregator",
]
