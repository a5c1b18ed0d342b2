"""
Source Aggregator - Runs scrape jobs under bounded concurrency.

This module dispatches each job to its format extractor behind the
per-host rate limiter, paces jobs with jittered delays, and returns
exactly one outcome per job.
"""

import asyncio
import random
import time
from typing import Callable, Optional

import httpx
import structlog

from harvester.config import Settings
from harvester.models.domain import (
    BatchProgress,
    Failure,
    FailureKind,
    FetchOutcome,
    SourceDescriptor,
    SourceKind,
)
from harvester.services.data_ingestion.base import BaseExtractor, BatchSummary
from harvester.services.data_ingestion.fetcher import SourceFetcher, is_valid_url
from harvester.services.data_ingestion.newsletter import NewsletterExtractor
from harvester.services.data_ingestion.normalizer import ContentNormalizer
from harvester.services.data_ingestion.rate_limiter import (
    InMemoryQuotaStore,
    QuotaStore,
    RateLimiter,
    normalize_host,
)
from harvester.services.data_ingestion.reddit import RedditExtractor
from harvester.services.data_ingestion.rss import FeedExtractor
from harvester.services.data_ingestion.webpage import WebPageExtractor

ProgressCallback = Callable[[BatchProgress], None]


class SourceAggregator:
    """
    Batch orchestrator for scrape jobs.

    Features:
    - Dispatch by source kind to the matching extractor
    - Per-host rate limiting before any network activity
    - Bounded concurrency with a jittered delay after each job
    - Settle-all semantics: one job's failure never affects the others
    """

    def __init__(
        self,
        extractors: list[BaseExtractor],
        rate_limiter: Optional[RateLimiter] = None,
        concurrency: int = 3,
        batch_delay_range: tuple[float, float] = (2.0, 5.0),
        logger=None,
    ):
        """
        Initialize the aggregator.

        Args:
            extractors: One extractor per source kind
            rate_limiter: Host quota gate; None skips the check
            concurrency: Default number of jobs in flight
            batch_delay_range: Bounds in seconds of the delay after each job
        """
        self.extractors = {extractor.kind: extractor for extractor in extractors}
        self.rate_limiter = rate_limiter
        self.concurrency = concurrency
        self.batch_delay_range = batch_delay_range
        self.logger = logger or structlog.get_logger(__name__)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        quota_store: Optional[QuotaStore] = None,
    ) -> "SourceAggregator":
        """Wire fetcher, normalizer, extractors and rate limiter from settings."""
        scraping = settings.scraping

        fetcher = SourceFetcher(
            client=client,
            timeout_seconds=scraping.fetch_timeout_seconds,
            delay_range=scraping.pre_fetch_delay_range,
        )
        normalizer = ContentNormalizer()

        extractors = [
            WebPageExtractor(fetcher, normalizer),
            FeedExtractor(fetcher, normalizer),
            RedditExtractor(
                fetcher,
                normalizer,
                listing_limit=scraping.reddit_listing_limit,
                top_posts=scraping.reddit_top_posts,
                max_comments=scraping.reddit_max_comments,
                comment_depth=scraping.reddit_comment_depth,
                post_spacing_seconds=scraping.reddit_post_spacing_ms / 1000,
            ),
            NewsletterExtractor(normalizer),
        ]

        rate_limiter = RateLimiter(
            quota_store or InMemoryQuotaStore(),
            limit=scraping.rate_limit_per_host_per_minute,
            window_seconds=scraping.rate_limit_window_seconds,
        )

        return cls(
            extractors=extractors,
            rate_limiter=rate_limiter,
            concurrency=scraping.concurrency,
            batch_delay_range=scraping.batch_delay_range,
        )

    def resolve_extractor(self, descriptor: SourceDescriptor) -> Optional[BaseExtractor]:
        return self.extractors.get(descriptor.kind)

    async def scrape(self, descriptor: SourceDescriptor) -> FetchOutcome:
        """
        Run one job. Never raises.

        Args:
            descriptor: Source to scrape

        Returns:
            Content or Failure for this job
        """
        extractor = self.resolve_extractor(descriptor)
        if extractor is None:
            return Failure(
                locator=descriptor.locator,
                kind=FailureKind.PARSE_FAILURE,
                reason=f"No extractor for source kind: {descriptor.kind.value}",
            )

        if descriptor.kind != SourceKind.NEWSLETTER:
            if not is_valid_url(descriptor.locator):
                self.logger.warning("Invalid URL", locator=descriptor.locator)
                return Failure(
                    locator=descriptor.locator,
                    kind=FailureKind.INVALID_LOCATOR,
                    reason=f"Invalid URL format: {descriptor.locator}",
                )

            if self.rate_limiter is not None:
                decision = await self.rate_limiter.check_limit(descriptor.locator)
                if not decision.allowed:
                    return Failure(
                        locator=descriptor.locator,
                        kind=FailureKind.RATE_LIMITED,
                        reason=f"Rate limit exceeded for domain: {normalize_host(descriptor.locator)}",
                    )

        try:
            return await extractor.extract(descriptor)
        except Exception as e:
            self.logger.exception(
                "Extractor raised",
                locator=descriptor.locator,
                kind=descriptor.kind.value,
            )
            return Failure(
                locator=descriptor.locator,
                kind=FailureKind.PARSE_FAILURE,
                reason=f"Unexpected extraction error: {e}",
            )

    async def scrape_batch(
        self,
        descriptors: list[SourceDescriptor],
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[FetchOutcome]:
        """
        Scrape many sources concurrently.

        Args:
            descriptors: Jobs to run
            concurrency: Jobs in flight (defaults to the configured width)
            on_progress: Called with (completed, total) after every job

        Returns:
            One outcome per descriptor, in input order
        """
        total = len(descriptors)
        if total == 0:
            return []

        width = max(1, concurrency or self.concurrency)
        semaphore = asyncio.Semaphore(width)
        completed = 0
        start = time.monotonic()

        async def run(descriptor: SourceDescriptor) -> FetchOutcome:
            nonlocal completed
            async with semaphore:
                outcome = await self.scrape(descriptor)
                completed += 1
                if on_progress is not None:
                    on_progress(BatchProgress(completed=completed, total=total))
                # Pace the slot before the next job may start
                if completed < total:
                    await self.pause()
                return outcome

        self.logger.info("Starting batch scrape", total=total, concurrency=width)

        results = await asyncio.gather(
            *(run(descriptor) for descriptor in descriptors),
            return_exceptions=True,
        )

        outcomes: list[FetchOutcome] = []
        for descriptor, result in zip(descriptors, results):
            if isinstance(result, BaseException):
                self.logger.error(
                    "Scrape job crashed",
                    locator=descriptor.locator,
                    error=str(result),
                )
                outcomes.append(
                    Failure(
                        locator=descriptor.locator,
                        kind=FailureKind.NETWORK_FAILURE,
                        reason=f"Scrape job failed: {result}",
                    )
                )
            else:
                outcomes.append(result)

        summary = BatchSummary.from_outcomes(outcomes, time.monotonic() - start)
        self.logger.info(
            "Batch scrape complete",
            total=summary.total,
            succeeded=summary.succeeded,
            failures=summary.failures,
            summary=str(summary),
        )
        return outcomes

    async def pause(self):
        """Jittered delay between jobs in one slot."""
        low, high = self.batch_delay_range
        if high <= 0:
            return
        await asyncio.sleep(random.uniform(low, high))
