"""
Source scrape job: from a tenant's sources to new trending topics.

This job runs per tenant (on a schedule or on demand) and:
1. Scrapes every source under bounded concurrency
2. Records a last-attempt timestamp for each source
3. Skips sources whose content is unchanged since topics were last stored
4. Follows the "read more" links of newsletters
5. Extracts topics from each source's content
6. Drops topics the tenant already has
7. Stores what is left with an expiry
"""
import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Union

import httpx
import structlog

from harvester.config import Settings, get_settings
from harvester.models.database import Database
from harvester.models.domain import (
    Content,
    ExtractedTopic,
    Failure,
    NormalizedContent,
    SourceDescriptor,
    SourceKind,
    utc_now,
)
from harvester.services.content_hash import ContentHashGate, hash_content
from harvester.services.data_ingestion.aggregator import SourceAggregator
from harvester.services.data_ingestion.newsletter import follow_up_links
from harvester.services.duplicate_filter import DuplicateFilter, titles_match
from harvester.services.topic_extraction import GenerationService, TopicExtractionService
from harvester.services.topic_store import SQLTopicStore, TopicStore, TopicStoreError

logger = structlog.get_logger()

OUTCOME_SUCCESS = "success"
OUTCOME_UNCHANGED = "unchanged"


@dataclass
class PipelineStats:
    """Counters for one pipeline run."""
    sources_total: int = 0
    sources_succeeded: int = 0
    sources_failed: int = 0
    sources_unchanged: int = 0
    follow_up_links: int = 0
    topics_extracted: int = 0
    topics_duplicate: int = 0
    topics_saved: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class PipelineResult:
    """Accepted topics in discovery order, per-item failures, and attempt times."""
    tenant_id: str
    topics: list[ExtractedTopic] = field(default_factory=list)
    failures: list[Failure] = field(default_factory=list)
    attempts: dict[str, datetime] = field(default_factory=dict)
    stats: PipelineStats = field(default_factory=PipelineStats)
    elapsed_seconds: float = 0.0


class TopicDiscoveryPipeline:
    """
    Orchestrates scraping, extraction and filtering for one tenant.

    Stages per source:
    1. Scrape outcome (content or failure)
    2. Content-hash gate
    3. Newsletter follow-up links
    4. Topic extraction
    5. Duplicate filtering, against the store and this run
    6. Persist accepted topics
    """

    def __init__(
        self,
        aggregator: SourceAggregator,
        extraction: TopicExtractionService,
        store: TopicStore,
        hash_gate: Optional[ContentHashGate] = None,
        duplicate_filter: Optional[DuplicateFilter] = None,
        newsletter_max_links: int = 3,
        topic_ttl_days: int = 7,
    ):
        self.aggregator = aggregator
        self.extraction = extraction
        self.store = store
        self.hash_gate = hash_gate or ContentHashGate(store)
        self.duplicate_filter = duplicate_filter or DuplicateFilter(store)
        self.newsletter_max_links = newsletter_max_links
        self.topic_ttl_days = topic_ttl_days

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: TopicStore,
        generator: Optional[GenerationService] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "TopicDiscoveryPipeline":
        return cls(
            aggregator=SourceAggregator.from_settings(settings, client=client),
            extraction=TopicExtractionService.from_settings(settings, generator=generator),
            store=store,
            hash_gate=ContentHashGate(store, window_days=settings.dedup.hash_cache_window_days),
            duplicate_filter=DuplicateFilter(
                store,
                threshold=settings.dedup.duplicate_similarity_threshold,
                lookback_days=settings.dedup.duplicate_lookback_days,
            ),
            newsletter_max_links=settings.scraping.newsletter_max_links,
            topic_ttl_days=settings.extraction.topic_ttl_days,
        )

    async def run(
        self,
        jobs: list[SourceDescriptor],
        tenant_id: str,
        industry: Optional[str] = None,
        interests: Optional[list[str]] = None,
    ) -> PipelineResult:
        """
        Execute the pipeline for one tenant.

        Args:
            jobs: Sources to scrape
            tenant_id: Tenant the topics belong to
            industry: Tenant industry for the extraction prompt
            interests: Tenant interests for the extraction prompt

        Returns:
            PipelineResult with accepted topics and failures
        """
        start_time = utc_now()
        result = PipelineResult(tenant_id=tenant_id)
        result.stats.sources_total = len(jobs)

        logger.info("Starting source scrape", tenant_id=tenant_id, sources=len(jobs))

        outcomes = await self.aggregator.scrape_batch(jobs)

        for descriptor, outcome in zip(jobs, outcomes):
            label = await self._process_source(
                descriptor, outcome, result, industry, interests
            )
            await self._record_attempt(tenant_id, descriptor, label, result)

        result.elapsed_seconds = (utc_now() - start_time).total_seconds()
        logger.info(
            "Source scrape completed",
            tenant_id=tenant_id,
            elapsed_seconds=result.elapsed_seconds,
            stats=result.stats.to_dict(),
            failures=len(result.failures),
        )
        return result

    async def _process_source(
        self,
        descriptor: SourceDescriptor,
        outcome: Union[Content, Failure],
        result: PipelineResult,
        industry: Optional[str],
        interests: Optional[list[str]],
    ) -> str:
        """Run one source through the post-scrape stages. Returns the attempt label."""
        stats = result.stats

        if isinstance(outcome, Failure):
            stats.sources_failed += 1
            result.failures.append(outcome)
            return outcome.kind.value

        stats.sources_succeeded += 1
        tenant_id = result.tenant_id
        source_id = descriptor.cache_key
        content_hash = hash_content(outcome.content)

        if await self.hash_gate.is_unchanged(content_hash, tenant_id, source_id):
            stats.sources_unchanged += 1
            return OUTCOME_UNCHANGED

        contents = [outcome.content]
        if descriptor.kind == SourceKind.NEWSLETTER:
            contents.extend(await self._follow_newsletter_links(outcome, result))

        extracted = await self.extraction.extract_topics(contents, industry, interests)
        if extracted.failure is not None:
            result.failures.append(extracted.failure)
            return extracted.failure.kind.value

        stats.topics_extracted += len(extracted.topics)

        new_topics = await self.duplicate_filter.filter_duplicates(extracted.topics, tenant_id)
        new_topics = [
            topic for topic in new_topics
            if not any(
                titles_match(topic.title, accepted.title, self.duplicate_filter.threshold)
                for accepted in result.topics
            )
        ]
        stats.topics_duplicate += len(extracted.topics) - len(new_topics)

        if new_topics:
            stats.topics_saved += await self._save(descriptor, outcome.content, content_hash, new_topics, tenant_id)
            result.topics.extend(new_topics)

        return OUTCOME_SUCCESS

    async def _follow_newsletter_links(
        self,
        outcome: Content,
        result: PipelineResult,
    ) -> list[NormalizedContent]:
        """Scrape a newsletter's outbound links as web pages."""
        links = follow_up_links(outcome, self.newsletter_max_links)
        if not links:
            return []

        result.stats.follow_up_links += len(links)
        follow_ups = await self.aggregator.scrape_batch(
            [SourceDescriptor(locator=link, kind=SourceKind.HTML) for link in links]
        )

        contents = []
        for follow_up in follow_ups:
            if isinstance(follow_up, Content):
                contents.append(follow_up.content)
            else:
                result.failures.append(follow_up)

        logger.info(
            "Followed newsletter links",
            locator=outcome.locator,
            links=len(links),
            scraped=len(contents),
        )
        return contents

    async def _save(
        self,
        descriptor: SourceDescriptor,
        content: NormalizedContent,
        content_hash: str,
        topics: list[ExtractedTopic],
        tenant_id: str,
    ) -> int:
        now = utc_now()
        try:
            return await self.store.save_topics(
                tenant_id=tenant_id,
                source_id=descriptor.cache_key,
                topics=topics,
                content_hash=content_hash,
                source_url=None if descriptor.kind == SourceKind.NEWSLETTER else descriptor.locator,
                content_snippet=content.excerpt,
                expires_at=now + timedelta(days=self.topic_ttl_days),
                discovered_at=now,
            )
        except TopicStoreError as e:
            logger.error(
                "Failed to save topics",
                tenant_id=tenant_id,
                source_id=descriptor.cache_key,
                error=str(e),
            )
            return 0

    async def _record_attempt(
        self,
        tenant_id: str,
        descriptor: SourceDescriptor,
        label: str,
        result: PipelineResult,
    ):
        attempted_at = utc_now()
        result.attempts[descriptor.cache_key] = attempted_at
        try:
            await self.store.record_attempt(
                tenant_id, descriptor.cache_key, label, attempted_at=attempted_at
            )
        except TopicStoreError as e:
            logger.warning(
                "Failed to record source attempt",
                tenant_id=tenant_id,
                source_id=descriptor.cache_key,
                error=str(e),
            )


async def run_source_scrape(
    urls: list[str],
    tenant_id: str,
    industry: Optional[str] = None,
    interests: Optional[list[str]] = None,
    database_url: Optional[str] = None,
) -> PipelineResult:
    """Entry point for running the source scrape job against the database."""
    settings = get_settings()
    database = Database(database_url or settings.database_url)

    # Create tables if they don't exist
    await database.create_tables()

    try:
        pipeline = TopicDiscoveryPipeline.from_settings(settings, SQLTopicStore(database))
        jobs = [SourceDescriptor.from_url(url) for url in urls]
        return await pipeline.run(jobs, tenant_id, industry, interests)
    finally:
        await database.dispose()


if __name__ == "__main__":
    import sys

    # Run job directly for testing
    asyncio.run(run_source_scrape(sys.argv[1:], tenant_id="local"))
