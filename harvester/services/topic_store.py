"""
Persistence for accepted topics, content hashes and source attempts.

The pipeline is stateless between runs except through this store:
accepted topics (with the hash of the content they came from) and the
last-attempt timestamp of every source.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from harvester.models.database import Database, DBSourceAttempt, DBTrendingTopic
from harvester.models.domain import ExtractedTopic, StoredTopic, utc_now

logger = structlog.get_logger()


class TopicStoreError(Exception):
    """The backing store could not be read or written."""


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetime to naive UTC for storage."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    """Stored naive UTC back to an aware datetime."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TopicStore(ABC):
    """Abstract store used by the hash gate, the duplicate filter and the pipeline."""

    @abstractmethod
    async def recent_topics(
        self,
        tenant_id: str,
        since: datetime,
        now: Optional[datetime] = None,
    ) -> list[StoredTopic]:
        """Non-expired topics discovered for ``tenant_id`` at or after ``since``."""
        pass

    @abstractmethod
    async def has_content_hash(
        self,
        content_hash: str,
        tenant_id: str,
        source_id: str,
        since: datetime,
    ) -> bool:
        """Whether topics from this exact content were stored for the source since ``since``."""
        pass

    @abstractmethod
    async def save_topics(
        self,
        tenant_id: str,
        source_id: str,
        topics: list[ExtractedTopic],
        content_hash: str,
        source_url: Optional[str] = None,
        content_snippet: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        discovered_at: Optional[datetime] = None,
    ) -> int:
        """Persist accepted topics. Returns the number stored."""
        pass

    @abstractmethod
    async def record_attempt(
        self,
        tenant_id: str,
        source_id: str,
        outcome: str,
        attempted_at: Optional[datetime] = None,
    ):
        """Update the source's last-attempt timestamp, whatever the outcome."""
        pass

    @abstractmethod
    async def last_attempt(self, tenant_id: str, source_id: str) -> Optional[datetime]:
        pass


@dataclass
class _TopicRecord:
    tenant_id: str
    source_id: str
    title: str
    content_hash: str
    discovered_at: datetime
    expires_at: Optional[datetime]


class InMemoryTopicStore(TopicStore):
    """Process-local store for tests and one-off CLI runs."""

    def __init__(self):
        self._topics: list[_TopicRecord] = []
        self._attempts: dict[tuple[str, str], tuple[datetime, str]] = {}
        self.saved: dict[str, list[ExtractedTopic]] = defaultdict(list)

    async def recent_topics(self, tenant_id, since, now=None):
        now = now or utc_now()
        return [
            StoredTopic(
                title=record.title,
                discovered_at=record.discovered_at,
                source_id=record.source_id,
                expires_at=record.expires_at,
            )
            for record in self._topics
            if record.tenant_id == tenant_id
            and record.discovered_at >= since
            and (record.expires_at is None or record.expires_at > now)
        ]

    async def has_content_hash(self, content_hash, tenant_id, source_id, since):
        return any(
            record.content_hash == content_hash
            and record.tenant_id == tenant_id
            and record.source_id == source_id
            and record.discovered_at >= since
            for record in self._topics
        )

    async def save_topics(
        self,
        tenant_id,
        source_id,
        topics,
        content_hash,
        source_url=None,
        content_snippet=None,
        expires_at=None,
        discovered_at=None,
    ):
        discovered_at = discovered_at or utc_now()
        for topic in topics:
            self._topics.append(
                _TopicRecord(
                    tenant_id=tenant_id,
                    source_id=source_id,
                    title=topic.title,
                    content_hash=content_hash,
                    discovered_at=discovered_at,
                    expires_at=expires_at,
                )
            )
        self.saved[tenant_id].extend(topics)
        return len(topics)

    async def record_attempt(self, tenant_id, source_id, outcome, attempted_at=None):
        self._attempts[(tenant_id, source_id)] = (attempted_at or utc_now(), outcome)

    async def last_attempt(self, tenant_id, source_id):
        attempt = self._attempts.get((tenant_id, source_id))
        return attempt[0] if attempt else None


class SQLTopicStore(TopicStore):
    """
    Store backed by the ``trending_topics`` and ``source_attempts`` tables.

    Database errors surface as TopicStoreError so callers can degrade
    without knowing about SQLAlchemy.
    """

    def __init__(self, database: Database):
        self.database = database

    async def recent_topics(self, tenant_id, since, now=None):
        now = now or utc_now()
        query = (
            select(DBTrendingTopic)
            .where(DBTrendingTopic.tenant_id == tenant_id)
            .where(DBTrendingTopic.discovered_at >= _to_db(since))
            .where(
                or_(
                    DBTrendingTopic.expires_at.is_(None),
                    DBTrendingTopic.expires_at > _to_db(now),
                )
            )
            .order_by(DBTrendingTopic.discovered_at.desc())
        )
        try:
            async with self.database.async_session() as session:
                result = await session.execute(query)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise TopicStoreError(f"Failed to load recent topics: {e}") from e

        return [
            StoredTopic(
                title=row.title,
                discovered_at=_from_db(row.discovered_at),
                source_id=row.source_id,
                expires_at=_from_db(row.expires_at),
            )
            for row in rows
        ]

    async def has_content_hash(self, content_hash, tenant_id, source_id, since):
        query = (
            select(func.count())
            .select_from(DBTrendingTopic)
            .where(DBTrendingTopic.tenant_id == tenant_id)
            .where(DBTrendingTopic.source_id == source_id)
            .where(DBTrendingTopic.content_hash == content_hash)
            .where(DBTrendingTopic.discovered_at >= _to_db(since))
        )
        try:
            async with self.database.async_session() as session:
                count = (await session.execute(query)).scalar_one()
        except SQLAlchemyError as e:
            raise TopicStoreError(f"Failed to look up content hash: {e}") from e
        return count > 0

    async def save_topics(
        self,
        tenant_id,
        source_id,
        topics,
        content_hash,
        source_url=None,
        content_snippet=None,
        expires_at=None,
        discovered_at=None,
    ):
        if not topics:
            return 0

        discovered_at = _to_db(discovered_at or utc_now())
        rows = [
            DBTrendingTopic(
                tenant_id=tenant_id,
                source_id=source_id,
                source_url=source_url,
                title=topic.title,
                description=topic.description,
                category=topic.category,
                relevance=topic.relevance,
                trend_score=topic.trending_score,
                content_hash=content_hash,
                content_snippet=content_snippet,
                metadata_json={"category": topic.category},
                discovered_at=discovered_at,
                expires_at=_to_db(expires_at),
            )
            for topic in topics
        ]
        try:
            async with self.database.async_session() as session:
                session.add_all(rows)
                await session.commit()
        except SQLAlchemyError as e:
            raise TopicStoreError(f"Failed to save topics: {e}") from e

        logger.info("Saved topics", tenant_id=tenant_id, source_id=source_id, count=len(rows))
        return len(rows)

    async def record_attempt(self, tenant_id, source_id, outcome, attempted_at=None):
        attempted_at = _to_db(attempted_at or utc_now())
        try:
            async with self.database.async_session() as session:
                attempt = await session.get(DBSourceAttempt, (tenant_id, source_id))
                if attempt is None:
                    session.add(
                        DBSourceAttempt(
                            tenant_id=tenant_id,
                            source_id=source_id,
                            last_attempted_at=attempted_at,
                            last_outcome=outcome,
                        )
                    )
                else:
                    attempt.last_attempted_at = attempted_at
                    attempt.last_outcome = outcome
                await session.commit()
        except SQLAlchemyError as e:
            raise TopicStoreError(f"Failed to record attempt: {e}") from e

    async def last_attempt(self, tenant_id, source_id):
        try:
            async with self.database.async_session() as session:
                attempt = await session.get(DBSourceAttempt, (tenant_id, source_id))
        except SQLAlchemyError as e:
            raise TopicStoreError(f"Failed to read last attempt: {e}") from e
        return _from_db(attempt.last_attempted_at) if attempt else None
