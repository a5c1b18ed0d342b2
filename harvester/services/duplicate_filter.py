"""
Cross-run duplicate filtering of extracted topics.

A candidate is dropped when its title matches, or is close to, a topic
stored for the same tenant in the lookback window.
"""

import re
from datetime import timedelta
from typing import Optional

import structlog

from harvester.models.domain import ExtractedTopic, StoredTopic, utc_now
from harvester.services.topic_store import TopicStore, TopicStoreError

# Words that carry no topic of their own
FILLER_WORDS = frozenset({
    "a", "an", "the", "is", "are", "was", "were", "be", "been", "being",
    "am", "and", "or", "of", "to", "in", "on", "for", "with", "at", "by",
    "as", "it", "its", "this", "that", "these", "those", "right", "now",
    "just", "today", "still", "very", "so",
})


def jaccard_similarity(first: str, second: str) -> float:
    """
    Word-set Jaccard similarity of two strings.

    Sets are built from lowercased whitespace tokens; an empty union
    scores 0.
    """
    words_a = set(first.lower().split())
    words_b = set(second.lower().split())
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def normalize_title(title: str) -> str:
    """Normalize title for fuzzy matching."""
    title = title.lower()
    title = re.sub(r"[^\w\s]", " ", title)
    return " ".join(title.split())


def content_words(title: str) -> str:
    """Normalized title without filler words."""
    return " ".join(word for word in normalize_title(title).split() if word not in FILLER_WORDS)


def titles_match(candidate: str, existing: str, threshold: float = 0.8) -> bool:
    """
    Exact (case-insensitive, trimmed) match, or similarity at or above
    ``threshold`` on either the raw titles or their content words.
    """
    if candidate.lower().strip() == existing.lower().strip():
        return True
    if jaccard_similarity(candidate, existing) >= threshold:
        return True
    return jaccard_similarity(content_words(candidate), content_words(existing)) >= threshold


class DuplicateFilter:
    """
    Drops topics already known to a tenant.

    If the store cannot be read the candidates are kept: a repeated topic
    is cheaper than a lost one.
    """

    def __init__(
        self,
        store: TopicStore,
        threshold: float = 0.8,
        lookback_days: int = 30,
        logger=None,
    ):
        self.store = store
        self.threshold = threshold
        self.lookback_days = lookback_days
        self.logger = logger or structlog.get_logger(__name__)

    async def _existing(self, tenant_id: str) -> Optional[list[StoredTopic]]:
        now = utc_now()
        since = now - timedelta(days=self.lookback_days)
        try:
            return await self.store.recent_topics(tenant_id, since, now=now)
        except TopicStoreError as e:
            self.logger.warning("Duplicate check unavailable", tenant_id=tenant_id, error=str(e))
            return None

    def _matches_any(self, title: str, existing: list[StoredTopic]) -> bool:
        return any(
            stored.title and titles_match(title, stored.title, self.threshold)
            for stored in existing
        )

    async def is_duplicate(self, topic: ExtractedTopic, tenant_id: str) -> bool:
        existing = await self._existing(tenant_id)
        if not existing:
            return False
        return self._matches_any(topic.title, existing)

    async def filter_duplicates(
        self,
        topics: list[ExtractedTopic],
        tenant_id: str,
    ) -> list[ExtractedTopic]:
        """
        Keep the topics that are new for this tenant, in input order.

        The stored titles are read once per call.
        """
        if not topics:
            return []

        existing = await self._existing(tenant_id)
        if not existing:
            return list(topics)

        unique = [topic for topic in topics if not self._matches_any(topic.title, existing)]

        skipped = len(topics) - len(unique)
        if skipped:
            self.logger.info(
                "Skipped duplicate topics",
                tenant_id=tenant_id,
                skipped=skipped,
                kept=len(unique),
            )
        return unique
