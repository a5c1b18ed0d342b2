"""
Content fingerprinting.

Skips topic extraction for a source whose content has not changed
since topics were last stored for it.
"""

import hashlib
from datetime import timedelta

import structlog

from harvester.models.domain import NormalizedContent, utc_now
from harvester.services.topic_store import TopicStore, TopicStoreError

HASH_EXCERPT_CHARS = 500


def generate_content_hash(title: str, excerpt: str, locator: str) -> str:
    """SHA-256 hex digest of ``title|excerpt[:500]|locator``."""
    payload = f"{title or ''}|{(excerpt or '')[:HASH_EXCERPT_CHARS]}|{locator}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def hash_content(content: NormalizedContent) -> str:
    return generate_content_hash(content.title or "", content.excerpt, content.locator)


class ContentHashGate:
    """Looks up recent content hashes for a tenant and source."""

    def __init__(self, store: TopicStore, window_days: int = 7, logger=None):
        self.store = store
        self.window_days = window_days
        self.logger = logger or structlog.get_logger(__name__)

    async def is_unchanged(self, content_hash: str, tenant_id: str, source_id: str) -> bool:
        """
        True when the same hash was stored for this source inside the window.

        A store failure counts as "changed" so the content is processed.
        """
        since = utc_now() - timedelta(days=self.window_days)
        try:
            unchanged = await self.store.has_content_hash(content_hash, tenant_id, source_id, since)
        except TopicStoreError as e:
            self.logger.warning(
                "Content hash lookup failed",
                tenant_id=tenant_id,
                source_id=source_id,
                error=str(e),
            )
            return False

        if unchanged:
            self.logger.info(
                "Content unchanged",
                tenant_id=tenant_id,
                source_id=source_id,
                content_hash=content_hash[:12],
            )
        return unchanged
