"""
Services layer - core business logic for the content harvester.

The services implement the post-scrape stages:

1. Content hashing (content_hash.py):
   - Fingerprint of title, excerpt and locator
   - Skips unchanged sources inside the cache window

2. Topic extraction (topic_extraction.py):
   - Size-bounded prompt batching
   - LLM call (Claude or GPT) with retries
   - JSON parsing, validation and in-batch deduplication

3. Duplicate filtering (duplicate_filter.py):
   - Jaccard title similarity against the tenant's recent topics

4. Topic store (topic_store.py):
   - Accepted topics, content hashes and source attempts

Scraping itself lives in the data_ingestion package.
"""

from harvester.services.content_hash import ContentHashGate, generate_content_hash
from harvester.services.duplicate_filter import DuplicateFilter, jaccard_similarity
from harvester.services.topic_extraction import (
    AnthropicGenerationService,
    GenerationError,
    GenerationService,
    OpenAIGenerationService,
    TopicExtractionResult,
    TopicExtractionService,
    create_generation_service,
)
from harvester.services.topic_store import (
    InMemoryTopicStore,
    SQLTopicStore,
    TopicStore,
    TopicStoreError,
)

__all__ = [
    # Content hashing
    "ContentHashGate",
    "generate_content_hash",
    # Duplicate filtering
    "DuplicateFilter",
    "jaccard_similarity",
    # Topic extraction
    "AnthropicGenerationService",
    "GenerationError",
    "GenerationService",
    "OpenAIGenerationService",
    "TopicExtractionResult",
    "TopicExtractionService",
    "create_generation_service",
    # Storage
    "InMemoryTopicStore",
    "SQLTopicStore",
    "TopicStore",
    "TopicStoreError",
]
