"""
Topic extraction using LLMs (Claude or GPT).

Batches normalized content into one bounded prompt, asks the generation
backend for trending topics as JSON, and validates and deduplicates
what comes back.
"""

import json
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from anthropic import APIError as AnthropicAPIError
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from openai import OpenAIError
from tenacity import retry, stop_after_attempt, wait_exponential

from harvester.config import Settings
from harvester.models.domain import (
    ExtractedTopic,
    Failure,
    FailureKind,
    NormalizedContent,
)
from harvester.services.duplicate_filter import jaccard_similarity

SYSTEM_PROMPT = (
    "You are an expert at identifying trending topics from web content. "
    "Extract actionable, engaging topics suitable for social media content creation."
)

MAX_TRENDING_SCORE = 100
BATCH_DEDUP_THRESHOLD = 0.8
EXCERPT_FALLBACK_CHARS = 500

JSON_ARRAY = re.compile(r"\[[\s\S]*\]")
JSON_OBJECT = re.compile(r"\{[^{}]*\}")


class GenerationError(Exception):
    """The generation backend failed or could not be reached."""


# =============================================================================
# Generation backends
# =============================================================================

class GenerationService(ABC):
    """Text generation backend: one prompt in, one completion out."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 2000,
    ) -> str:
        """
        Raises:
            GenerationError: when the backend call fails after retries
        """
        pass


class AnthropicGenerationService(GenerationService):
    """Generation through the Anthropic Messages API."""

    def __init__(self, api_key: str, model: str = "claude-3-haiku-20240307", client=None):
        self.model = model
        self.client = client or AsyncAnthropic(api_key=api_key)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
    async def _create(self, prompt: str, system_prompt: Optional[str], max_tokens: int):
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        return await self.client.messages.create(**kwargs)

    async def generate(self, prompt, system_prompt=None, max_tokens=2000):
        try:
            response = await self._create(prompt, system_prompt, max_tokens)
        except AnthropicAPIError as e:
            raise GenerationError(f"Anthropic generation failed: {e}") from e

        texts = [block.text for block in response.content if getattr(block, "type", None) == "text"]
        return texts[0] if texts else ""


class OpenAIGenerationService(GenerationService):
    """Generation through the OpenAI Chat Completions API."""

    def __init__(self, api_key: str, model: str = "gpt-3.5-turbo", client=None):
        self.model = model
        self.client = client or AsyncOpenAI(api_key=api_key)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
    async def _create(self, prompt: str, system_prompt: Optional[str], max_tokens: int):
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return await self.client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=messages,
        )

    async def generate(self, prompt, system_prompt=None, max_tokens=2000):
        try:
            response = await self._create(prompt, system_prompt, max_tokens)
        except OpenAIError as e:
            raise GenerationError(f"OpenAI generation failed: {e}") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


def create_generation_service(settings: Settings) -> Optional[GenerationService]:
    """Anthropic when its key is set, else OpenAI, else None."""
    if settings.anthropic_api_key:
        return AnthropicGenerationService(
            api_key=settings.anthropic_api_key,
            model=settings.extraction.anthropic_model,
        )
    if settings.openai_api_key:
        return OpenAIGenerationService(
            api_key=settings.openai_api_key,
            model=settings.extraction.openai_model,
        )
    return None


# =============================================================================
# Prompt building
# =============================================================================

def combine_content_for_batching(
    contents: list[NormalizedContent],
    max_chars: int = 15000,
) -> tuple[str, int]:
    """
    Join content summaries into one prompt payload of at most ``max_chars``.

    Sources are added in order until the next one would overflow the
    budget; the rest are left out of this batch.

    Returns:
        (combined text, number of sources included)
    """
    parts: list[str] = []
    length = 0

    for content in contents:
        lines = [
            f"=== Source: {content.locator} ===",
            f"Title: {content.title or 'No title'}",
            f"Excerpt: {content.excerpt or content.body[:EXCERPT_FALLBACK_CHARS]}",
        ]
        if content.metadata.og_description:
            lines.append(f"Description: {content.metadata.og_description}")
        if content.published_at:
            lines.append(f"Published: {content.published_at.isoformat()}")
        part = "\n".join(lines)

        separator = 2 if parts else 0
        if length + separator + len(part) > max_chars:
            break

        parts.append(part)
        length += separator + len(part)

    return "\n\n".join(parts), len(parts)


def build_topic_extraction_prompt(
    combined_content: str,
    industry: Optional[str] = None,
    interests: Optional[list[str]] = None,
) -> str:
    """Build the topic extraction prompt."""
    industry_context = industry or "general"
    interests_context = ", ".join(interests) if interests else "all topics"

    return f"""You are analyzing web content to identify trending topics for social media content creation.

User context:
- Industry: {industry_context}
- Interests: {interests_context}

Web content to analyze:
{combined_content}

Extract 5-10 trending topics from this content. For each topic:
- Title: Clear, concise topic name (5-10 words max)
- Description: Why this topic is trending and why it matters (2-3 sentences)
- Category: One of [Technology, Business, Marketing, Health, Entertainment, Politics, Science, Sports, Lifestyle, Other]
- Trending Score: 0-100 based on recency, relevance, and potential engagement
- Relevance: Brief explanation of why this topic matches the user's industry/interests

Focus on:
- Recent developments (prioritize newer content)
- Topics with broad appeal or timely relevance
- Actionable topics that could generate engaging social media posts

Return ONLY valid JSON array of topics, no other text:
[
  {{
    "title": "...",
    "description": "...",
    "category": "...",
    "trendingScore": 85,
    "relevance": "..."
  }}
]"""


# =============================================================================
# Response parsing
# =============================================================================

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def validate_topic(item: Any, min_score: int = 40) -> Optional[ExtractedTopic]:
    """
    Check one parsed item's field types and score range.

    Returns None for anything malformed or scored outside [min_score, 100].
    """
    if not isinstance(item, dict):
        return None

    score = item.get("trendingScore", item.get("trending_score"))
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        return None
    if not math.isfinite(score) or score < min_score or score > MAX_TRENDING_SCORE:
        return None

    fields = {}
    for name in ("title", "description", "category", "relevance"):
        value = item.get(name)
        if not isinstance(value, str):
            return None
        fields[name] = value.strip()

    if not fields["title"]:
        return None

    return ExtractedTopic(trending_score=_round_half_up(score), **fields)


def extract_topics_from_text(response: str, min_score: int = 40) -> list[ExtractedTopic]:
    """
    Lossy fallback for responses that are not a parseable JSON array.

    Picks out flat ``{...}`` objects that parse on their own and keeps
    the valid ones. Anything nested or truncated is lost.
    """
    topics = []
    for match in JSON_OBJECT.finditer(response):
        try:
            item = json.loads(match.group(0))
        except ValueError:
            continue
        topic = validate_topic(item, min_score)
        if topic:
            topics.append(topic)
    return topics


def parse_topics_from_response(
    response: str,
    min_score: int = 40,
    logger=None,
) -> list[ExtractedTopic]:
    """
    Parse the model's JSON array of topics.

    The first bracketed span is used so prose around the array is
    ignored. Invalid items are skipped; unparseable JSON falls back to
    ``extract_topics_from_text``.
    """
    logger = logger or structlog.get_logger(__name__)

    match = JSON_ARRAY.search(response)
    json_str = match.group(0) if match else response

    try:
        parsed = json.loads(json_str)
    except ValueError as e:
        logger.warning(
            "Failed to parse topics JSON, using text fallback",
            error=str(e),
            response=response[:500],
        )
        return extract_topics_from_text(response, min_score)

    if not isinstance(parsed, list):
        logger.warning("Topic response is not an array", response=response[:500])
        return []

    topics = []
    for item in parsed:
        topic = validate_topic(item, min_score)
        if topic is None:
            logger.debug("Skipping invalid topic", item=item)
            continue
        topics.append(topic)
    return topics


def deduplicate_topics(topics: list[ExtractedTopic]) -> list[ExtractedTopic]:
    """
    Collapse repeats within one batch.

    Exact case-insensitive title repeats are dropped; titles with Jaccard
    similarity above 0.8 are merged, keeping the higher trending score.
    """
    unique: list[ExtractedTopic] = []
    seen: set[str] = set()

    for topic in topics:
        normalized = topic.title.lower().strip()
        if normalized in seen:
            continue

        for index, existing in enumerate(unique):
            if jaccard_similarity(topic.title, existing.title) > BATCH_DEDUP_THRESHOLD:
                if topic.trending_score > existing.trending_score:
                    unique[index] = topic
                    seen.add(normalized)
                break
        else:
            unique.append(topic)
            seen.add(normalized)

    return unique


# =============================================================================
# Orchestration
# =============================================================================

@dataclass
class TopicExtractionResult:
    """Topics from one extraction batch, or the reason there are none."""
    topics: list[ExtractedTopic] = field(default_factory=list)
    failure: Optional[Failure] = None
    sources_included: int = 0
    sources_total: int = 0

    @property
    def success(self) -> bool:
        return self.failure is None


class TopicExtractionService:
    """
    Turns a batch of normalized content into deduplicated topics.

    Never raises: a failed or empty generation call yields a
    GENERATION_FAILURE for the batch and no topics.
    """

    def __init__(
        self,
        generator: Optional[GenerationService],
        max_prompt_chars: int = 15000,
        max_tokens: int = 2000,
        min_score: int = 40,
        logger=None,
    ):
        self.generator = generator
        self.max_prompt_chars = max_prompt_chars
        self.max_tokens = max_tokens
        self.min_score = min_score
        self.logger = logger or structlog.get_logger(__name__)

    @classmethod
    def from_settings(cls, settings: Settings, generator: Optional[GenerationService] = None):
        return cls(
            generator=generator or create_generation_service(settings),
            max_prompt_chars=settings.extraction.max_prompt_chars,
            max_tokens=settings.extraction.max_tokens,
            min_score=settings.extraction.min_trending_score,
        )

    async def extract_topics(
        self,
        contents: list[NormalizedContent],
        industry: Optional[str] = None,
        interests: Optional[list[str]] = None,
    ) -> TopicExtractionResult:
        """
        Extract trending topics from a batch of content.

        Args:
            contents: Validated content, in priority order
            industry: Tenant industry for the prompt
            interests: Tenant interests for the prompt

        Returns:
            TopicExtractionResult with topics or a failure
        """
        result = TopicExtractionResult(sources_total=len(contents))
        if not contents:
            self.logger.warning("No content to extract topics from")
            return result

        combined, included = combine_content_for_batching(contents, self.max_prompt_chars)
        result.sources_included = included
        if not combined:
            self.logger.warning("Combined content is empty after batching", sources=len(contents))
            return result

        batch_locator = contents[0].locator
        if self.generator is None:
            result.failure = self._failure(batch_locator, "No generation backend configured")
            return result

        self.logger.info(
            "Extracting topics",
            sources=included,
            excluded=len(contents) - included,
            industry=industry,
        )

        prompt = build_topic_extraction_prompt(combined, industry, interests)
        try:
            response = await self.generator.generate(prompt, SYSTEM_PROMPT, self.max_tokens)
        except GenerationError as e:
            result.failure = self._failure(batch_locator, str(e))
            return result
        except Exception as e:
            self.logger.exception("Unexpected generation error", locator=batch_locator, error=str(e))
            result.failure = self._failure(batch_locator, f"Unexpected generation error: {e}")
            return result

        if not response or not response.strip():
            result.failure = self._failure(batch_locator, "Empty response from generation backend")
            return result

        topics = parse_topics_from_response(response, self.min_score, self.logger)
        result.topics = deduplicate_topics(topics)

        self.logger.info("Extracted topics", parsed=len(topics), unique=len(result.topics))
        return result

    def _failure(self, locator: str, reason: str) -> Failure:
        self.logger.error("Topic generation failed", locator=locator, reason=reason)
        return Failure(locator=locator, kind=FailureKind.GENERATION_FAILURE, reason=reason)
