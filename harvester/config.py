"""
Application configuration using Pydantic Settings.
"""

from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ScrapingSettings(BaseSettings):
    """Fetching, pacing and per-format limits for source scraping."""

    model_config = SettingsConfigDict(env_prefix="SCRAPER_")

    # Concurrency and politeness
    concurrency: int = Field(
        default=3,
        ge=1,
        description="Maximum number of sources scraped at the same time",
    )
    rate_limit_per_host_per_minute: int = Field(
        default=10,
        ge=1,
        description="Sliding-window quota per normalized host",
    )
    rate_limit_window_seconds: int = Field(default=60, ge=1)
    fetch_timeout_ms: int = Field(
        default=30000,
        ge=1,
        description="Hard timeout for a single HTTP fetch (milliseconds)",
    )

    # Jittered delays (milliseconds)
    pre_fetch_delay_min_ms: int = Field(default=2000, ge=0)
    pre_fetch_delay_max_ms: int = Field(default=5000, ge=0)
    batch_delay_min_ms: int = Field(default=2000, ge=0)
    batch_delay_max_ms: int = Field(default=5000, ge=0)

    # Reddit
    reddit_post_spacing_ms: int = Field(
        default=2000,
        ge=0,
        description="Pause between post fetches during subreddit discovery",
    )
    reddit_listing_limit: int = Field(default=25, ge=1, le=100)
    reddit_top_posts: int = Field(default=7, ge=1)
    reddit_max_comments: int = Field(default=20, ge=0)
    reddit_comment_depth: int = Field(default=2, ge=0)

    # Newsletters
    newsletter_max_links: int = Field(
        default=3,
        ge=0,
        description="Outbound links followed per newsletter email",
    )

    @model_validator(mode="after")
    def validate_delay_ranges(self) -> "ScrapingSettings":
        if self.pre_fetch_delay_min_ms > self.pre_fetch_delay_max_ms:
            raise ValueError("pre_fetch_delay_min_ms must not exceed pre_fetch_delay_max_ms")
        if self.batch_delay_min_ms > self.batch_delay_max_ms:
            raise ValueError("batch_delay_min_ms must not exceed batch_delay_max_ms")
        return self

    @property
    def fetch_timeout_seconds(self) -> float:
        return self.fetch_timeout_ms / 1000

    @property
    def pre_fetch_delay_range(self) -> tuple[float, float]:
        return self.pre_fetch_delay_min_ms / 1000, self.pre_fetch_delay_max_ms / 1000

    @property
    def batch_delay_range(self) -> tuple[float, float]:
        return self.batch_delay_min_ms / 1000, self.batch_delay_max_ms / 1000


class ExtractionSettings(BaseSettings):
    """Topic extraction through the text-generation backend."""

    model_config = SettingsConfigDict(env_prefix="EXTRACTION_")

    max_prompt_chars: int = Field(
        default=15000,
        ge=500,
        description="Character budget for the combined content in one prompt",
    )
    min_trending_score: int = Field(default=40, ge=0, le=100)
    max_tokens: int = Field(default=2000, ge=1)
    anthropic_model: str = Field(default="claude-3-haiku-20240307")
    openai_model: str = Field(default="gpt-3.5-turbo")
    topic_ttl_days: int = Field(
        default=7,
        ge=1,
        description="Days until a stored topic expires",
    )


class DedupSettings(BaseSettings):
    """Content-hash caching and cross-run duplicate filtering."""

    model_config = SettingsConfigDict(env_prefix="DEDUP_")

    duplicate_similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    hash_cache_window_days: int = Field(default=7, ge=1)
    duplicate_lookback_days: int = Field(default=30, ge=1)

    @field_validator("duplicate_similarity_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("Similarity threshold must be in (0, 1]")
        return v


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(
        default=True,
        description="Render log events as JSON (False gives console output)",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./harvester.db",
        description="Async database URL (SQLAlchemy format)",
    )

    # API Keys (all optional for local development)
    anthropic_api_key: str | None = Field(default=None)
    openai_api_key: str | None = Field(default=None)

    # Nested groups
    scraping: ScrapingSettings = Field(default_factory=ScrapingSettings)
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)
    dedup: DedupSettings = Field(default_factory=DedupSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
