"""
SQLAlchemy database models for the content harvester.
Uses SQLAlchemy 2.0 async patterns.

Timestamps are stored as naive UTC values.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# =============================================================================
# Base
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all database models."""
    pass


# =============================================================================
# Topics
# =============================================================================

class DBTrendingTopic(Base):
    """Topic accepted for a tenant after duplicate filtering."""
    __tablename__ = "trending_topics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_url: Mapped[Optional[str]] = mapped_column(Text)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    relevance: Mapped[Optional[str]] = mapped_column(Text)
    trend_score: Mapped[int] = mapped_column(Integer, nullable=False)

    # Content the topic was extracted from
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    content_snippet: Mapped[Optional[str]] = mapped_column(Text)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON)

    # Timestamps
    discovered_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_topics_tenant_discovered", "tenant_id", "discovered_at"),
        Index("ix_topics_tenant_source_hash", "tenant_id", "source_id", "content_hash"),
    )


# =============================================================================
# Sources
# =============================================================================

class DBSourceAttempt(Base):
    """Last scrape attempt per tenant and source, whatever its outcome."""
    __tablename__ = "source_attempts"

    tenant_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    source_id: Mapped[str] = mapped_column(String(512), primary_key=True)
    last_attempted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_outcome: Mapped[Optional[str]] = mapped_column(String(50))


# =============================================================================
# Database Connection
# =============================================================================

class Database:
    """Database connection manager."""

    def __init__(self, database_url: str):
        self.engine = create_async_engine(
            database_url,
            echo=False,  # Set to True for SQL logging
            future=True,
        )
        self.async_session = async_sessionmaker(
            self.engine,
            expire_on_commit=False,
        )

    async def create_tables(self):
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        """Close pooled connections."""
        await self.engine.dispose()
