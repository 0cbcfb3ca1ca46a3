"""
Fragment tables: the raw, embedded pieces of transcribed meetings and documents.

A fragment moves through three states: unembedded (embedding is NULL),
embedded but unprocessed (clustering_processed is NULL) and processed.
clustering_processed is written once by whichever clustering path consumes the
fragment and is never overwritten afterwards.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    LargeBinary,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, utcnow

if TYPE_CHECKING:
    from .clustering import Cluster
    from .knowledge import FragmentKnowledgeUnit

TITLE_MAX_LENGTH = 200
SUMMARY_MAX_LENGTH = 500
CONTENT_MAX_LENGTH = 10_000
CONFIDENCE_COMMENT_MAX_LENGTH = 1_000


class ConfidenceLevel(str, enum.Enum):
    """How much a fragment or knowledge unit can be trusted."""

    UNCLEAR = "Unclear"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    ABSOLUTE = "Absolute"


class SourceType(str, enum.Enum):
    MEETING = "Meeting"
    DOCUMENT = "Document"
    TICKET = "Ticket"
    ARTICLE = "Article"
    OTHER = "Other"


# ========================================
# REFERENCE DATA
# ========================================


class FragmentCategory(Base):
    """Known category a fragment or knowledge unit is filed under."""

    __tablename__ = "fragment_categories"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Speaker(Base):
    __tablename__ = "speakers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    trust_level: Mapped[str | None] = mapped_column(String(50))


class Source(Base):
    """Where fragments came from (a meeting transcript, a document, ...)."""

    __tablename__ = "sources"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    source_type: Mapped[SourceType] = mapped_column(
        Enum(SourceType, native_enum=False, length=20), default=SourceType.MEETING
    )
    occurred_on: Mapped[date | None] = mapped_column("date", Date)
    is_internal: Mapped[bool | None] = mapped_column(Boolean)
    primary_speaker_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("speakers.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Relationships
    primary_speaker: Mapped[Speaker | None] = relationship()
    tags: Mapped[list[SourceTag]] = relationship(
        back_populates="source", cascade="all, delete-orphan"
    )
    fragments: Mapped[list[Fragment]] = relationship(back_populates="source")


class SourceTag(Base):
    """Free-form tag attached to a source, e.g. ("Project", "Apollo")."""

    __tablename__ = "source_tags"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    source_id: Mapped[UUID] = mapped_column(ForeignKey("sources.id", ondelete="CASCADE"))
    tag_type: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str] = mapped_column(String(200), nullable=False)

    source: Mapped[Source] = relationship(back_populates="tags")


# ========================================
# FRAGMENTS
# ========================================


class Fragment(Base):
    """A unit of extracted content awaiting synthesis."""

    __tablename__ = "fragments"
    __table_args__ = (
        Index("ix_fragments_clustering_processed", "clustering_processed"),
        Index("ix_fragments_created_at", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(String(TITLE_MAX_LENGTH), nullable=False)
    summary: Mapped[str | None] = mapped_column(String(SUMMARY_MAX_LENGTH))
    content: Mapped[str] = mapped_column(String(CONTENT_MAX_LENGTH), nullable=False)
    category_id: Mapped[UUID] = mapped_column(ForeignKey("fragment_categories.id"))
    source_id: Mapped[UUID | None] = mapped_column(ForeignKey("sources.id", ondelete="SET NULL"))
    confidence: Mapped[ConfidenceLevel | None] = mapped_column(
        Enum(ConfidenceLevel, native_enum=False, length=20)
    )
    confidence_comment: Mapped[str | None] = mapped_column(String(CONFIDENCE_COMMENT_MAX_LENGTH))
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_modified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # Semantic embedding - stored as bytes (serialized float32 numpy array)
    embedding: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    # Processed watermark: NULL until a clustering path consumes the fragment
    clustering_processed: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    category: Mapped[FragmentCategory] = relationship()
    source: Mapped[Source | None] = relationship(back_populates="fragments")
    knowledge_unit_links: Mapped[list[FragmentKnowledgeUnit]] = relationship(
        back_populates="fragment", passive_deletes=True
    )
    clusters: Mapped[list[Cluster]] = relationship(
        secondary="cluster_fragments", back_populates="fragments"
    )

    def __repr__(self) -> str:
        return f"<Fragment {self.id} {self.title!r}>"
