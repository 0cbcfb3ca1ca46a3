"""
Knowledge unit tables.

FragmentKnowledgeUnit is the only link between fragments and knowledge units:
it owns both foreign keys and each side only sees its own collection of join
rows.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    LargeBinary,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, utcnow
from .fragments import (
    CONFIDENCE_COMMENT_MAX_LENGTH,
    CONTENT_MAX_LENGTH,
    SUMMARY_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    ConfidenceLevel,
    Fragment,
    FragmentCategory,
)

CLUSTERING_COMMENT_MAX_LENGTH = 2_000


class KnowledgeUnit(Base):
    """A synthesized, deduplicated statement merged from two or more fragments."""

    __tablename__ = "knowledge_units"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(String(TITLE_MAX_LENGTH), nullable=False)
    summary: Mapped[str] = mapped_column(String(SUMMARY_MAX_LENGTH), nullable=False)
    content: Mapped[str] = mapped_column(String(CONTENT_MAX_LENGTH), nullable=False)
    category_id: Mapped[UUID] = mapped_column(ForeignKey("fragment_categories.id"))
    confidence: Mapped[ConfidenceLevel] = mapped_column(
        Enum(ConfidenceLevel, native_enum=False, length=20), default=ConfidenceLevel.MEDIUM
    )
    confidence_comment: Mapped[str | None] = mapped_column(String(CONFIDENCE_COMMENT_MAX_LENGTH))
    clustering_comment: Mapped[str | None] = mapped_column(String(CLUSTERING_COMMENT_MAX_LENGTH))
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    embedding: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    # Relationships
    category: Mapped[FragmentCategory] = relationship()
    fragment_links: Mapped[list[FragmentKnowledgeUnit]] = relationship(
        back_populates="knowledge_unit", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<KnowledgeUnit {self.id} {self.title!r}>"


class FragmentKnowledgeUnit(Base):
    """Membership of a fragment in a knowledge unit."""

    __tablename__ = "fragment_knowledge_units"
    __table_args__ = (
        UniqueConstraint("fragment_id", "knowledge_unit_id", name="uq_fragment_knowledge_unit"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    fragment_id: Mapped[UUID] = mapped_column(
        ForeignKey("fragments.id", ondelete="CASCADE"), nullable=False
    )
    knowledge_unit_id: Mapped[UUID] = mapped_column(
        ForeignKey("knowledge_units.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    fragment: Mapped[Fragment] = relationship(back_populates="knowledge_unit_links")
    knowledge_unit: Mapped[KnowledgeUnit] = relationship(back_populates="fragment_links")
