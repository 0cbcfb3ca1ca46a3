from __future__ import annotations

import enum
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Enum, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, utcnow
from .fragments import FragmentCategory


class PromptType(str, enum.Enum):
    """Kinds of editable prompt text used to guide synthesis."""

    FRAGMENT_CLUSTERING = "FragmentClustering"
    KNOWLEDGE_UNIT_CLUSTERING = "KnowledgeUnitClustering"
    FRAGMENT_WEIGHTING = "FragmentWeighting"
    CATEGORY_GUIDANCE = "CategoryGuidance"
    ORGANIZATION_CONTEXT = "OrganizationContext"


class AiPrompt(Base):
    """Operator-maintained prompt text. Category guidance rows carry a category."""

    __tablename__ = "ai_prompts"
    __table_args__ = (UniqueConstraint("prompt_type", "category_id", name="uq_ai_prompt_type_category"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    prompt_type: Mapped[PromptType] = mapped_column(
        Enum(PromptType, native_enum=False, length=40), nullable=False
    )
    category_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("fragment_categories.id", ondelete="CASCADE")
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    category: Mapped[FragmentCategory | None] = relationship()
