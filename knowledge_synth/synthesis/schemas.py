"""
Request/response contract between the pipeline and the AI synthesis collaborator.

Fragments are presented to the model under small integer aliases (1..N)
instead of their database ids; proposals refer back to those aliases.
"""
from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from knowledge_synth.db.models import ConfidenceLevel

# ========================================
# Request Models
# ========================================


class CategoryDefinition(BaseModel):
    """A category the model may assign, with its guidance text."""

    name: str
    guidance: Optional[str] = None


class FragmentClusteringGuidance(BaseModel):
    """System prompt payload."""

    primary_guidance: str
    fragment_weighting: Optional[str] = None
    organization_context: Optional[str] = None
    category_definitions: list[CategoryDefinition] = Field(default_factory=list)


class TagData(BaseModel):
    tag_type: str
    value: str


class SourceContext(BaseModel):
    """Provenance of a fragment, used by the model to weigh it."""

    name: Optional[str] = None
    occurred_on: Optional[date] = None
    source_type: Optional[str] = None
    scope: Optional[str] = Field(None, description="Internal or External")
    primary_speaker: Optional[str] = None
    speaker_trust_level: Optional[str] = None
    tags: list[TagData] = Field(default_factory=list)


class ClusteringFragment(BaseModel):
    """A fragment as presented to the model."""

    id: int = Field(description="Integer alias, unique within one request")
    title: str
    summary: Optional[str] = None
    category: str
    content: str
    confidence: Optional[str] = None
    confidence_comment: Optional[str] = None
    source: Optional[SourceContext] = None


class FragmentClusteringRequest(BaseModel):
    """User prompt payload."""

    fragments: list[ClusteringFragment]
    seed_fragment_id: Optional[int] = Field(
        None, description="Alias of the fragment the similarity search started from"
    )


# ========================================
# Response Models
# ========================================


class ProposedKnowledgeUnit(BaseModel):
    """One knowledge unit proposed by the model."""

    fragment_ids: list[int] = Field(default_factory=list)
    title: str = ""
    summary: str = ""
    category: str = ""
    content: str = ""
    confidence: ConfidenceLevel = ConfidenceLevel.UNCLEAR
    confidence_comment: Optional[str] = None
    clustering_rationale: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _parse_confidence(cls, value):
        """Accept any casing; unknown values become Unclear."""
        if isinstance(value, ConfidenceLevel):
            return value
        if isinstance(value, str):
            for level in ConfidenceLevel:
                if value.strip().lower() in (level.value.lower(), level.name.lower()):
                    return level
        return ConfidenceLevel.UNCLEAR


class ExcludedFragment(BaseModel):
    fragment_id: int
    reason: Optional[str] = None


class FragmentClusteringResponse(BaseModel):
    """Model output. An empty knowledge_units list is a valid answer."""

    knowledge_units: list[ProposedKnowledgeUnit] = Field(default_factory=list)
    excluded_fragments: list[ExcludedFragment] = Field(default_factory=list)
    message: Optional[str] = None
