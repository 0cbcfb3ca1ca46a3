"""
Knowledge Unit Synthesizer - turn a group of similar fragments into knowledge units.

Shared by both clustering strategies (incremental seeds and precomputed
clusters). One call:

1. Presents the participants to the AI collaborator under integer aliases.
2. Validates every proposed unit independently. A proposal is rejected (logged,
   never fatal) when it cites fewer than two distinct fragments, cites a
   fragment outside the participant set, or names an unknown category.
3. Persists each valid proposal as a KnowledgeUnit plus one
   FragmentKnowledgeUnit per cited fragment. Text fields are trimmed and
   truncated to their column limits instead of being rejected.
4. Marks every participant processed, whatever the proposals were.

The caller owns the transaction: either all of the above is committed or none.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import Select, select
from sqlalchemy.orm import Session, selectinload

from knowledge_synth.db.models import (
    Fragment,
    FragmentCategory,
    FragmentKnowledgeUnit,
    KnowledgeUnit,
    PromptType,
    Source,
)
from knowledge_synth.db.models.base import utcnow
from knowledge_synth.db.models.fragments import (
    CONFIDENCE_COMMENT_MAX_LENGTH,
    CONTENT_MAX_LENGTH,
    SUMMARY_MAX_LENGTH,
    TITLE_MAX_LENGTH,
)
from knowledge_synth.db.models.knowledge import CLUSTERING_COMMENT_MAX_LENGTH
from knowledge_synth.synthesis.ai_service import SynthesisClient
from knowledge_synth.synthesis.prompts import load_clustering_guidance
from knowledge_synth.synthesis.schemas import (
    ClusteringFragment,
    FragmentClusteringRequest,
    ProposedKnowledgeUnit,
    SourceContext,
    TagData,
)

MIN_FRAGMENTS_PER_UNIT = 2


def truncate(value: str | None, max_length: int) -> str | None:
    """Trim whitespace and cut to max_length characters."""
    if value is None:
        return None
    return value.strip()[:max_length]


def with_fragment_context(stmt: Select) -> Select:
    """Eager-load everything the synthesis request needs from a fragment."""
    return stmt.options(
        selectinload(Fragment.category),
        selectinload(Fragment.source).selectinload(Source.primary_speaker),
        selectinload(Fragment.source).selectinload(Source.tags),
    )


def mark_processed(fragments: Sequence[Fragment]) -> int:
    """Set the processed watermark on fragments that do not carry one yet."""
    now = utcnow()
    marked = 0
    for fragment in fragments:
        if fragment.clustering_processed is None:
            fragment.clustering_processed = now
            marked += 1
    return marked


@dataclass
class SynthesisOutcome:
    """What one synthesis call produced."""

    created_unit_ids: list[UUID] = field(default_factory=list)
    rejected: list[tuple[int, str]] = field(default_factory=list)
    processed_fragment_ids: list[UUID] = field(default_factory=list)
    message: str | None = None

    @property
    def created_count(self) -> int:
        return len(self.created_unit_ids)


class KnowledgeUnitSynthesizer:
    """
    Run the synthesis contract against a set of participant fragments.

    Example:
        >>> synthesizer = KnowledgeUnitSynthesizer(GeminiSynthesisClient())
        >>> outcome = synthesizer.synthesize(session, participants, PromptType.FRAGMENT_CLUSTERING)
        >>> outcome.created_unit_ids
    """

    def __init__(self, client: SynthesisClient):
        self.client = client

    def synthesize(
        self,
        session: Session,
        participants: Sequence[Fragment],
        primary_prompt_type: PromptType,
        seed: Fragment | None = None,
        log: Any = logger,
    ) -> SynthesisOutcome:
        """
        Synthesize knowledge units from participants and mark them processed.

        Args:
            session: Session of the caller's transaction.
            participants: Fragments loaded with category and source context.
            primary_prompt_type: Which primary guidance prompt to use.
            seed: The fragment the incremental search started from, if any.
            log: Logger to report on (jobs pass their bound logger).
        """
        aliases = {alias: fragment for alias, fragment in enumerate(participants, start=1)}
        guidance = load_clustering_guidance(
            session, primary_prompt_type, {fragment.category_id for fragment in participants}
        )
        request = self.build_request(aliases, seed)

        response = self.client.synthesize(
            user_prompt=request.model_dump_json(exclude_none=True),
            system_prompt=guidance.model_dump_json(exclude_none=True),
        )

        outcome = SynthesisOutcome(message=response.message)
        categories = {
            category.name.strip().lower(): category
            for category in session.scalars(select(FragmentCategory))
        }

        for index, proposal in enumerate(response.knowledge_units, start=1):
            fragments, reason = self._resolve(proposal, aliases, categories)
            if reason is not None:
                log.warning("Rejected proposed knowledge unit #{} ({!r}): {}", index, proposal.title, reason)
                outcome.rejected.append((index, reason))
                continue

            category = categories[proposal.category.strip().lower()]
            unit = self._persist(session, proposal, fragments, category)
            log.info(
                "Created knowledge unit {} from {} fragments: {}",
                unit.id,
                len(fragments),
                unit.title,
            )
            outcome.created_unit_ids.append(unit.id)

        for excluded in response.excluded_fragments:
            fragment = aliases.get(excluded.fragment_id)
            if fragment is not None:
                log.debug("Fragment {} excluded: {}", fragment.id, excluded.reason)

        mark_processed(participants)
        outcome.processed_fragment_ids = [fragment.id for fragment in participants]
        session.flush()
        return outcome

    def build_request(
        self,
        aliases: dict[int, Fragment],
        seed: Fragment | None = None,
    ) -> FragmentClusteringRequest:
        """Present fragments under their integer aliases."""
        seed_alias = None
        fragments = []
        for alias, fragment in aliases.items():
            if seed is not None and fragment.id == seed.id:
                seed_alias = alias
            fragments.append(
                ClusteringFragment(
                    id=alias,
                    title=fragment.title,
                    summary=fragment.summary,
                    category=fragment.category.name,
                    content=fragment.content,
                    confidence=fragment.confidence.value if fragment.confidence else None,
                    confidence_comment=fragment.confidence_comment,
                    source=self._source_context(fragment.source),
                )
            )
        return FragmentClusteringRequest(fragments=fragments, seed_fragment_id=seed_alias)

    @staticmethod
    def _source_context(source: Source | None) -> SourceContext | None:
        if source is None:
            return None
        scope = None
        if source.is_internal is not None:
            scope = "Internal" if source.is_internal else "External"
        speaker = source.primary_speaker
        return SourceContext(
            name=source.name,
            occurred_on=source.occurred_on,
            source_type=source.source_type.value if source.source_type else None,
            scope=scope,
            primary_speaker=speaker.name if speaker else None,
            speaker_trust_level=speaker.trust_level if speaker else None,
            tags=[TagData(tag_type=tag.tag_type, value=tag.value) for tag in source.tags],
        )

    @staticmethod
    def _resolve(
        proposal: ProposedKnowledgeUnit,
        aliases: dict[int, Fragment],
        categories: dict[str, FragmentCategory],
    ) -> tuple[list[Fragment], str | None]:
        """Map a proposal's aliases to fragments, or return why it is invalid."""
        distinct_ids = list(dict.fromkeys(proposal.fragment_ids))
        if len(distinct_ids) < MIN_FRAGMENTS_PER_UNIT:
            return [], f"cites {len(distinct_ids)} fragment(s), at least {MIN_FRAGMENTS_PER_UNIT} required"

        unknown = [alias for alias in distinct_ids if alias not in aliases]
        if unknown:
            return [], f"cites fragments outside the participant set: {unknown}"

        if proposal.category.strip().lower() not in categories:
            return [], f"unknown category {proposal.category!r}"

        return [aliases[alias] for alias in distinct_ids], None

    @staticmethod
    def _persist(
        session: Session,
        proposal: ProposedKnowledgeUnit,
        fragments: list[Fragment],
        category: FragmentCategory,
    ) -> KnowledgeUnit:
        now = utcnow()
        unit = KnowledgeUnit(
            id=uuid4(),
            title=truncate(proposal.title, TITLE_MAX_LENGTH),
            summary=truncate(proposal.summary, SUMMARY_MAX_LENGTH),
            content=truncate(proposal.content, CONTENT_MAX_LENGTH),
            category_id=category.id,
            confidence=proposal.confidence,
            confidence_comment=truncate(proposal.confidence_comment, CONFIDENCE_COMMENT_MAX_LENGTH),
            clustering_comment=truncate(proposal.clustering_rationale, CLUSTERING_COMMENT_MAX_LENGTH),
            created_at=now,
            updated_at=now,
        )
        session.add(unit)
        for fragment in fragments:
            session.add(
                FragmentKnowledgeUnit(
                    id=uuid4(),
                    fragment_id=fragment.id,
                    knowledge_unit_id=unit.id,
                    created_at=now,
                )
            )
        return unit
