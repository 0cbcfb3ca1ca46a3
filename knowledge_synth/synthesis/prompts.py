"""
Prompt loading - assemble synthesis guidance from operator-maintained prompt rows.

The primary clustering prompt and the fragment weighting prompt are required;
a missing one raises ConfigurationError, which fails the job without retries.
Organization context and per-category guidance are optional.
"""
from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from knowledge_synth.db.models import AiPrompt, FragmentCategory, PromptType
from knowledge_synth.errors import ConfigurationError
from knowledge_synth.synthesis.schemas import CategoryDefinition, FragmentClusteringGuidance


def get_prompt(session: Session, prompt_type: PromptType, required: bool = True) -> str | None:
    """Return the content of the global (category-less) prompt of a type."""
    content = session.scalars(
        select(AiPrompt.content).where(
            AiPrompt.prompt_type == prompt_type,
            AiPrompt.category_id.is_(None),
        )
    ).first()
    if content is None and required:
        raise ConfigurationError(
            f"Prompt {prompt_type.value} is not configured in the database"
        )
    return content


def load_clustering_guidance(
    session: Session,
    primary_prompt_type: PromptType,
    category_ids: Iterable[UUID],
) -> FragmentClusteringGuidance:
    """
    Build the system prompt payload for one synthesis call.

    Args:
        session: Active database session.
        primary_prompt_type: FRAGMENT_CLUSTERING for the incremental path,
            KNOWLEDGE_UNIT_CLUSTERING for cluster traversal.
        category_ids: Categories of the participating fragments.
    """
    primary = get_prompt(session, primary_prompt_type)
    weighting = get_prompt(session, PromptType.FRAGMENT_WEIGHTING)
    organization = get_prompt(session, PromptType.ORGANIZATION_CONTEXT, required=False)

    category_ids = set(category_ids)
    definitions = []
    if category_ids:
        categories = session.scalars(
            select(FragmentCategory)
            .where(FragmentCategory.id.in_(category_ids))
            .order_by(FragmentCategory.name)
        ).all()
        guidance_by_category = dict(
            session.execute(
                select(AiPrompt.category_id, AiPrompt.content).where(
                    AiPrompt.prompt_type == PromptType.CATEGORY_GUIDANCE,
                    AiPrompt.category_id.in_(category_ids),
                )
            ).tuples().all()
        )
        definitions = [
            CategoryDefinition(
                name=category.name,
                guidance=guidance_by_category.get(category.id) or category.description,
            )
            for category in categories
        ]

    return FragmentClusteringGuidance(
        primary_guidance=primary,
        fragment_weighting=weighting,
        organization_context=organization,
        category_definitions=definitions,
    )
