"""
Incremental clustering job - grow knowledge units seed by seed.

Each iteration is one transaction:

1. Claim the next seed: an embedded, unprocessed, non-deleted fragment
   (newest first by default).
2. Find unprocessed fragments at least `clustering_min_similarity` similar
   to it (at most `clustering_candidate_limit`).
3. No candidates: mark the seed processed and move on.
4. Otherwise synthesize knowledge units from seed + candidates; every
   participant ends up processed whatever the model proposed.

After each committed iteration an embedding continuation is registered for
every new knowledge unit. When the time budget runs out the job continues
with another run of itself.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings
from knowledge_synth.db.models import Fragment, PromptType
from knowledge_synth.jobs.base import BaseJob
from knowledge_synth.jobs.batch_loop import LoopResult
from knowledge_synth.jobs.context import JobContext
from knowledge_synth.jobs.embedding_generation import KnowledgeUnitEmbeddingJob
from knowledge_synth.jobs.executor import TransactionalExecutor
from knowledge_synth.semantic.similarity_service import VectorSimilaritySearch
from knowledge_synth.synthesis.knowledge_units import (
    KnowledgeUnitSynthesizer,
    SynthesisOutcome,
    mark_processed,
    with_fragment_context,
)


class KnowledgeUnitClusteringJob(BaseJob):
    name = "clustering.incremental"

    def __init__(
        self,
        executor: TransactionalExecutor,
        synthesizer: KnowledgeUnitSynthesizer,
        search: VectorSimilaritySearch | None = None,
        settings: Settings | None = None,
    ):
        super().__init__(executor, settings)
        self.synthesizer = synthesizer
        self.search = search or VectorSimilaritySearch(Fragment)

    def run(self, context: JobContext, **kwargs: Any) -> LoopResult:
        seeds = 0
        created = 0

        def iteration() -> bool:
            nonlocal seeds, created
            outcome = self.executor.run_in_transaction(
                lambda session: self.process_next_seed(session, context.log),
                log=context.log,
            )
            if outcome is None:
                return False

            seeds += 1
            for unit_id in outcome.created_unit_ids:
                created += 1
                context.scheduler.continue_job_with(
                    context.job_id,
                    KnowledgeUnitEmbeddingJob.invocation(knowledge_unit_id=str(unit_id)),
                )
            return True

        result = self.time_budget_controller().run(iteration, context.cancel_event)
        context.log.info(
            "Incremental clustering finished ({}): {} seeds, {} knowledge units in {:.1f}s",
            result.exit_reason.value,
            seeds,
            created,
            result.elapsed_seconds,
        )
        if result.work_may_remain:
            context.scheduler.continue_job_with(context.job_id, self.invocation())
            context.log.info("Time budget exhausted, continuation enqueued")
        return result

    def claim_seed(self, session: Session) -> Fragment | None:
        """Next embedded fragment that has not been processed yet."""
        created_order = (
            Fragment.created_at.asc()
            if self.settings.clustering_seed_order == "oldest"
            else Fragment.created_at.desc()
        )
        return session.scalars(
            select(Fragment)
            .where(
                Fragment.embedding.is_not(None),
                Fragment.clustering_processed.is_(None),
                Fragment.is_deleted.is_(False),
            )
            .order_by(created_order, Fragment.id)
            .limit(1)
        ).first()

    def process_next_seed(self, session: Session, log: Any) -> SynthesisOutcome | None:
        """
        Run one clustering iteration inside the caller's transaction.

        Returns:
            None when no seed was left, otherwise the synthesis outcome.
        """
        seed = self.claim_seed(session)
        if seed is None:
            return None

        matches = self.search.find_similar(
            session,
            seed.embedding,
            limit=self.settings.clustering_candidate_limit,
            min_similarity=self.settings.clustering_min_similarity,
            exclude_id=seed.id,
            extra_filter=lambda stmt: stmt.where(Fragment.clustering_processed.is_(None)),
        )
        if not matches:
            log.info("No similar fragments for {}, marking it processed", seed.id)
            mark_processed([seed])
            return SynthesisOutcome(processed_fragment_ids=[seed.id])

        ordered_ids = [seed.id] + [match.entity.id for match in matches]
        loaded = {
            fragment.id: fragment
            for fragment in session.scalars(
                with_fragment_context(select(Fragment).where(Fragment.id.in_(ordered_ids)))
            )
        }
        participants = [loaded[fragment_id] for fragment_id in ordered_ids if fragment_id in loaded]
        log.info("Seed {} has {} similar fragments", seed.id, len(participants) - 1)

        return self.synthesizer.synthesize(
            session,
            participants,
            PromptType.FRAGMENT_CLUSTERING,
            seed=seed,
            log=log,
        )
