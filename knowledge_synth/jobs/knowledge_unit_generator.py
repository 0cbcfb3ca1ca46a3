"""
Cluster traversal job - synthesize knowledge units from a completed clustering session.

Clusters are visited largest first (by fragment_count), skipping clusters
whose fragments are all processed already. Only the unprocessed fragments of
the chosen cluster take part, so a cluster partially consumed by the
incremental path is finished, never re-synthesized.
"""
from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings
from knowledge_synth.db.models import (
    Cluster,
    ClusteringSession,
    ClusteringStatus,
    Fragment,
    PromptType,
    cluster_fragments,
)
from knowledge_synth.db.models.knowledge import CLUSTERING_COMMENT_MAX_LENGTH
from knowledge_synth.jobs.base import BaseJob
from knowledge_synth.jobs.batch_loop import LoopResult
from knowledge_synth.jobs.context import JobContext
from knowledge_synth.jobs.embedding_generation import KnowledgeUnitEmbeddingJob
from knowledge_synth.jobs.executor import TransactionalExecutor
from knowledge_synth.synthesis.knowledge_units import (
    KnowledgeUnitSynthesizer,
    SynthesisOutcome,
    mark_processed,
    truncate,
    with_fragment_context,
)


def _eligible(stmt):
    return stmt.where(
        Fragment.embedding.is_not(None),
        Fragment.clustering_processed.is_(None),
        Fragment.is_deleted.is_(False),
    )


class KnowledgeUnitGeneratorJob(BaseJob):
    name = "clustering.generate"

    def __init__(
        self,
        executor: TransactionalExecutor,
        synthesizer: KnowledgeUnitSynthesizer,
        settings: Settings | None = None,
    ):
        super().__init__(executor, settings)
        self.synthesizer = synthesizer

    def run(self, context: JobContext, clustering_session_id: str) -> LoopResult | None:
        session_id = UUID(clustering_session_id)
        status = self.executor.run_without_transaction(
            lambda session: session.scalar(
                select(ClusteringSession.status).where(ClusteringSession.id == session_id)
            )
        )
        if status != ClusteringStatus.COMPLETED:
            context.log.warning(
                "Clustering session {} is not completed ({}), nothing to traverse",
                session_id,
                status.value if status else "missing",
            )
            return None

        clusters = 0
        created = 0

        def iteration() -> bool:
            nonlocal clusters, created
            outcome = self.executor.run_in_transaction(
                lambda session: self.process_next_cluster(session, session_id, context.log),
                log=context.log,
            )
            if outcome is None:
                return False
            clusters += 1
            created += outcome.created_count
            return True

        result = self.time_budget_controller().run(iteration, context.cancel_event)
        context.log.info(
            "Cluster traversal of session {} finished ({}): {} clusters, {} knowledge units",
            session_id,
            result.exit_reason.value,
            clusters,
            created,
        )

        if created:
            context.scheduler.continue_job_with(context.job_id, KnowledgeUnitEmbeddingJob.invocation())
        if result.work_may_remain:
            context.scheduler.continue_job_with(
                context.job_id, self.invocation(clustering_session_id=clustering_session_id)
            )
        return result

    def next_cluster(self, session: Session, clustering_session_id: UUID) -> Cluster | None:
        """Largest cluster of the session that still has an unprocessed fragment."""
        has_unprocessed = _eligible(
            select(cluster_fragments.c.fragment_id)
            .join(Fragment, Fragment.id == cluster_fragments.c.fragment_id)
            .where(cluster_fragments.c.cluster_id == Cluster.id)
        ).exists()
        return session.scalars(
            select(Cluster)
            .where(Cluster.clustering_session_id == clustering_session_id, has_unprocessed)
            .order_by(Cluster.fragment_count.desc(), Cluster.cluster_number)
            .limit(1)
        ).first()

    def process_next_cluster(
        self,
        session: Session,
        clustering_session_id: UUID,
        log: Any,
    ) -> SynthesisOutcome | None:
        cluster = self.next_cluster(session, clustering_session_id)
        if cluster is None:
            return None

        participants = session.scalars(
            with_fragment_context(
                _eligible(
                    select(Fragment)
                    .join(cluster_fragments, cluster_fragments.c.fragment_id == Fragment.id)
                    .where(cluster_fragments.c.cluster_id == cluster.id)
                ).order_by(Fragment.created_at, Fragment.id)
            )
        ).all()
        log.info(
            "Cluster #{} ({} fragments): {} unprocessed",
            cluster.cluster_number,
            cluster.fragment_count,
            len(participants),
        )

        if len(participants) < 2:
            mark_processed(participants)
            return SynthesisOutcome(processed_fragment_ids=[fragment.id for fragment in participants])

        outcome = self.synthesizer.synthesize(
            session,
            participants,
            PromptType.KNOWLEDGE_UNIT_CLUSTERING,
            log=log,
        )
        if outcome.message:
            cluster.clustering_comment = truncate(outcome.message, CLUSTERING_COMMENT_MAX_LENGTH)
        return outcome
