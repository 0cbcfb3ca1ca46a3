"""
Clustering session job - run the offline clustering and hand the session to cluster traversal.
"""
from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from config import Settings
from knowledge_synth.db.models import ClusteringSession, ClusteringStatus
from knowledge_synth.errors import ConfigurationError
from knowledge_synth.jobs.base import BaseJob
from knowledge_synth.jobs.context import JobContext
from knowledge_synth.jobs.executor import TransactionalExecutor
from knowledge_synth.jobs.knowledge_unit_generator import KnowledgeUnitGeneratorJob
from knowledge_synth.semantic.clustering_service import FragmentClusteringService


class ClusteringSessionJob(BaseJob):
    name = "clustering.session"

    def __init__(
        self,
        executor: TransactionalExecutor,
        service: FragmentClusteringService,
        settings: Settings | None = None,
    ):
        super().__init__(executor, settings)
        self.service = service

    def run(
        self,
        context: JobContext,
        clustering_session_id: str | None = None,
        distance_threshold: float | None = None,
        linkage: str | None = None,
        generate: bool = True,
    ) -> UUID:
        """
        Cluster all embedded fragments into an existing pending or failed session.

        Without a session id a new session is created and clustered by a
        continuation of this job that carries the id, so retries of the
        clustering step reuse that session. A failure is recorded on the
        session in a separate transaction before it propagates to the scheduler.
        """
        if clustering_session_id is None:
            session_id = self.executor.run_in_transaction(
                lambda session: self.service.create_session(
                    session, distance_threshold=distance_threshold, linkage=linkage
                ).id,
                log=context.log,
            )
            context.log.info("Created clustering session {}", session_id)
            context.scheduler.continue_job_with(
                context.job_id,
                self.invocation(clustering_session_id=str(session_id), generate=generate),
            )
            return session_id

        session_id = UUID(clustering_session_id)
        try:
            cluster_count = self.executor.run_in_transaction(
                lambda session: self._cluster(session, session_id, context),
                log=context.log,
            )
        except Exception as e:
            self.executor.run_in_transaction(
                lambda session: self.service.mark_failed(session, session_id, e),
                log=context.log,
            )
            raise

        context.log.info("Clustering session {} completed with {} clusters", session_id, cluster_count)
        if generate and cluster_count:
            context.scheduler.continue_job_with(
                context.job_id,
                KnowledgeUnitGeneratorJob.invocation(clustering_session_id=str(session_id)),
            )
        return session_id

    def _cluster(self, session: Session, session_id: UUID, context: JobContext) -> int:
        clustering_session = session.get(ClusteringSession, session_id)
        if clustering_session is None:
            raise ConfigurationError(f"Clustering session {session_id} does not exist")
        if clustering_session.status == ClusteringStatus.COMPLETED:
            context.log.info("Clustering session {} already completed", session_id)
            return clustering_session.cluster_count or 0
        return len(self.service.perform_clustering(session, clustering_session))
