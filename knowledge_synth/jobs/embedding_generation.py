"""
Embedding backfill jobs for fragments and knowledge units.

One run embeds one batch in one transaction. When the batch was full the job
schedules its next run after a short delay (outside the transaction), unless
it was asked to embed one specific entity.
"""
from __future__ import annotations

from uuid import UUID

from config import Settings
from knowledge_synth.db.models import Fragment, KnowledgeUnit
from knowledge_synth.jobs.base import BaseJob
from knowledge_synth.jobs.context import JobContext
from knowledge_synth.jobs.executor import TransactionalExecutor
from knowledge_synth.semantic.batch_embedding import BatchEmbeddingProcessor, BatchEmbeddingResult


class _EmbeddingJob(BaseJob):
    model: type

    def __init__(
        self,
        executor: TransactionalExecutor,
        processor: BatchEmbeddingProcessor,
        settings: Settings | None = None,
    ):
        super().__init__(executor, settings)
        self.processor = processor

    def _embed_batch(self, context: JobContext, extra_filter=None) -> BatchEmbeddingResult:
        batch_size = self.settings.embedding_batch_size
        return self.executor.run_in_transaction(
            lambda session: self.processor.embed_pending(session, self.model, batch_size, extra_filter),
            log=context.log,
        )

    def _requeue_if_full(self, context: JobContext, result: BatchEmbeddingResult, targeted: bool, **kwargs) -> bool:
        if targeted or not result.batch_was_full:
            return False
        delay = self.settings.embedding_requeue_delay_seconds
        context.scheduler.schedule(self.invocation(**kwargs), delay)
        context.log.info("Batch was full, next {} batch scheduled in {}s", self.model.__name__, delay)
        return True


class FragmentEmbeddingJob(_EmbeddingJob):
    """Backfill fragment embeddings, optionally for one source or one fragment."""

    name = "embedding.fragments"
    model = Fragment

    def run(
        self,
        context: JobContext,
        source_id: str | None = None,
        fragment_id: str | None = None,
    ) -> BatchEmbeddingResult:
        def narrow(stmt):
            if source_id is not None:
                stmt = stmt.where(Fragment.source_id == UUID(source_id))
            if fragment_id is not None:
                stmt = stmt.where(Fragment.id == UUID(fragment_id))
            return stmt

        result = self._embed_batch(context, narrow)
        context.log.info("Embedded {} fragments", result.records_processed)
        self._requeue_if_full(
            context, result, targeted=fragment_id is not None, source_id=source_id
        )
        return result


class KnowledgeUnitEmbeddingJob(_EmbeddingJob):
    """Backfill knowledge unit embeddings, optionally for one knowledge unit."""

    name = "embedding.knowledge_units"
    model = KnowledgeUnit

    def run(self, context: JobContext, knowledge_unit_id: str | None = None) -> BatchEmbeddingResult:
        def narrow(stmt):
            if knowledge_unit_id is not None:
                stmt = stmt.where(KnowledgeUnit.id == UUID(knowledge_unit_id))
            return stmt

        result = self._embed_batch(context, narrow)
        context.log.info("Embedded {} knowledge units", result.records_processed)
        self._requeue_if_full(context, result, targeted=knowledge_unit_id is not None)
        return result
