"""
Job registry - maps job names to job instances and wires their collaborators.
"""
from __future__ import annotations

from collections.abc import Callable
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from config import Settings, get_settings
from knowledge_synth.errors import ConfigurationError
from knowledge_synth.jobs.clustering_session import ClusteringSessionJob
from knowledge_synth.jobs.embedding_generation import FragmentEmbeddingJob, KnowledgeUnitEmbeddingJob
from knowledge_synth.jobs.executor import TransactionalExecutor
from knowledge_synth.jobs.knowledge_unit_clustering import KnowledgeUnitClusteringJob
from knowledge_synth.jobs.knowledge_unit_generator import KnowledgeUnitGeneratorJob
from knowledge_synth.semantic.batch_embedding import BatchEmbeddingProcessor
from knowledge_synth.semantic.clustering_service import FragmentClusteringService
from knowledge_synth.semantic.embedding_service import EmbeddingService
from knowledge_synth.synthesis.ai_service import GeminiSynthesisClient, SynthesisClient
from knowledge_synth.synthesis.knowledge_units import KnowledgeUnitSynthesizer


class JobRegistry:
    """Name -> callable(context, **kwargs)."""

    def __init__(self) -> None:
        self._jobs: dict[str, Callable[..., Any]] = {}

    def register(self, name: str, job: Callable[..., Any]) -> None:
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        self._jobs[name] = job

    def get(self, name: str) -> Callable[..., Any]:
        try:
            return self._jobs[name]
        except KeyError:
            raise ConfigurationError(f"Unknown job: {name}") from None

    def names(self) -> list[str]:
        return sorted(self._jobs)

    def __contains__(self, name: str) -> bool:
        return name in self._jobs


def build_registry(
    session_factory: Callable[[], Session] | None = None,
    embedding_service: EmbeddingService | None = None,
    synthesis_client: SynthesisClient | None = None,
    settings: Settings | None = None,
) -> JobRegistry:
    """
    Create every pipeline job with shared collaborators.

    Collaborators default to the configured database, embedding provider and
    Gemini client; tests pass in-memory or fake ones.
    """
    settings = settings or get_settings()
    if session_factory is None:
        from knowledge_synth.db.database import get_session_factory

        session_factory = get_session_factory()

    executor = TransactionalExecutor(session_factory, settings.job_isolation_level)
    processor = BatchEmbeddingProcessor(embedding_service or EmbeddingService())
    synthesizer = KnowledgeUnitSynthesizer(synthesis_client or GeminiSynthesisClient())

    registry = JobRegistry()
    for job in (
        FragmentEmbeddingJob(executor, processor, settings),
        KnowledgeUnitEmbeddingJob(executor, processor, settings),
        KnowledgeUnitClusteringJob(executor, synthesizer, settings=settings),
        KnowledgeUnitGeneratorJob(executor, synthesizer, settings),
        ClusteringSessionJob(executor, FragmentClusteringService(settings=settings), settings),
    ):
        registry.register(job.name, job)

    logger.debug(f"Registered jobs: {', '.join(registry.names())}")
    return registry
