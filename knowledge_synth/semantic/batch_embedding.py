"""
Batch Embedding Processor - Backfill embeddings for fragments and knowledge units.

Each call embeds at most one batch: the oldest non-deleted rows without an
embedding, optionally restricted by extra filters. The whole batch is sent to
the embedding provider in a single call and vectors are assigned back by
position. The caller owns the transaction and decides whether to run again
(a full batch means more rows may be waiting).
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from knowledge_synth.semantic.embedding_service import EmbeddingService


@dataclass
class BatchEmbeddingResult:
    """Statistics for one embedded batch."""

    model_name: str
    batch_size: int
    embedded_ids: list[UUID] = field(default_factory=list)

    @property
    def records_processed(self) -> int:
        return len(self.embedded_ids)

    @property
    def batch_was_full(self) -> bool:
        return self.records_processed >= self.batch_size


class BatchEmbeddingProcessor:
    """
    Generate embeddings for one batch of pending rows of an embedded model.

    Example:
        >>> processor = BatchEmbeddingProcessor(EmbeddingService())
        >>> result = processor.embed_pending(session, Fragment, batch_size=100)
        >>> print(f"Embedded {result.records_processed} fragments")
    """

    def __init__(self, embedding_service: EmbeddingService | None = None):
        self.embedding_service = embedding_service or EmbeddingService()

    def embed_pending(
        self,
        session: Session,
        model: Any,
        batch_size: int,
        extra_filter: Callable[[Select], Select] | None = None,
    ) -> BatchEmbeddingResult:
        """
        Embed up to batch_size rows of model lacking an embedding.

        Args:
            session: Session of the caller's transaction.
            model: Mapped class with title, summary, content and embedding columns.
            batch_size: Maximum rows to embed.
            extra_filter: Narrows the selection (e.g. to one source).

        Raises:
            EmbeddingError: Provider result count or dimension mismatch; nothing is assigned.
        """
        stmt = (
            select(model)
            .where(model.embedding.is_(None), model.is_deleted.is_(False))
            .order_by(model.created_at.asc(), model.id)
            .limit(batch_size)
        )
        if extra_filter is not None:
            stmt = extra_filter(stmt)

        rows = session.scalars(stmt).all()
        result = BatchEmbeddingResult(
            model_name=self.embedding_service.model_name,
            batch_size=batch_size,
        )
        if not rows:
            logger.debug(f"No {model.__name__} rows waiting for embeddings")
            return result

        texts = [
            EmbeddingService.build_embedding_text(row.title, row.summary, row.content)
            for row in rows
        ]
        vectors = self.embedding_service.embed_texts(texts)

        for row, vector in zip(rows, vectors):
            row.embedding = EmbeddingService.to_bytes(vector)
            result.embedded_ids.append(row.id)

        session.flush()
        logger.info(
            f"Embedded {result.records_processed} {model.__name__} rows with {result.model_name}"
        )
        return result
