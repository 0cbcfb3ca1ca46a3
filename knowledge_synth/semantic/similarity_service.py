"""
Vector Similarity Search - find stored entities similar to a query embedding.

Similarity is computed in Python with numpy over the float32 embeddings
stored in the database: candidate ids and vectors are loaded, scored by cosine
similarity, and only the top matches are loaded as full entities.

Similarity is reported on [0, 1] (negative cosine values are clipped to 0).
Entities without an embedding or flagged as deleted are never returned.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar
from uuid import UUID

import numpy as np
from loguru import logger
from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from knowledge_synth.db.models import Fragment
from knowledge_synth.semantic.embedding_service import EmbeddingService

E = TypeVar("E")

DEFAULT_MIN_SIMILARITY = 0.85


@dataclass
class SimilarityMatch(Generic[E]):
    """An entity and its similarity to the query embedding."""

    entity: E
    similarity: float


class VectorSimilaritySearch:
    """
    Nearest-neighbour search over an embedded model (Fragment by default).

    Example:
        >>> search = VectorSimilaritySearch()
        >>> matches = search.find_similar(session, seed_embedding, limit=100, min_similarity=0.85)
        >>> for match in matches:
        ...     print(f"{match.entity.title}: {match.similarity:.2f}")
    """

    def __init__(self, model: Any = Fragment):
        self.model = model

    def find_similar(
        self,
        session: Session,
        embedding: np.ndarray | bytes,
        limit: int = 100,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
        exclude_id: UUID | None = None,
        extra_filter: Callable[[Select], Select] | None = None,
    ) -> list[SimilarityMatch]:
        """
        Find entities whose embedding is at least min_similarity to the query.

        Args:
            session: Active database session.
            embedding: Query vector (array or stored bytes).
            limit: Maximum number of matches.
            min_similarity: Inclusive lower bound on similarity.
            exclude_id: Entity id to leave out (typically the query's own entity).
            extra_filter: Adds further WHERE clauses to the candidate query.

        Returns:
            Matches sorted by similarity, highest first.
        """
        if isinstance(embedding, (bytes, bytearray, memoryview)):
            query = EmbeddingService.from_bytes(bytes(embedding))
        else:
            query = np.asarray(embedding, dtype=np.float32)

        query_norm = np.linalg.norm(query)
        if query_norm == 0 or limit <= 0:
            return []

        model = self.model
        stmt = select(model.id, model.embedding).where(
            model.embedding.is_not(None),
            model.is_deleted.is_(False),
        )
        if exclude_id is not None:
            stmt = stmt.where(model.id != exclude_id)
        if extra_filter is not None:
            stmt = extra_filter(stmt)

        ids = []
        vectors = []
        for row in session.execute(stmt):
            vector = EmbeddingService.from_bytes(row.embedding)
            if vector.shape != query.shape:
                logger.warning(
                    "Skipping {} {}: embedding dimension {} does not match query dimension {}",
                    model.__name__,
                    row.id,
                    vector.shape[0],
                    query.shape[0],
                )
                continue
            ids.append(row.id)
            vectors.append(vector)

        if not vectors:
            return []

        matrix = np.vstack(vectors)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = np.inf
        similarities = np.clip(matrix @ query / (norms * query_norm), 0.0, 1.0)

        order = np.argsort(-similarities, kind="stable")
        selected = [
            (ids[i], float(similarities[i]))
            for i in order
            if similarities[i] >= min_similarity
        ][:limit]
        if not selected:
            return []

        entities = {
            entity.id: entity
            for entity in session.scalars(
                select(model).where(model.id.in_([entity_id for entity_id, _ in selected]))
            )
        }
        matches = [
            SimilarityMatch(entity=entities[entity_id], similarity=score)
            for entity_id, score in selected
            if entity_id in entities
        ]
        logger.debug(f"Found {len(matches)} matches above {min_similarity} (limit {limit})")
        return matches
