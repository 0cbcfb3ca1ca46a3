"""
Fragment Clustering Service - Offline two-stage clustering of embedded fragments.

Stage 1 keeps the problem tractable: any bucket larger than max_bucket_size is
split with K-means into roughly target_bucket_size pieces, repeatedly, until
every bucket is small enough. Stage 2 runs agglomerative (hierarchical)
clustering with a cosine distance threshold inside each bucket.

Clusters outside [min_cluster_size, max_cluster_size] are discarded. The
result is persisted as a ClusteringSession with numbered Cluster rows that the
cluster traversal job later consumes largest-first.

References:
- https://scikit-learn.org/stable/modules/clustering.html#hierarchical-clustering
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from uuid import UUID

import numpy as np
from loguru import logger
from sklearn.cluster import AgglomerativeClustering, KMeans
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from knowledge_synth.db.models import (
    Cluster,
    ClusteringSession,
    ClusteringStatus,
    Fragment,
    LinkageMethod,
)
from knowledge_synth.db.models.base import utcnow
from knowledge_synth.semantic.embedding_service import EmbeddingService


def _or_default(value, default):
    return default if value is None else value


@dataclass
class ClusterResult:
    """A cluster found in one bucket, before persistence."""

    cluster_number: int
    fragment_ids: list[UUID]
    centroid: np.ndarray
    intra_cluster_distance: float

    @property
    def size(self) -> int:
        return len(self.fragment_ids)


class FragmentClusteringService:
    """
    Group embedded fragments into clusters with K-means bucketing + HAC.

    Example:
        >>> service = FragmentClusteringService()
        >>> clustering_session = service.create_session(db_session)
        >>> clusters = service.perform_clustering(db_session, clustering_session)
        >>> print(f"{len(clusters)} clusters")
    """

    def __init__(
        self,
        max_bucket_size: int | None = None,
        target_bucket_size: int | None = None,
        random_state: int = 42,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.settings = settings
        self.max_bucket_size = _or_default(max_bucket_size, settings.session_max_bucket_size)
        self.target_bucket_size = _or_default(target_bucket_size, settings.session_target_bucket_size)
        self.random_state = random_state

    def create_session(
        self,
        session: Session,
        distance_threshold: float | None = None,
        linkage: LinkageMethod | str | None = None,
        min_cluster_size: int | None = None,
        max_cluster_size: int | None = None,
    ) -> ClusteringSession:
        """Create a pending ClusteringSession with the given (or configured) parameters."""
        clustering_session = ClusteringSession(
            distance_threshold=_or_default(distance_threshold, self.settings.session_distance_threshold),
            linkage=LinkageMethod(_or_default(linkage, self.settings.session_linkage)),
            min_cluster_size=_or_default(min_cluster_size, self.settings.session_min_cluster_size),
            max_cluster_size=_or_default(max_cluster_size, self.settings.session_max_cluster_size),
            status=ClusteringStatus.PENDING,
        )
        session.add(clustering_session)
        session.flush()
        return clustering_session

    def perform_clustering(
        self,
        session: Session,
        clustering_session: ClusteringSession,
    ) -> list[ClusterResult]:
        """
        Cluster all embedded, non-deleted fragments into the given session.

        Returns:
            The persisted clusters, numbered from 1.
        """
        if clustering_session.status not in (ClusteringStatus.PENDING, ClusteringStatus.FAILED):
            raise ValueError(
                f"Clustering session {clustering_session.id} is {clustering_session.status.value}"
            )

        rows = session.execute(
            select(Fragment.id, Fragment.embedding).where(
                Fragment.embedding.is_not(None),
                Fragment.is_deleted.is_(False),
            )
        ).all()
        fragment_ids = [row.id for row in rows]
        logger.info(f"Clustering {len(fragment_ids)} fragments (session {clustering_session.id})")

        results: list[ClusterResult] = []
        if len(fragment_ids) >= 2:
            matrix = np.vstack([EmbeddingService.from_bytes(row.embedding) for row in rows])
            results = self.cluster_embeddings(
                fragment_ids,
                matrix,
                distance_threshold=clustering_session.distance_threshold,
                linkage=clustering_session.linkage,
                min_cluster_size=clustering_session.min_cluster_size,
                max_cluster_size=clustering_session.max_cluster_size,
            )

        fragments_by_id = {
            fragment.id: fragment
            for fragment in session.scalars(
                select(Fragment).where(
                    Fragment.id.in_([fid for result in results for fid in result.fragment_ids])
                )
            )
        }
        for result in results:
            session.add(
                Cluster(
                    clustering_session_id=clustering_session.id,
                    cluster_number=result.cluster_number,
                    fragment_count=result.size,
                    centroid=EmbeddingService.to_bytes(result.centroid),
                    intra_cluster_distance=result.intra_cluster_distance,
                    fragments=[fragments_by_id[fid] for fid in result.fragment_ids],
                )
            )

        clustering_session.fragment_count = len(fragment_ids)
        clustering_session.cluster_count = len(results)
        clustering_session.status = ClusteringStatus.COMPLETED
        clustering_session.status_message = (
            f"Found {len(results)} clusters covering "
            f"{sum(result.size for result in results)} of {len(fragment_ids)} fragments"
        )
        clustering_session.completed_at = utcnow()
        session.flush()

        logger.info(clustering_session.status_message)
        return results

    def mark_failed(self, session: Session, clustering_session_id: UUID, error: Exception) -> None:
        clustering_session = session.get(ClusteringSession, clustering_session_id)
        if clustering_session is None:
            return
        clustering_session.status = ClusteringStatus.FAILED
        clustering_session.status_message = str(error)[:2000]
        clustering_session.completed_at = utcnow()

    def cluster_embeddings(
        self,
        fragment_ids: list[UUID],
        matrix: np.ndarray,
        distance_threshold: float,
        linkage: LinkageMethod = LinkageMethod.AVERAGE,
        min_cluster_size: int = 2,
        max_cluster_size: int | None = None,
    ) -> list[ClusterResult]:
        """
        Run both clustering stages over an embedding matrix.

        Args:
            fragment_ids: Row ids aligned with matrix rows.
            matrix: One embedding per row.
            distance_threshold: Cosine distance above which clusters are not merged.
            linkage: Agglomerative linkage criterion.
            min_cluster_size: Smallest cluster kept.
            max_cluster_size: Largest cluster kept (None = unbounded).
        """
        results: list[ClusterResult] = []
        for bucket in self._bucket(matrix):
            for members in self._agglomerate(matrix, bucket, distance_threshold, linkage):
                if len(members) < min_cluster_size:
                    continue
                if max_cluster_size is not None and len(members) > max_cluster_size:
                    logger.debug(f"Discarding cluster of {len(members)} (max {max_cluster_size})")
                    continue
                vectors = matrix[members]
                centroid = vectors.mean(axis=0).astype(np.float32)
                distances = [
                    1.0 - EmbeddingService.cosine_similarity(vector, centroid) for vector in vectors
                ]
                results.append(
                    ClusterResult(
                        cluster_number=len(results) + 1,
                        fragment_ids=[fragment_ids[i] for i in members],
                        centroid=centroid,
                        intra_cluster_distance=float(np.mean(distances)),
                    )
                )
        return results

    def _bucket(self, matrix: np.ndarray) -> list[np.ndarray]:
        """Stage 1: split oversized index sets with K-means until each fits."""
        queue = deque([np.arange(len(matrix))])
        buckets = []
        while queue:
            indices = queue.popleft()
            if len(indices) <= self.max_bucket_size:
                buckets.append(indices)
                continue

            n_clusters = max(2, math.ceil(len(indices) / self.target_bucket_size))
            kmeans = KMeans(n_clusters=n_clusters, random_state=self.random_state, n_init=10)
            labels = kmeans.fit_predict(matrix[indices])
            parts = [indices[labels == label] for label in np.unique(labels)]
            if len(parts) == 1:
                # K-means could not separate the points; accept the oversized bucket
                buckets.append(indices)
                continue
            queue.extend(part for part in parts if len(part))

        logger.debug(f"Bucketed {len(matrix)} embeddings into {len(buckets)} buckets")
        return buckets

    @staticmethod
    def _agglomerate(
        matrix: np.ndarray,
        bucket: np.ndarray,
        distance_threshold: float,
        linkage: LinkageMethod,
    ) -> list[np.ndarray]:
        """Stage 2: threshold-based hierarchical clustering inside one bucket."""
        if len(bucket) < 2:
            return [bucket]

        vectors = matrix[bucket]
        if linkage == LinkageMethod.WARD:
            # Ward needs euclidean distances; on unit vectors they order like cosine
            norms = np.linalg.norm(vectors, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            vectors = vectors / norms
            metric = "euclidean"
        else:
            metric = "cosine"

        model = AgglomerativeClustering(
            n_clusters=None,
            distance_threshold=distance_threshold,
            metric=metric,
            linkage=linkage.value,
        )
        labels = model.fit_predict(vectors)
        return [bucket[labels == label] for label in np.unique(labels)]
