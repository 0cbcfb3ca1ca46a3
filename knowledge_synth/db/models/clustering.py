"""
Offline clustering sessions and the clusters they produce.

Cluster membership is written once by the clustering service; the synthesis
pipeline only reads it and records its own comment per cluster.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Table,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, utcnow

if TYPE_CHECKING:
    from .fragments import Fragment


class ClusteringMethod(str, enum.Enum):
    KMEANS_HAC = "KMeansHac"


class LinkageMethod(str, enum.Enum):
    AVERAGE = "average"
    COMPLETE = "complete"
    SINGLE = "single"
    WARD = "ward"


class ClusteringStatus(str, enum.Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


cluster_fragments = Table(
    "cluster_fragments",
    Base.metadata,
    Column("cluster_id", ForeignKey("clusters.id", ondelete="CASCADE"), primary_key=True),
    Column("fragment_id", ForeignKey("fragments.id", ondelete="CASCADE"), primary_key=True),
)


class ClusteringSession(Base):
    """One run of the offline K-means + agglomerative clustering."""

    __tablename__ = "clustering_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    method: Mapped[ClusteringMethod] = mapped_column(
        Enum(ClusteringMethod, native_enum=False, length=20), default=ClusteringMethod.KMEANS_HAC
    )
    linkage: Mapped[LinkageMethod] = mapped_column(
        Enum(LinkageMethod, native_enum=False, length=20), default=LinkageMethod.AVERAGE
    )
    distance_threshold: Mapped[float] = mapped_column(Float, nullable=False)
    min_cluster_size: Mapped[int] = mapped_column(Integer, default=2)
    max_cluster_size: Mapped[int | None] = mapped_column(Integer)
    fragment_count: Mapped[int] = mapped_column(Integer, default=0)
    cluster_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[ClusteringStatus] = mapped_column(
        Enum(ClusteringStatus, native_enum=False, length=20), default=ClusteringStatus.PENDING
    )
    status_message: Mapped[str | None] = mapped_column(String(2000))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    clusters: Mapped[list[Cluster]] = relationship(
        back_populates="clustering_session",
        cascade="all, delete-orphan",
        order_by="Cluster.cluster_number",
    )


class Cluster(Base):
    """A group of similar fragments found by a clustering session."""

    __tablename__ = "clusters"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    clustering_session_id: Mapped[UUID] = mapped_column(
        ForeignKey("clustering_sessions.id", ondelete="CASCADE"), nullable=False
    )
    cluster_number: Mapped[int] = mapped_column(Integer, nullable=False)
    fragment_count: Mapped[int] = mapped_column(Integer, default=0)
    centroid: Mapped[bytes | None] = mapped_column(LargeBinary)
    intra_cluster_distance: Mapped[float | None] = mapped_column(Float)
    clustering_comment: Mapped[str | None] = mapped_column(String(2000))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    clustering_session: Mapped[ClusteringSession] = relationship(back_populates="clusters")
    fragments: Mapped[list[Fragment]] = relationship(
        secondary=cluster_fragments, back_populates="clusters"
    )
