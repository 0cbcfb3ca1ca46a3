# SQLAlchemy models
from .base import Base
from .clustering import (
    Cluster,
    ClusteringMethod,
    ClusteringSession,
    ClusteringStatus,
    LinkageMethod,
    cluster_fragments,
)
from .fragments import (
    ConfidenceLevel,
    Fragment,
    FragmentCategory,
    Source,
    SourceTag,
    SourceType,
    Speaker,
)
from .knowledge import FragmentKnowledgeUnit, KnowledgeUnit
from .prompts import AiPrompt, PromptType

__all__ = [
    "AiPrompt",
    "Base",
    "Cluster",
    "ClusteringMethod",
    "ClusteringSession",
    "ClusteringStatus",
    "ConfidenceLevel",
    "Fragment",
    "FragmentCategory",
    "FragmentKnowledgeUnit",
    "KnowledgeUnit",
    "LinkageMethod",
    "PromptType",
    "Source",
    "SourceTag",
    "SourceType",
    "Speaker",
    "cluster_fragments",
]
