"""
Embedding Service - Generate semantic embeddings for fragments and knowledge units.

Two providers are supported:
- sentence-transformers (default): all-MiniLM-L6-v2, 384 dimensions, runs locally.
- Ollama: any embedding model served by an Ollama instance (e.g. qwen3-embedding).

Requested dimensions below the model's native size truncate the vector
(Matryoshka-style); L2 normalization is applied afterwards when enabled.
Vectors are stored as float32 bytes.

References:
- https://www.sbert.net/docs/pretrained_models.html
- https://github.com/ollama/ollama-python
"""

from __future__ import annotations

from typing import Protocol

import numpy as np
from loguru import logger
from sentence_transformers import SentenceTransformer

from config import get_settings
from knowledge_synth.errors import EmbeddingError

TEXT_SEPARATOR = "\n\n"


class EmbeddingProvider(Protocol):
    """Opaque embedding model: a batch of texts in, one vector per text out."""

    model_name: str

    def embed(self, texts: list[str], dimensions: int | None = None) -> list[np.ndarray]: ...


def _truncate(vectors: list[np.ndarray], dimensions: int | None) -> list[np.ndarray]:
    if dimensions is None:
        return vectors
    return [vector[:dimensions] for vector in vectors]


class SentenceTransformerProvider:
    """
    Local sentence-transformers model.

    The model is lazy-loaded on first use to avoid startup delays.
    """

    def __init__(self, model_name: str, batch_size: int = 32):
        self.model_name = model_name
        self.batch_size = batch_size
        self._model: SentenceTransformer | None = None

    @property
    def model(self) -> SentenceTransformer:
        """
        Lazy load the model on first use.

        The model is downloaded from HuggingFace Hub on first run.
        Subsequent runs use the cached version.
        """
        if self._model is None:
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed(self, texts: list[str], dimensions: int | None = None) -> list[np.ndarray]:
        embeddings = self.model.encode(
            texts,
            batch_size=self.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
        )
        return _truncate(list(embeddings), dimensions)


class OllamaEmbeddingProvider:
    """Embedding model served by Ollama (requires the local-ai extra)."""

    def __init__(self, model_name: str, host: str):
        self.model_name = model_name
        self.host = host
        self._client = None

    @property
    def client(self):
        """Lazy-load the Ollama client."""
        if self._client is None:
            import ollama

            self._client = ollama.Client(host=self.host)
        return self._client

    def embed(self, texts: list[str], dimensions: int | None = None) -> list[np.ndarray]:
        response = self.client.embed(model=self.model_name, input=texts)
        vectors = [np.asarray(vector, dtype=np.float32) for vector in response["embeddings"]]
        return _truncate(vectors, dimensions)


def build_provider(settings=None) -> EmbeddingProvider:
    """Create the embedding provider selected in settings."""
    settings = settings or get_settings()
    if settings.embedding_provider == "ollama":
        return OllamaEmbeddingProvider(settings.embedding_model, settings.ollama_base_url)
    return SentenceTransformerProvider(settings.embedding_model)


class EmbeddingService:
    """
    Batch embedding with result validation.

    One provider call per batch; the result must contain exactly one vector per
    input text, each with the configured dimensionality, or EmbeddingError is
    raised and nothing should be persisted.

    Example:
        >>> service = EmbeddingService()
        >>> text = EmbeddingService.build_embedding_text("Title", None, "Body")
        >>> vectors = service.embed_texts([text])
        >>> vectors[0].shape
        (384,)
    """

    def __init__(
        self,
        provider: EmbeddingProvider | None = None,
        dimension: int | None = None,
        normalize: bool | None = None,
    ):
        settings = get_settings()
        self.provider = provider or build_provider(settings)
        self.dimension = dimension or settings.embedding_dimension
        self.normalize = settings.embedding_normalize if normalize is None else normalize

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    def embed_texts(self, texts: list[str]) -> list[np.ndarray]:
        """
        Embed texts with a single provider call.

        Args:
            texts: Texts to embed, in order.

        Returns:
            float32 vectors aligned positionally with texts.

        Raises:
            EmbeddingError: When the provider returns the wrong number of
                vectors or a vector of the wrong dimensionality.
        """
        if not texts:
            return []

        logger.debug(f"Embedding {len(texts)} texts with {self.model_name}")
        vectors = self.provider.embed(texts, dimensions=self.dimension)

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding count mismatch: expected {len(texts)}, got {len(vectors)}"
            )

        results = []
        for vector in vectors:
            vector = np.asarray(vector, dtype=np.float32)
            if vector.shape != (self.dimension,):
                raise EmbeddingError(
                    f"Embedding dimension mismatch: expected {self.dimension}, got {vector.shape[-1]}"
                )
            if self.normalize:
                vector = self.l2_normalize(vector)
            results.append(vector)
        return results

    @staticmethod
    def build_embedding_text(title: str | None, summary: str | None, content: str | None) -> str:
        """
        Join the non-empty parts of an entity into one text, separated by blank lines.

        Returns:
            Combined text; empty string if every part is empty.
        """
        parts = [part.strip() for part in (title, summary, content) if part and part.strip()]
        return TEXT_SEPARATOR.join(parts)

    @staticmethod
    def l2_normalize(vector: np.ndarray) -> np.ndarray:
        norm = np.linalg.norm(vector)
        if norm == 0:
            return vector
        return (vector / norm).astype(np.float32)

    @staticmethod
    def to_bytes(vector: np.ndarray) -> bytes:
        """Convert embedding to bytes for database storage."""
        return np.asarray(vector, dtype=np.float32).tobytes()

    @staticmethod
    def from_bytes(data: bytes) -> np.ndarray:
        """Deserialize embedding from database storage."""
        return np.frombuffer(data, dtype=np.float32)

    @staticmethod
    def cosine_similarity(emb1: np.ndarray, emb2: np.ndarray) -> float:
        """
        Calculate cosine similarity between two embeddings.

        Returns:
            Cosine similarity score between -1 and 1.
            Higher values indicate more similar texts.
        """
        dot_product = np.dot(emb1, emb2)
        norm1 = np.linalg.norm(emb1)
        norm2 = np.linalg.norm(emb2)

        if norm1 == 0 or norm2 == 0:
            return 0.0

        return float(dot_product / (norm1 * norm2))
