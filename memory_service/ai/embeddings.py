"""Embedding provider and vector helpers.

The memory store keeps one fixed-size embedding per memory and ranks
candidates by cosine similarity. This module owns the provider that turns
text into vectors plus the small numpy helpers used to persist and score
them.
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Union

import numpy as np
import openai
import structlog

from memory_service.config.settings import Settings, get_settings
from memory_service.errors import UpstreamError

logger = structlog.get_logger()


class EmbeddingProvider(Protocol):
    """Anything that can embed a batch of texts into same-length vectors."""

    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...


@dataclass
class EmbeddingConfig:
    """Configuration for the OpenAI embedding provider.

    Attributes:
        model: Name of the embedding model to use.
        dimensions: Dimension of the returned vectors.
        batch_size: Maximum number of texts sent per API call.
    """
    model: str = "text-embedding-3-small"
    dimensions: int = 768
    batch_size: int = 100

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingConfig":
        return cls(
            model=settings.openai_embedding_model,
            dimensions=settings.embedding_dimensions,
        )


class OpenAIEmbeddingProvider:
    """Embeds text through the OpenAI embeddings endpoint.

    Example:
        >>> provider = OpenAIEmbeddingProvider(api_key="sk-...")
        >>> vectors = await provider.embed(["Alex likes hiking"])
        >>> len(vectors[0])
        768
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        config: Optional[EmbeddingConfig] = None,
        client: Optional[openai.AsyncOpenAI] = None,
        base_url: Optional[str] = None,
    ):
        settings = get_settings()
        self._api_key = api_key or settings.openai_api_key.get_secret_value()
        self._base_url = base_url or settings.openai_base_url
        self.config = config or EmbeddingConfig.from_settings(settings)
        self._client = client

    @property
    def client(self) -> openai.AsyncOpenAI:
        """Lazy-load the OpenAI client."""
        if self._client is None:
            if not self._api_key:
                raise UpstreamError("OPENAI_API_KEY is required for embeddings")
            self._client = openai.AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        embeddings: List[List[float]] = []
        for start in range(0, len(texts), self.config.batch_size):
            batch = texts[start:start + self.config.batch_size]
            try:
                response = await self.client.embeddings.create(
                    model=self.config.model,
                    input=batch,
                    dimensions=self.config.dimensions,
                )
            except openai.OpenAIError as e:
                logger.error("embedding_request_failed", error=str(e), model=self.config.model)
                raise UpstreamError(f"Unable to embed text: {e}") from e

            # The API does not promise order, each item carries its index
            data = sorted(response.data, key=lambda item: item.index)
            embeddings.extend(item.embedding for item in data)

        if len(embeddings) != len(texts):
            raise UpstreamError(
                "Embedding provider returned a different number of vectors",
                details={"expected": len(texts), "received": len(embeddings)},
            )
        for vector in embeddings:
            if len(vector) != self.config.dimensions:
                raise UpstreamError(
                    "Embedding provider returned vectors of unexpected size",
                    details={"expected": self.config.dimensions, "received": len(vector)},
                )
        return embeddings


# =============================================================================
# Vector helpers
# =============================================================================

def pack_embedding(embedding: Sequence[float]) -> bytes:
    """Convert an embedding to float32 bytes for storage."""
    return np.asarray(embedding, dtype=np.float32).tobytes()


def unpack_embedding(data: bytes) -> np.ndarray:
    """Convert stored bytes back to a float32 vector."""
    return np.frombuffer(data, dtype=np.float32)


def cosine_similarity(
    query_embedding: Union[Sequence[float], np.ndarray],
    memory_embeddings: Union[Sequence[Sequence[float]], np.ndarray],
) -> np.ndarray:
    """Compute cosine similarity between a query and every row of a matrix.

    Args:
        query_embedding: The query embedding vector.
        memory_embeddings: Matrix of memory embeddings (N x D).

    Returns:
        Array of similarity scores (N,), 1.0 meaning identical direction.
    """
    query = np.asarray(query_embedding, dtype=np.float32)
    memories = np.asarray(memory_embeddings, dtype=np.float32)

    query_norm = query / (np.linalg.norm(query) + 1e-10)
    memories_norm = memories / (np.linalg.norm(memories, axis=1, keepdims=True) + 1e-10)

    return np.dot(memories_norm, query_norm)
