"""Batched text embeddings via the OpenAI embeddings API."""

from __future__ import annotations

from typing import List, Optional, Sequence

from openai import AsyncOpenAI, OpenAIError

from app.config.logger import app_logger
from app.config.settings import settings
from app.services.errors import ConfigurationError, EmbeddingError


class EmbeddingClient:
    """Turns ordered batches of strings into fixed-dimension vectors.

    Requests are split into sub-batches of ``batch_size`` and issued
    sequentially; output[i] always corresponds to input[i]. A failing
    sub-batch fails the whole call.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = settings.OPENAI_EMBEDDING_MODEL,
        dimensions: int = settings.OPENAI_EMBEDDING_DIMENSIONS,
        batch_size: int = settings.EMBEDDING_BATCH_SIZE,
    ):
        if client is None:
            if not settings.OPENAI_API_KEY:
                raise ConfigurationError("OPENAI_API_KEY must be configured")
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
            app_logger.info("OpenAI embeddings client initialized")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._client = client
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Create embeddings for a list of texts, preserving order."""
        if not texts:
            return []

        embeddings: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = list(texts[start:start + self.batch_size])
            try:
                response = await self._client.embeddings.create(
                    model=self.model,
                    input=batch,
                    dimensions=self.dimensions,
                )
            except OpenAIError as exc:
                app_logger.error(
                    f"Embedding request failed for items {start}-{start + len(batch) - 1}: {exc}"
                )
                raise EmbeddingError(f"Embedding request failed: {exc}") from exc

            if len(response.data) != len(batch):
                raise EmbeddingError(
                    f"Embedding provider returned {len(response.data)} vectors for {len(batch)} inputs"
                )
            # The API tags each item with its input index
            for item in sorted(response.data, key=lambda d: d.index):
                embeddings.append(list(item.embedding))

        return embeddings

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query string."""
        return (await self.embed([text]))[0]
