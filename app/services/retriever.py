"""Semantic search and record-to-record similarity over indexed chunks."""

from __future__ import annotations

from typing import List, Optional, Union

from app.config.logger import app_logger
from app.config.settings import settings
from app.models.knowledge_chunk import Collection
from app.services.embeddings import EmbeddingClient
from app.services.vector_store import ScoredChunk, SearchFilter, VectorStore


def _collection_value(collection: Optional[Union[Collection, str]]) -> Optional[str]:
    if collection is None:
        return None
    return Collection(collection).value


class Retriever:
    def __init__(self, embedder: EmbeddingClient, store: VectorStore):
        self._embedder = embedder
        self._store = store

    async def search(
        self,
        query: str,
        organization_id: str,
        collection: Optional[Union[Collection, str]] = None,
        folder_id: Optional[str] = None,
        limit: int = settings.DEFAULT_SEARCH_LIMIT,
    ) -> List[ScoredChunk]:
        """Embed the query and return the closest chunks, most similar first."""
        query = (query or "").strip()
        if not query:
            return []

        vector = await self._embedder.embed_query(query)
        results = await self._store.search(
            vector,
            SearchFilter(
                organization_id=organization_id,
                collection=_collection_value(collection),
                folder_id=folder_id,
            ),
            limit=limit,
        )
        app_logger.info(
            f"Search in {organization_id}/{_collection_value(collection) or 'all'} "
            f"returned {len(results)} chunks"
        )
        return results

    async def find_similar(
        self,
        organization_id: str,
        collection: Union[Collection, str],
        record_id: str,
        limit: int = settings.DEFAULT_SIMILAR_LIMIT,
    ) -> List[ScoredChunk]:
        """Records most similar to ``record_id``, compared on their first chunk."""
        return await self._store.nearest_to_record(
            organization_id,
            _collection_value(collection),
            record_id,
            exclude_self=True,
            limit=limit,
        )
