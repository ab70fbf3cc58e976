"""Chunk persistence and nearest-neighbor search over pgvector (or SQLite)."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from sqlalchemy import delete, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from app.config.logger import app_logger
from app.models.knowledge_chunk import ChunkMetadata, KnowledgeChunk
from app.utils.dates import as_utc, utcnow

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

_CONFLICT_KEY = ["organization_id", "collection", "source_record_id", "chunk_index"]
_REPLACED_COLUMNS = [
    "reference",
    "title",
    "content",
    "embedding",
    "metadata_json",
    "folder_id",
    "source_updated_at",
    "updated_at",
]


@dataclass
class ChunkRecord:
    """A chunk ready to be written: content, vector and provenance."""

    organization_id: str
    collection: str
    source_record_id: str
    chunk_index: int
    content: str
    embedding: Sequence[float]
    metadata: ChunkMetadata
    source_updated_at: datetime
    reference: str = ""
    title: str = ""
    folder_id: Optional[str] = None


@dataclass
class SearchFilter:
    organization_id: str
    collection: Optional[str] = None
    folder_id: Optional[str] = None
    exclude_source_record_id: Optional[str] = None
    first_chunks_only: bool = False


@dataclass
class ScoredChunk:
    chunk_id: UUID
    collection: str
    source_record_id: str
    chunk_index: int
    reference: str
    title: str
    content: str
    folder_id: Optional[str]
    metadata: ChunkMetadata
    similarity: float


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 1.0
    return 1.0 - dot / (norm_a * norm_b)


def similarity_from_distance(distance: float) -> float:
    """1 - cosine distance, clamped to [0, 1]."""
    return min(1.0, max(0.0, 1.0 - float(distance)))


class VectorStore:
    """Idempotent chunk storage with cosine-distance search.

    On Postgres, ranking happens in SQL through pgvector's ``<=>`` operator.
    On SQLite (local development and tests) the filtered rows are scored
    exactly in Python with the same ordering: distance ascending, then chunk
    id ascending, so ties are deterministic.
    """

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    @staticmethod
    def _dialect(session: AsyncSession) -> str:
        return session.bind.dialect.name

    async def _upsert(self, session: AsyncSession, chunk: ChunkRecord) -> None:
        dialect = self._dialect(session)
        insert = _INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Vector store does not support the '{dialect}' dialect")

        now = utcnow()
        stmt = insert(KnowledgeChunk.__table__).values(
            id=uuid4(),
            organization_id=chunk.organization_id,
            collection=chunk.collection,
            source_record_id=chunk.source_record_id,
            chunk_index=chunk.chunk_index,
            reference=chunk.reference,
            title=chunk.title[:512],
            content=chunk.content,
            embedding=list(chunk.embedding),
            metadata_json=chunk.metadata.model_dump(),
            folder_id=chunk.folder_id,
            source_updated_at=chunk.source_updated_at,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=_CONFLICT_KEY,
            set_={column: stmt.excluded[column] for column in _REPLACED_COLUMNS},
        )
        await session.execute(stmt)

    async def upsert(self, chunk: ChunkRecord) -> None:
        """Insert or replace the chunk identified by (record id, chunk index)."""
        async with self._session_maker() as session:
            await self._upsert(session, chunk)
            await session.commit()

    async def delete_all_chunks(self, organization_id: str, collection: str, source_record_id: str) -> int:
        """Remove every chunk of a record. Returns the number of deleted rows."""
        async with self._session_maker() as session:
            result = await session.execute(
                delete(KnowledgeChunk).where(
                    KnowledgeChunk.organization_id == organization_id,
                    KnowledgeChunk.collection == collection,
                    KnowledgeChunk.source_record_id == source_record_id,
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def replace_record_chunks(
        self,
        organization_id: str,
        collection: str,
        source_record_id: str,
        chunks: Sequence[ChunkRecord],
    ) -> int:
        """Make ``chunks`` the complete chunk set of a record, atomically.

        Existing chunks are upserted in place and any leftover chunk with a
        higher index is deleted, all in one transaction. If anything fails the
        record keeps its previous chunks.
        """
        async with self._session_maker() as session:
            for chunk in chunks:
                await self._upsert(session, chunk)
            await session.execute(
                delete(KnowledgeChunk).where(
                    KnowledgeChunk.organization_id == organization_id,
                    KnowledgeChunk.collection == collection,
                    KnowledgeChunk.source_record_id == source_record_id,
                    KnowledgeChunk.chunk_index >= len(chunks),
                )
            )
            await session.commit()
        return len(chunks)

    @staticmethod
    def _conditions(search_filter: SearchFilter) -> List[Any]:
        conditions = [
            KnowledgeChunk.organization_id == search_filter.organization_id,
            KnowledgeChunk.embedding.is_not(None),
        ]
        if search_filter.collection:
            conditions.append(KnowledgeChunk.collection == search_filter.collection)
        if search_filter.folder_id:
            conditions.append(KnowledgeChunk.folder_id == search_filter.folder_id)
        if search_filter.exclude_source_record_id:
            conditions.append(KnowledgeChunk.source_record_id != search_filter.exclude_source_record_id)
        if search_filter.first_chunks_only:
            conditions.append(KnowledgeChunk.chunk_index == 0)
        return conditions

    @staticmethod
    def _scored(chunk: KnowledgeChunk, distance: float) -> ScoredChunk:
        return ScoredChunk(
            chunk_id=chunk.id,
            collection=chunk.collection,
            source_record_id=chunk.source_record_id,
            chunk_index=chunk.chunk_index,
            reference=chunk.reference,
            title=chunk.title,
            content=chunk.content,
            folder_id=chunk.folder_id,
            metadata=chunk.chunk_metadata,
            similarity=similarity_from_distance(distance),
        )

    async def search(
        self,
        query_vector: Sequence[float],
        search_filter: SearchFilter,
        limit: int = 10,
    ) -> List[ScoredChunk]:
        """Return the ``limit`` chunks closest to ``query_vector``, most similar first."""
        if limit < 1:
            return []

        conditions = self._conditions(search_filter)
        async with self._session_maker() as session:
            if self._dialect(session) == "postgresql":
                distance = KnowledgeChunk.embedding.cosine_distance(list(query_vector))
                result = await session.execute(
                    select(KnowledgeChunk, distance.label("distance"))
                    .where(*conditions)
                    .order_by(distance, KnowledgeChunk.id)
                    .limit(limit)
                )
                ranked: List[Tuple[KnowledgeChunk, float]] = [
                    (chunk, float(dist)) for chunk, dist in result.all()
                ]
            else:
                result = await session.execute(select(KnowledgeChunk).where(*conditions))
                candidates = [chunk for chunk in result.scalars().all() if chunk.embedding is not None]
                ranked = sorted(
                    ((chunk, cosine_distance(query_vector, chunk.embedding)) for chunk in candidates),
                    key=lambda pair: (pair[1], pair[0].id),
                )[:limit]

        return [self._scored(chunk, dist) for chunk, dist in ranked]

    async def nearest_to_record(
        self,
        organization_id: str,
        collection: str,
        source_record_id: str,
        exclude_self: bool = True,
        limit: int = 5,
    ) -> List[ScoredChunk]:
        """Find records similar to a given one, using its chunk 0 as the query.

        Returns an empty list when the record has no indexed chunk 0.
        """
        async with self._session_maker() as session:
            result = await session.execute(
                select(KnowledgeChunk.embedding).where(
                    KnowledgeChunk.organization_id == organization_id,
                    KnowledgeChunk.collection == collection,
                    KnowledgeChunk.source_record_id == source_record_id,
                    KnowledgeChunk.chunk_index == 0,
                    KnowledgeChunk.embedding.is_not(None),
                ).limit(1)
            )
            vector = result.scalars().first()

        if vector is None:
            app_logger.debug(f"No indexed chunk 0 for {collection} record {source_record_id}")
            return []

        return await self.search(
            vector,
            SearchFilter(
                organization_id=organization_id,
                collection=collection,
                exclude_source_record_id=source_record_id if exclude_self else None,
                first_chunks_only=True,
            ),
            limit=limit,
        )

    async def max_watermark(self, organization_id: str, collection: str) -> Optional[datetime]:
        """Latest source last-modified timestamp indexed for a collection."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(func.max(KnowledgeChunk.source_updated_at)).where(
                    KnowledgeChunk.organization_id == organization_id,
                    KnowledgeChunk.collection == collection,
                )
            )
            return as_utc(result.scalar())

    async def stats(self, organization_id: str, collection: Optional[str] = None) -> Tuple[int, int]:
        """Return (indexed record count, total chunk count)."""
        conditions = [KnowledgeChunk.organization_id == organization_id]
        if collection:
            conditions.append(KnowledgeChunk.collection == collection)
        async with self._session_maker() as session:
            result = await session.execute(
                select(
                    func.count(func.distinct(KnowledgeChunk.source_record_id)),
                    func.count(KnowledgeChunk.id),
                ).where(*conditions)
            )
            indexed, total = result.one()
        return int(indexed or 0), int(total or 0)
