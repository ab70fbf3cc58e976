"""Knowledge chunk model: indexed text slices with embeddings."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pgvector.sqlalchemy import Vector
from pydantic import BaseModel
from sqlalchemy import JSON, Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.config.settings import settings


class Collection(str, Enum):
    """Source record families that are indexed and synced independently."""

    INCIDENT = "incident"
    CHANGE = "change"
    DOCUMENT = "document"


CHUNK_METADATA_VERSION = 1


class ChunkMetadata(BaseModel):
    """Typed side-record copied from the source record at index time.

    Fields are explicitly enumerated so downstream filtering stays type-safe.
    Bump CHUNK_METADATA_VERSION when the shape changes.
    """

    schema_version: int = CHUNK_METADATA_VERSION
    status: Optional[str] = None
    category: Optional[str] = None
    severity: Optional[str] = None
    priority: Optional[str] = None
    impact: Optional[str] = None
    urgency: Optional[str] = None
    team: Optional[str] = None
    agent: Optional[str] = None
    service: Optional[str] = None
    origin: Optional[str] = None
    caller: Optional[str] = None
    supervisor: Optional[str] = None
    change_type: Optional[str] = None
    outage: Optional[str] = None
    start_date: Optional[str] = None
    log_entry_count: int = 0


# pgvector on Postgres; plain JSON lists on SQLite (local dev and tests)
EmbeddingType = Vector(settings.OPENAI_EMBEDDING_DIMENSIONS).with_variant(JSON(none_as_null=True), "sqlite")


class KnowledgeChunk(SQLModel, table=True):
    """A bounded slice of a source record's text with its own embedding.

    (organization_id, collection, source_record_id, chunk_index) is unique:
    re-indexing a record overwrites its chunks instead of appending.
    """

    __tablename__ = "knowledge_chunks"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "collection",
            "source_record_id",
            "chunk_index",
            name="uq_knowledge_chunks_record_chunk",
        ),
        Index("ix_knowledge_chunks_scope", "organization_id", "collection"),
        Index(
            "ix_knowledge_chunks_embedding_hnsw",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: str = Field(max_length=64)
    collection: str = Field(max_length=32)
    source_record_id: str = Field(max_length=128, index=True)
    chunk_index: int = Field(default=0, ge=0)
    reference: str = Field(default="", max_length=128)
    title: str = Field(default="", max_length=512)
    content: str = Field(sa_column=Column(Text, nullable=False))
    embedding: Any = Field(default=None, sa_column=Column(EmbeddingType, nullable=True))
    metadata_json: dict = Field(default_factory=dict, sa_column=Column(JSON))
    folder_id: Optional[str] = Field(default=None, max_length=128, index=True)
    source_updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )

    @property
    def chunk_metadata(self) -> ChunkMetadata:
        return ChunkMetadata.model_validate(self.metadata_json or {})
