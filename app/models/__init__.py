"""Models module - imports all models for SQLModel registration."""

# Import all models so SQLModel can register them
from app.models.document import Document
from app.models.knowledge_chunk import ChunkMetadata, Collection, KnowledgeChunk
from app.models.sync_job import SyncJob, SyncMode, SyncStatus

__all__ = [
    "ChunkMetadata",
    "Collection",
    "Document",
    "KnowledgeChunk",
    "SyncJob",
    "SyncMode",
    "SyncStatus",
]
