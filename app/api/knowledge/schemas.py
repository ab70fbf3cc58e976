"""Request and response schemas for the knowledge base endpoints."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.models.sync_job import SyncMode


class SyncRequest(BaseModel):
    """Request schema for POST /v1/knowledge/{collection}/sync."""

    organization_id: str = Field(..., min_length=1, max_length=64)
    mode: SyncMode = Field(
        default=SyncMode.INCREMENTAL,
        description="'incremental' indexes records changed since the last sync; 'full' re-indexes everything.",
    )

    @field_validator("mode")
    @classmethod
    def mode_is_requestable(cls, v: SyncMode) -> SyncMode:
        if v == SyncMode.RESUME:
            raise ValueError("resume is selected automatically; request 'full' or 'incremental'")
        return v

    model_config = {
        "json_schema_extra": {
            "example": {"organization_id": "org-42", "mode": "incremental"}
        }
    }


class SyncStartResponse(BaseModel):
    job_id: UUID
    reused: bool = Field(description="True when an already running job was returned.")
    resumed: bool = Field(description="True when the job continues an interrupted run.")
    mode: str


class SyncJobResponse(BaseModel):
    """Status of a single sync job."""

    id: UUID
    organization_id: str
    type: str
    mode: str
    status: str
    progress: int
    total: int
    error: Optional[str] = None
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    resumed_from_job_id: Optional[UUID] = None


class IncompleteSyncResponse(BaseModel):
    progress: int
    total: int


class KnowledgeStatusResponse(BaseModel):
    indexed_records: int
    total_chunks: int
    last_sync: Optional[SyncJobResponse] = None
    incomplete_sync: Optional[IncompleteSyncResponse] = None


class SearchHit(BaseModel):
    """One ranked chunk."""

    chunk_id: UUID
    source_record_id: str
    chunk_index: int
    reference: str
    title: str
    content: str
    folder_id: Optional[str] = None
    similarity: float = Field(ge=0.0, le=1.0)
    status: Optional[str] = None
    team: Optional[str] = None


class SearchResponse(BaseModel):
    query: str
    results: List[SearchHit]
    total_results: int


class SimilarResponse(BaseModel):
    record_id: str
    results: List[SearchHit]
    total_results: int


class AskRequest(BaseModel):
    """Request schema for POST /v1/knowledge/{collection}/ask."""

    organization_id: str = Field(..., min_length=1, max_length=64)
    question: str = Field(..., min_length=1, max_length=2000)
    folder_id: Optional[str] = Field(default=None, max_length=128, description="Only use excerpts from this folder.")

    model_config = {
        "json_schema_extra": {
            "example": {
                "organization_id": "org-42",
                "question": "Which VPN outages happened after firmware upgrades?",
            }
        }
    }


class AnswerSourceResponse(BaseModel):
    reference: str
    title: str
    source_record_id: str
    similarity: float
    snippet: str


class AskResponse(BaseModel):
    answer: str
    sources: List[AnswerSourceResponse]


class DocumentRequest(BaseModel):
    """Request schema for PUT /v1/knowledge/documents/{document_id}."""

    organization_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=512)
    content: str = Field(..., min_length=1, description="Extracted document text (plain text or HTML).")
    folder_id: Optional[str] = Field(default=None, max_length=128)
    mime_type: str = Field(default="text/plain", max_length=128)

    model_config = {
        "json_schema_extra": {
            "example": {
                "organization_id": "org-42",
                "name": "Access Control Policy",
                "content": "1. Purpose\n\nAccess to information is granted on a need-to-know basis.",
                "folder_id": "policies",
            }
        }
    }


class DocumentResponse(BaseModel):
    document_id: str
    organization_id: str
    name: str
    folder_id: Optional[str] = None
    mime_type: str
    updated_at: datetime
