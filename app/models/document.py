"""Document model: policy and procedure texts registered for indexing."""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Document(SQLModel, table=True):
    """Extracted text of one document, scoped to an organization and a folder.

    (organization_id, external_id) is unique: saving a document with a known
    external id replaces its text and moves its updated_at watermark forward.
    """

    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_documents_org_external_id"),
        Index("ix_documents_org_updated", "organization_id", "updated_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: str = Field(max_length=64)
    external_id: str = Field(max_length=128)
    name: str = Field(max_length=512)
    folder_id: Optional[str] = Field(default=None, max_length=128, index=True)
    mime_type: str = Field(default="text/plain", max_length=128)
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
