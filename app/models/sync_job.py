"""Sync job model (append-only audit trail of ingestion runs)."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel


class SyncStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    RESUME = "resume"


class SyncJob(SQLModel, table=True):
    """One ingestion run for an (organization, collection) pair.

    Rows are never deleted. At most one row per (organization_id, type) may be
    running; the partial unique index below enforces it across processes.
    progress and total survive failures so an interrupted run can be resumed.
    """

    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index(
            "uq_sync_jobs_one_running",
            "organization_id",
            "type",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
        Index("ix_sync_jobs_scope_started", "organization_id", "type", "started_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: str = Field(max_length=64)
    type: str = Field(max_length=32)  # Collection value: 'incident', 'change', 'document'
    mode: str = Field(default=SyncMode.INCREMENTAL.value, max_length=20)
    status: str = Field(default=SyncStatus.RUNNING.value, max_length=20, index=True)
    total: int = Field(default=0, ge=0)
    progress: int = Field(default=0, ge=0)
    error: Optional[str] = Field(default=None, sa_column=Column(Text))
    resumed_from_job_id: Optional[UUID] = Field(default=None)
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    # Heartbeat: refreshed on every processed page
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
