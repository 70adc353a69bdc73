"""Persisted sync state for files discovered in the content provider."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, JSON
from sqlmodel import Field, SQLModel

SYNC_STATUSES = ("pending", "processing", "synced", "error")


class SyncedFile(SQLModel, table=True):
    """One row per external file; never deleted so it doubles as an audit trail.

    ``version`` starts at 1 on insert and is incremented by every upsert that
    changes the row, which gives an explicit inserted-vs-updated flag.
    """

    __tablename__ = "synced_files"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    external_id: str = Field(max_length=255, unique=True, index=True)
    name: str = Field(max_length=1024)
    kind: str = Field(max_length=20)
    mime_type: str | None = Field(default=None, max_length=255)
    folder_id: str = Field(max_length=255, index=True)
    parent_id: str | None = Field(default=None, max_length=255)
    source_url: str | None = Field(default=None, max_length=2048)
    owners: list = Field(default_factory=list, sa_column=Column(JSON))
    modified_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    modified_epoch: float = Field(default=0.0, index=True)
    team_context: str = Field(default="general", max_length=100)
    user_id: str | None = Field(default=None, max_length=255)
    sync_status: str = Field(default="pending", max_length=20, index=True)
    needs_processing: bool = Field(default=True, index=True)
    error_message: str | None = None
    document_id: UUID | None = Field(default=None, foreign_key="documents.id", ondelete="SET NULL")
    version: int = Field(default=1, ge=1)
    claimed_epoch: float | None = None
    last_processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
