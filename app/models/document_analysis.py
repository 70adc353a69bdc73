"""Cached per-sheet schema analysis keyed by a content fingerprint."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, JSON, UniqueConstraint
from sqlmodel import Field, SQLModel


class DocumentAnalysis(SQLModel, table=True):
    __tablename__ = "document_analysis"
    __table_args__ = (
        UniqueConstraint("document_id", "sheet_name", "content_hash", name="uq_document_analysis_hash"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    document_id: UUID = Field(foreign_key="documents.id", ondelete="CASCADE", index=True)
    sheet_name: str = Field(max_length=255)
    content_hash: str = Field(max_length=64)
    analysis: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
