"""Directed relationships between documents or sheets, used for expansion."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel

RELATIONSHIP_TYPES = ("drives", "references", "summarizes", "derives_from", "supplements")


class DocumentRelationship(SQLModel, table=True):
    __tablename__ = "document_relationships"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    source_document_id: UUID = Field(foreign_key="documents.id", ondelete="CASCADE", index=True)
    source_sheet: str | None = Field(default=None, max_length=255)
    target_document_id: UUID = Field(foreign_key="documents.id", ondelete="CASCADE", index=True)
    target_sheet: str | None = Field(default=None, max_length=255)
    relationship_type: str = Field(max_length=50)
    description: str | None = Field(default=None, sa_column=Column(Text))
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
