"""Append-only log of documents served by retrieval."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel


class DocumentAccess(SQLModel, table=True):
    __tablename__ = "document_access_log"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    document_id: UUID = Field(foreign_key="documents.id", ondelete="CASCADE", index=True)
    user_id: str = Field(max_length=255, index=True)
    query_text: str | None = Field(default=None, max_length=2000)
    tier: str | None = Field(default=None, max_length=20)
    accessed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), index=True),
    )
