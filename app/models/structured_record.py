"""Normalized rows extracted from tabular documents."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, JSON, Text
from sqlmodel import Field, SQLModel


class StructuredRecord(SQLModel, table=True):
    __tablename__ = "structured_records"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    document_id: UUID = Field(foreign_key="documents.id", ondelete="CASCADE", index=True)
    sheet_name: str = Field(max_length=255, index=True)
    sheet_type: str = Field(default="general", max_length=50, index=True)
    row_index: int = Field(ge=0)
    entity_key: str | None = Field(default=None, max_length=255, index=True)
    category: str | None = Field(default=None, max_length=255, index=True)
    date_value: str | None = Field(default=None, max_length=100)
    week: str | None = Field(default=None, max_length=100)
    notes: str | None = Field(default=None, sa_column=Column(Text))
    field_values: dict = Field(default_factory=dict, sa_column=Column(JSON))
    raw_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    search_text: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    document_title: str | None = Field(default=None, max_length=1024)
    source_url: str | None = Field(default=None, max_length=2048)
    team_context: str = Field(default="general", max_length=100, index=True)
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), index=True),
    )
