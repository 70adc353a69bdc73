"""Document model: the logical unit exposed to retrieval."""

from datetime import datetime, timezone
from uuid import UUID, NAMESPACE_URL, uuid5

from sqlalchemy import Column, DateTime, JSON
from sqlmodel import Field, SQLModel


def document_id_for(external_id: str) -> UUID:
    """Deterministic document id so re-importing a file is idempotent."""
    return uuid5(NAMESPACE_URL, f"drive-file:{external_id}")


class Document(SQLModel, table=True):
    """One ingested source file (spreadsheet or text document)."""

    __tablename__ = "documents"

    id: UUID = Field(primary_key=True)
    external_id: str = Field(max_length=255, unique=True, index=True)
    title: str = Field(max_length=1024)
    kind: str = Field(max_length=20, description="tabular or text")
    source_url: str | None = Field(default=None, max_length=2048)
    team_context: str = Field(default="general", max_length=100, index=True)
    metadata_json: dict = Field(default_factory=dict, sa_column=Column(JSON))
    # 1 on insert, incremented by every re-import
    revision: int = Field(default=1, ge=1)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), index=True),
    )
