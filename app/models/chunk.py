"""Retrievable text chunks with a two-level hierarchy."""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pgvector.sqlalchemy import Vector
from sqlalchemy import Column, DateTime, Index, JSON, Text
from sqlmodel import Field, SQLModel

CHUNK_LEVELS = ("section", "group", "paragraph")

# text-embedding-3-small
EMBEDDING_DIMENSIONS = 1536


class DocumentChunk(SQLModel, table=True):
    """A chunk of a document. Roots have no parent; children point at their root."""

    __tablename__ = "document_chunks"
    __table_args__ = (
        # HNSW index for approximate nearest neighbour search by cosine distance
        Index(
            "idx_document_chunks_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ).ddl_if(dialect="postgresql"),
    )

    id: str = Field(primary_key=True, max_length=512)
    document_id: UUID = Field(foreign_key="documents.id", ondelete="CASCADE", index=True)
    chunk_index: int = Field(default=0, ge=0)
    text: str = Field(sa_column=Column(Text, nullable=False))
    level: str = Field(max_length=20)
    parent_chunk_id: str | None = Field(default=None, foreign_key="document_chunks.id", index=True)
    section_title: str | None = Field(default=None, max_length=1024)
    sheet_name: str | None = Field(default=None, max_length=255)
    team_context: str | None = Field(default=None, max_length=100, index=True)
    # Loaded back as a numpy array
    embedding: Any = Field(default=None, sa_column=Column(Vector(EMBEDDING_DIMENSIONS), nullable=True))
    metadata_json: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
