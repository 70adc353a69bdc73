"""Folders registered for scheduled sync."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel


class SyncConfig(SQLModel, table=True):
    __tablename__ = "sync_configs"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    folder_id: str = Field(max_length=255, unique=True, index=True)
    folder_name: str | None = Field(default=None, max_length=1024)
    team_context: str = Field(default="general", max_length=100)
    sync_enabled: bool = Field(default=True, index=True)
    refresh_token: str | None = None
    user_id: str | None = Field(default=None, max_length=255)
    last_sync_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
