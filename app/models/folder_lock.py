"""Time-limited folder locks. Expiry is compared against the database clock."""

from sqlmodel import Field, SQLModel


class FolderLock(SQLModel, table=True):
    __tablename__ = "folder_locks"

    folder_id: str = Field(primary_key=True, max_length=255)
    holder: str = Field(max_length=255)
    locked_until: float = Field(description="Expiry as database epoch seconds")
    acquired_at: float = Field(description="Acquisition time as database epoch seconds")
