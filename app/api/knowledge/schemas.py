"""Request and response schemas for ingestion and retrieval."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class FileSyncError(BaseModel):
    """A file whose sync row could not be written."""

    file_id: str
    name: Optional[str] = None
    error: str


class SyncSummary(BaseModel):
    """Result of reconciling one folder against persisted sync state."""

    folder_id: str
    total_files: int = Field(default=0, ge=0)
    new: int = Field(default=0, ge=0)
    updated: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    errors: List[FileSyncError] = Field(default_factory=list)
    elapsed_seconds: float = Field(default=0.0, ge=0)


class FolderSyncResult(BaseModel):
    """Outcome of one folder in a scheduled sync tick."""

    folder_id: str
    status: Literal["synced", "skipped", "failed"]
    summary: Optional[SyncSummary] = None
    error: Optional[str] = None


class FileProcessResult(BaseModel):
    file_id: str
    name: str
    status: Literal["processed", "failed"]
    document_id: Optional[str] = None
    chunks: int = Field(default=0, ge=0)
    records: int = Field(default=0, ge=0)
    error: Optional[str] = None
    elapsed_seconds: float = Field(default=0.0, ge=0)


class ProcessSummary(BaseModel):
    """Result of one processing tick."""

    claimed: int = Field(default=0, ge=0)
    processed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    requeued_stale: int = Field(default=0, ge=0)
    results: List[FileProcessResult] = Field(default_factory=list)
    elapsed_seconds: float = Field(default=0.0, ge=0)


class SyncRequest(BaseModel):
    """Request schema for POST /v1/knowledge/folders/{folder_id}/sync."""

    access_token: Optional[str] = Field(default=None, description="OAuth access token for the provider.")
    refresh_token: Optional[str] = Field(
        default=None, description="OAuth refresh token; falls back to the folder's saved sync config."
    )
    team_context: str = Field(default="general", max_length=100)
    user_id: Optional[str] = None


class ProcessRequest(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1, le=100, description="Maximum files to claim.")


class SyncConfigRequest(BaseModel):
    folder_id: str = Field(..., min_length=1)
    folder_name: Optional[str] = None
    team_context: str = Field(default="general", max_length=100)
    sync_enabled: bool = True
    refresh_token: Optional[str] = None
    user_id: Optional[str] = None


class SyncConfigResponse(BaseModel):
    folder_id: str
    folder_name: Optional[str] = None
    team_context: str
    sync_enabled: bool
    last_sync_at: Optional[str] = None


class UserContext(BaseModel):
    """Caller identity used for team scoping and access logging."""

    user_id: Optional[str] = None
    team_context: str = Field(default="general", max_length=100)
    role: Optional[str] = None


class RetrieveRequest(BaseModel):
    """Request schema for POST /v1/knowledge/retrieve."""

    query: str = Field(..., min_length=1, max_length=2000)
    user: UserContext = Field(default_factory=UserContext)

    model_config = {
        "json_schema_extra": {
            "example": {
                "query": "What is the forecast for SKU A100 next week?",
                "user": {"user_id": "u-123", "team_context": "supply"},
            }
        }
    }


class RetrievalResult(BaseModel):
    type: Literal["structured", "semantic"]
    source: str
    source_url: Optional[str] = None
    content: str
    score: float
    tier: Literal["hot", "warm", "cold", "related"]
    document_id: Optional[str] = None
    sheet_name: Optional[str] = None
    row_index: Optional[int] = None
    section_title: Optional[str] = None
    parent_section_title: Optional[str] = None
    relationship: Optional[str] = None
    relationship_description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RetrievalResponse(BaseModel):
    query_type: Literal["structured", "semantic", "hybrid"]
    results: List[RetrievalResult] = Field(default_factory=list)
    structured_count: int = Field(default=0, ge=0)
    semantic_count: int = Field(default=0, ge=0)
    related_count: int = Field(default=0, ge=0)
    tiers_used: List[str] = Field(default_factory=list)
    elapsed_seconds: float = Field(default=0.0, ge=0)
