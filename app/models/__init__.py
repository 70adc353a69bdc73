"""Models module - imports all models for SQLModel registration."""

from app.models.document import Document, document_id_for
from app.models.chunk import EMBEDDING_DIMENSIONS, DocumentChunk
from app.models.structured_record import StructuredRecord
from app.models.synced_file import SyncedFile
from app.models.sync_config import SyncConfig
from app.models.folder_lock import FolderLock
from app.models.document_analysis import DocumentAnalysis
from app.models.document_relationship import DocumentRelationship
from app.models.document_access import DocumentAccess

__all__ = [
    "Document",
    "document_id_for",
    "DocumentChunk",
    "EMBEDDING_DIMENSIONS",
    "StructuredRecord",
    "SyncedFile",
    "SyncConfig",
    "FolderLock",
    "DocumentAnalysis",
    "DocumentRelationship",
    "DocumentAccess",
]
