"""Persistence for ingestion state, document content and retrieval lookups.

Cross-worker coordination (claim, folder lock, idempotent upsert) is expressed
as single atomic SQL statements so the database is the only arbiter.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import and_, delete, func, literal, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from app.config.logger import app_logger
from app.db.db import Database
from app.db.sql_functions import cosine_distance, db_epoch
from app.models import (
    Document,
    DocumentAccess,
    DocumentAnalysis,
    DocumentChunk,
    DocumentRelationship,
    EMBEDDING_DIMENSIONS,
    FolderLock,
    StructuredRecord,
    SyncConfig,
    SyncedFile,
)
from app.services.content_provider import SourceFile
from app.utils.errors import NotFoundError

NEW = "new"
UPDATED = "updated"
SKIPPED = "skipped"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KnowledgeStore:
    def __init__(self, database: Database):
        self.db = database

    def _insert(self, table):
        if self.db.dialect == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)

    # ==================== SYNCED FILES ====================

    async def upsert_synced_file(
        self,
        source: SourceFile,
        folder_id: str,
        team_context: str = "general",
        user_id: Optional[str] = None,
    ) -> str:
        """One atomic upsert per file; returns ``new``, ``updated`` or ``skipped``.

        An existing row is only rewritten when the modification instant changed
        or the previous attempt ended in ``error``. ``version`` is 1 only for
        the statement that inserted the row.
        """
        table = SyncedFile.__table__
        now = utcnow()
        descriptive = {
            "name": source.name,
            "kind": source.kind,
            "mime_type": source.mime_type,
            "folder_id": folder_id,
            "parent_id": source.parent_id,
            "source_url": source.url,
            "owners": list(source.owners),
            "modified_time": source.modified_time,
            "modified_epoch": source.modified_epoch,
            "team_context": team_context,
            "user_id": user_id,
        }
        stmt = self._insert(table).values(
            id=uuid4(),
            external_id=source.external_id,
            sync_status="pending",
            needs_processing=True,
            error_message=None,
            version=1,
            created_at=now,
            updated_at=now,
            **descriptive,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.external_id],
            set_={
                **{key: getattr(stmt.excluded, key) for key in descriptive},
                "sync_status": "pending",
                "needs_processing": True,
                "error_message": None,
                "version": table.c.version + 1,
                "updated_at": now,
            },
            where=or_(
                table.c.modified_epoch != stmt.excluded.modified_epoch,
                table.c.sync_status == "error",
            ),
        ).returning(table.c.version)

        async with self.db.session() as session:
            result = await session.execute(stmt)
            row = result.first()
            await session.commit()

        if row is None:
            return SKIPPED
        return NEW if row.version == 1 else UPDATED

    async def claim_files(self, limit: int) -> List[SyncedFile]:
        """Atomically move up to ``limit`` files needing work into ``processing``."""
        table = SyncedFile.__table__
        candidates = (
            select(table.c.id)
            .where(table.c.needs_processing.is_(True), table.c.sync_status != "processing")
            .order_by(table.c.modified_epoch.desc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(table)
            .where(table.c.id.in_(candidates))
            .values(
                sync_status="processing",
                needs_processing=False,
                error_message=None,
                claimed_epoch=db_epoch(),
                updated_at=utcnow(),
            )
            .returning(*table.c)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            rows = result.mappings().all()
            await session.commit()
        return [SyncedFile(**row) for row in rows]

    async def release_file(self, external_id: str, error_message: Optional[str] = None) -> bool:
        """Return a claimed file to ``pending`` (retry) or ``error``."""
        table = SyncedFile.__table__
        values = {
            "sync_status": "error" if error_message else "pending",
            "needs_processing": not error_message,
            "error_message": error_message[:1000] if error_message else None,
            "claimed_epoch": None,
            "updated_at": utcnow(),
        }
        async with self.db.session() as session:
            result = await session.execute(
                update(table)
                .where(table.c.external_id == external_id, table.c.sync_status == "processing")
                .values(**values)
            )
            await session.commit()
        return result.rowcount > 0

    async def mark_file_processed(self, external_id: str, document_id: UUID) -> bool:
        """Mark a claimed file synced and link its document.

        If the file was re-discovered as modified while processing, it stays
        queued and only the document link is recorded.
        """
        table = SyncedFile.__table__
        now = utcnow()
        async with self.db.session() as session:
            result = await session.execute(
                update(table)
                .where(table.c.external_id == external_id, table.c.sync_status == "processing")
                .values(
                    sync_status="synced",
                    needs_processing=False,
                    error_message=None,
                    document_id=document_id,
                    claimed_epoch=None,
                    last_processed_at=now,
                    updated_at=now,
                )
            )
            marked = result.rowcount > 0
            if not marked:
                await session.execute(
                    update(table)
                    .where(table.c.external_id == external_id)
                    .values(document_id=document_id, last_processed_at=now)
                )
            await session.commit()
        if not marked:
            app_logger.info(f"File {external_id} changed while processing; left queued for another pass")
        return marked

    async def requeue_stale_claims(self, timeout_seconds: float) -> int:
        """Return files stuck in ``processing`` longer than the timeout to ``pending``."""
        table = SyncedFile.__table__
        async with self.db.session() as session:
            result = await session.execute(
                update(table)
                .where(
                    table.c.sync_status == "processing",
                    table.c.claimed_epoch < db_epoch() - timeout_seconds,
                )
                .values(
                    sync_status="pending",
                    needs_processing=True,
                    claimed_epoch=None,
                    error_message="Processing timed out; re-queued",
                    updated_at=utcnow(),
                )
            )
            await session.commit()
        if result.rowcount:
            app_logger.warning(f"Re-queued {result.rowcount} stale claimed files")
        return result.rowcount

    async def get_synced_file(self, external_id: str) -> Optional[SyncedFile]:
        async with self.db.session() as session:
            result = await session.execute(select(SyncedFile).where(SyncedFile.external_id == external_id))
            return result.scalar_one_or_none()

    async def get_sync_stats(self) -> Dict[str, int]:
        async with self.db.session() as session:
            result = await session.execute(
                select(SyncedFile.sync_status, func.count()).group_by(SyncedFile.sync_status)
            )
            counts = {status: count for status, count in result.all()}
        stats = {status: counts.get(status, 0) for status in ("pending", "processing", "synced", "error")}
        stats["total"] = sum(counts.values())
        return stats

    # ==================== FOLDER LOCKS ====================

    async def acquire_folder_lock(self, folder_id: str, holder: str, ttl_seconds: float) -> bool:
        """Take the folder lock if it is free or expired by the database clock."""
        table = FolderLock.__table__
        stmt = self._insert(table).values(
            folder_id=folder_id,
            holder=holder,
            locked_until=db_epoch() + ttl_seconds,
            acquired_at=db_epoch(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.folder_id],
            set_={
                "holder": stmt.excluded.holder,
                "locked_until": stmt.excluded.locked_until,
                "acquired_at": stmt.excluded.acquired_at,
            },
            where=table.c.locked_until < db_epoch(),
        ).returning(table.c.holder)

        async with self.db.session() as session:
            result = await session.execute(stmt)
            row = result.first()
            await session.commit()
        return row is not None

    async def release_folder_lock(self, folder_id: str, holder: Optional[str] = None) -> None:
        table = FolderLock.__table__
        stmt = delete(table).where(table.c.folder_id == folder_id)
        if holder is not None:
            stmt = stmt.where(table.c.holder == holder)
        async with self.db.session() as session:
            await session.execute(stmt)
            await session.commit()

    # ==================== DOCUMENTS ====================

    async def upsert_document(self, document: Document) -> bool:
        """Create or update a document; returns True when it was inserted."""
        table = Document.__table__
        now = utcnow()
        stmt = self._insert(table).values(
            id=document.id,
            external_id=document.external_id,
            title=document.title,
            kind=document.kind,
            source_url=document.source_url,
            team_context=document.team_context,
            metadata_json=document.metadata_json,
            revision=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={
                "title": stmt.excluded.title,
                "kind": stmt.excluded.kind,
                "source_url": stmt.excluded.source_url,
                "team_context": stmt.excluded.team_context,
                "metadata_json": stmt.excluded.metadata_json,
                "revision": table.c.revision + 1,
                "updated_at": now,
            },
        ).returning(table.c.revision)

        async with self.db.session() as session:
            try:
                result = await session.execute(stmt)
                revision = result.scalar_one()
                await session.commit()
            except Exception as e:
                app_logger.error(f"Error upserting document {document.id}: {e}")
                raise
        return revision == 1

    async def get_document(self, document_id: UUID) -> Optional[Document]:
        async with self.db.session() as session:
            return await session.get(Document, document_id)

    async def delete_document(self, document_id: UUID) -> None:
        """Delete a document with its chunks, records, analyses and relationships."""
        async with self.db.session() as session:
            async with session.begin():
                await session.execute(
                    update(SyncedFile).where(SyncedFile.document_id == document_id).values(document_id=None)
                )
                await session.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document_id))
                await session.execute(delete(StructuredRecord).where(StructuredRecord.document_id == document_id))
                await session.execute(delete(DocumentAnalysis).where(DocumentAnalysis.document_id == document_id))
                await session.execute(delete(DocumentAccess).where(DocumentAccess.document_id == document_id))
                await session.execute(
                    delete(DocumentRelationship).where(
                        or_(
                            DocumentRelationship.source_document_id == document_id,
                            DocumentRelationship.target_document_id == document_id,
                        )
                    )
                )
                await session.execute(delete(Document).where(Document.id == document_id))
        app_logger.info(f"Deleted document {document_id}")

    async def replace_document_content(
        self,
        document_id: UUID,
        chunks: Sequence[DocumentChunk],
        records: Sequence[StructuredRecord],
        relationships: Optional[Sequence[DocumentRelationship]] = None,
    ) -> None:
        """Swap a document's chunks and records (and relationships) in one transaction.

        ``chunks`` must list every root before its children.
        """
        async with self.db.session() as session:
            async with session.begin():
                document = await session.get(Document, document_id, with_for_update=True)
                if document is None:
                    raise NotFoundError(f"Document {document_id} not found")

                await session.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document_id))
                await session.execute(delete(StructuredRecord).where(StructuredRecord.document_id == document_id))
                if relationships is not None:
                    await session.execute(
                        delete(DocumentRelationship).where(DocumentRelationship.source_document_id == document_id)
                    )
                    session.add_all(relationships)

                session.add_all(chunks)
                session.add_all(records)
                document.updated_at = utcnow()

        app_logger.info(
            f"Replaced content for document {document_id}: chunks={len(chunks)} records={len(records)}"
        )

    async def list_chunks(self, document_id: UUID) -> List[DocumentChunk]:
        async with self.db.session() as session:
            result = await session.execute(
                select(DocumentChunk)
                .where(DocumentChunk.document_id == document_id)
                .order_by(DocumentChunk.chunk_index)
            )
            return list(result.scalars().all())

    async def list_records(self, document_id: UUID) -> List[StructuredRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(StructuredRecord)
                .where(StructuredRecord.document_id == document_id)
                .order_by(StructuredRecord.sheet_name, StructuredRecord.row_index)
            )
            return list(result.scalars().all())

    # ==================== ANALYSIS CACHE ====================

    async def get_cached_analysis(self, document_id: UUID, sheet_name: str, content_hash: str) -> Optional[dict]:
        async with self.db.session() as session:
            result = await session.execute(
                select(DocumentAnalysis.analysis).where(
                    DocumentAnalysis.document_id == document_id,
                    DocumentAnalysis.sheet_name == sheet_name,
                    DocumentAnalysis.content_hash == content_hash,
                )
            )
            return result.scalars().first()

    async def save_analysis(self, document_id: UUID, sheet_name: str, content_hash: str, analysis: dict) -> None:
        table = DocumentAnalysis.__table__
        stmt = self._insert(table).values(
            id=uuid4(),
            document_id=document_id,
            sheet_name=sheet_name,
            content_hash=content_hash,
            analysis=analysis,
            created_at=utcnow(),
        ).on_conflict_do_nothing(index_elements=["document_id", "sheet_name", "content_hash"])
        async with self.db.session() as session:
            await session.execute(stmt)
            await session.commit()

    # ==================== RETRIEVAL LOOKUPS ====================

    async def search_structured(
        self,
        terms: Sequence[str],
        entity_keys: Sequence[str] = (),
        team_context: Optional[str] = None,
        updated_since: Optional[datetime] = None,
        limit: int = 20,
    ) -> List[StructuredRecord]:
        """Rows whose search text contains any term or whose entity key matches."""
        conditions = [StructuredRecord.search_text.contains(term.lower(), autoescape=True) for term in terms]
        if entity_keys:
            conditions.append(func.lower(StructuredRecord.entity_key).in_([k.lower() for k in entity_keys]))
        if not conditions:
            return []

        stmt = (
            select(StructuredRecord)
            .join(Document, Document.id == StructuredRecord.document_id)
            .where(or_(*conditions))
        )
        if team_context and team_context != "general":
            stmt = stmt.where(StructuredRecord.team_context == team_context)
        if updated_since is not None:
            stmt = stmt.where(Document.updated_at >= updated_since)
        stmt = stmt.order_by(StructuredRecord.updated_at.desc(), StructuredRecord.row_index).limit(limit)

        async with self.db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def semantic_search(
        self,
        query_vector: Sequence[float],
        *,
        min_similarity: float,
        top_k: int,
        team_context: Optional[str] = None,
        updated_since: Optional[datetime] = None,
    ) -> List[Tuple[DocumentChunk, Document, float]]:
        """Nearest embedded chunks by cosine similarity, best first.

        The similarity floor, ordering and ``top_k`` cut are applied by the
        database over every eligible chunk.
        """
        query = literal(list(query_vector), Vector(EMBEDDING_DIMENSIONS))
        distance = cosine_distance(DocumentChunk.embedding, query)
        stmt = (
            select(DocumentChunk, Document, distance.label("distance"))
            .join(Document, Document.id == DocumentChunk.document_id)
            .where(DocumentChunk.embedding.is_not(None))
            .where(distance <= 1.0 - min_similarity)
        )
        if team_context and team_context != "general":
            stmt = stmt.where(
                or_(
                    DocumentChunk.team_context.is_(None),
                    DocumentChunk.team_context.in_([team_context, "general"]),
                )
            )
        if updated_since is not None:
            stmt = stmt.where(Document.updated_at >= updated_since)
        stmt = stmt.order_by(distance, DocumentChunk.id).limit(top_k)

        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [(chunk, document, 1.0 - float(dist)) for chunk, document, dist in result.all()]

    async def get_chunks(self, chunk_ids: Iterable[str]) -> Dict[str, DocumentChunk]:
        ids = list(set(chunk_ids))
        if not ids:
            return {}
        async with self.db.session() as session:
            result = await session.execute(select(DocumentChunk).where(DocumentChunk.id.in_(ids)))
            return {chunk.id: chunk for chunk in result.scalars().all()}

    async def relationships_for(self, document_ids: Sequence[UUID], limit: int = 10) -> List[DocumentRelationship]:
        if not document_ids:
            return []
        async with self.db.session() as session:
            result = await session.execute(
                select(DocumentRelationship)
                .where(
                    or_(
                        DocumentRelationship.source_document_id.in_(document_ids),
                        DocumentRelationship.target_document_id.in_(document_ids),
                    )
                )
                .order_by(DocumentRelationship.confidence.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def records_for_sheets(
        self, sheets: Sequence[Tuple[UUID, Optional[str]]], limit: int = 10
    ) -> List[StructuredRecord]:
        """A bounded sample of rows from the given (document, sheet) pairs."""
        if not sheets:
            return []
        conditions = []
        for document_id, sheet_name in sheets:
            if sheet_name:
                conditions.append(
                    and_(StructuredRecord.document_id == document_id, StructuredRecord.sheet_name == sheet_name)
                )
            else:
                conditions.append(StructuredRecord.document_id == document_id)
        async with self.db.session() as session:
            result = await session.execute(
                select(StructuredRecord)
                .where(or_(*conditions))
                .order_by(StructuredRecord.updated_at.desc(), StructuredRecord.row_index)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def log_access(self, entries: Sequence[DocumentAccess]) -> None:
        if not entries:
            return
        async with self.db.session() as session:
            session.add_all(entries)
            await session.commit()

    # ==================== SYNC CONFIGS ====================

    async def save_sync_config(
        self,
        folder_id: str,
        *,
        folder_name: Optional[str] = None,
        team_context: str = "general",
        sync_enabled: bool = True,
        refresh_token: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> SyncConfig:
        async with self.db.session() as session:
            result = await session.execute(select(SyncConfig).where(SyncConfig.folder_id == folder_id))
            config = result.scalar_one_or_none()
            if config is None:
                config = SyncConfig(folder_id=folder_id)
                session.add(config)
            config.folder_name = folder_name
            config.team_context = team_context
            config.sync_enabled = sync_enabled
            if refresh_token:
                config.refresh_token = refresh_token
            config.user_id = user_id
            config.updated_at = utcnow()
            await session.commit()
            await session.refresh(config)
            return config

    async def get_sync_config(self, folder_id: str) -> Optional[SyncConfig]:
        async with self.db.session() as session:
            result = await session.execute(select(SyncConfig).where(SyncConfig.folder_id == folder_id))
            return result.scalar_one_or_none()

    async def list_sync_configs(self, enabled_only: bool = True) -> List[SyncConfig]:
        stmt = select(SyncConfig).order_by(SyncConfig.created_at)
        if enabled_only:
            stmt = stmt.where(SyncConfig.sync_enabled.is_(True))
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def touch_sync_config(self, folder_id: str) -> None:
        now = utcnow()
        async with self.db.session() as session:
            await session.execute(
                update(SyncConfig).where(SyncConfig.folder_id == folder_id).values(last_sync_at=now, updated_at=now)
            )
            await session.commit()
