"""Folder sync, work claiming and per-file processing."""

from __future__ import annotations

import socket
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from app.api.knowledge.schemas import (
    FileProcessResult,
    FileSyncError,
    FolderSyncResult,
    ProcessSummary,
    SyncSummary,
)
from app.config.logger import app_logger, log_performance
from app.db.knowledge_store import NEW, SKIPPED, UPDATED, KnowledgeStore
from app.models import Document, DocumentChunk, DocumentRelationship, StructuredRecord, SyncedFile, document_id_for
from app.services.content_provider import TABULAR, ContentProvider, ProviderCredentials
from app.services.document_analyzer import DocumentAnalyzer
from app.services.embeddings import EmbeddingProvider
from app.services.hierarchical_chunker import ChunkContext, HierarchicalChunker
from app.services.structured_extractor import DocumentMetadata, StructuredExtractor
from app.utils.errors import ConflictError, ValidationError, public_message


class ClaimScope:
    """Tracks whether a claimed file reached ``mark_processed``."""

    def __init__(self, coordinator: "IngestionCoordinator", record: SyncedFile):
        self.coordinator = coordinator
        self.record = record
        self.processed = False

    async def mark_processed(self, document_id: UUID) -> None:
        await self.coordinator.mark_processed(self.record.external_id, document_id)
        self.processed = True


class IngestionCoordinator:
    def __init__(
        self,
        store: KnowledgeStore,
        provider: ContentProvider,
        analyzer: DocumentAnalyzer,
        chunker: HierarchicalChunker,
        extractor: StructuredExtractor,
        embedder: EmbeddingProvider,
        *,
        batch_size: int = 10,
        lock_ttl_seconds: float = 30 * 60,
        stale_claim_seconds: float = 30 * 60,
        worker_id: Optional[str] = None,
    ):
        self.store = store
        self.provider = provider
        self.analyzer = analyzer
        self.chunker = chunker
        self.extractor = extractor
        self.embedder = embedder
        self.batch_size = batch_size
        self.lock_ttl_seconds = lock_ttl_seconds
        self.stale_claim_seconds = stale_claim_seconds
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid4().hex[:8]}"

    # ==================== Discovery ====================

    async def discover_and_reconcile(
        self,
        folder_id: str,
        credentials: ProviderCredentials,
        team_context: str = "general",
        user_id: Optional[str] = None,
    ) -> SyncSummary:
        """List a folder and upsert one sync row per file.

        Listing failures propagate; a failed row write is reported per file.
        """
        start_time = time.time()
        files = await self.provider.list_files(folder_id, credentials, recursive=True)
        summary = SyncSummary(folder_id=folder_id, total_files=len(files))

        for source in files:
            try:
                outcome = await self.store.upsert_synced_file(source, folder_id, team_context, user_id)
            except Exception as e:
                app_logger.error(f"Failed to record sync state for {source.external_id}: {e}")
                summary.errors.append(
                    FileSyncError(file_id=source.external_id, name=source.name, error=public_message(e))
                )
                continue
            if outcome == NEW:
                summary.new += 1
            elif outcome == UPDATED:
                summary.updated += 1
            elif outcome == SKIPPED:
                summary.skipped += 1

        summary.elapsed_seconds = round(time.time() - start_time, 2)
        app_logger.info(
            f"Folder sync complete - folder={folder_id} new={summary.new} updated={summary.updated} "
            f"skipped={summary.skipped} errors={len(summary.errors)} elapsed={summary.elapsed_seconds:.2f}s"
        )
        log_performance("folder_sync", summary.elapsed_seconds, folder_id=folder_id, files=len(files))
        return summary

    async def ingest_folder(
        self,
        folder_id: str,
        credentials: ProviderCredentials,
        team_context: str = "general",
        user_id: Optional[str] = None,
    ) -> SyncSummary:
        """Reconcile a folder under its folder lock. Raises ConflictError if held."""
        async with self.folder_lock(folder_id):
            summary = await self.discover_and_reconcile(folder_id, credentials, team_context, user_id)
            await self.store.touch_sync_config(folder_id)
            return summary

    async def run_scheduled_sync(self) -> List[FolderSyncResult]:
        """Sync every enabled folder config, skipping folders already in progress."""
        results: List[FolderSyncResult] = []
        for config in await self.store.list_sync_configs(enabled_only=True):
            if not config.refresh_token:
                results.append(
                    FolderSyncResult(folder_id=config.folder_id, status="failed", error="No refresh token saved")
                )
                continue
            try:
                summary = await self.ingest_folder(
                    config.folder_id,
                    ProviderCredentials(refresh_token=config.refresh_token),
                    team_context=config.team_context,
                    user_id=config.user_id,
                )
                results.append(FolderSyncResult(folder_id=config.folder_id, status="synced", summary=summary))
            except ConflictError as e:
                app_logger.info(f"Skipping folder {config.folder_id}: {e.message}")
                results.append(FolderSyncResult(folder_id=config.folder_id, status="skipped", error=e.message))
            except Exception as e:
                app_logger.error(f"Scheduled sync failed for folder {config.folder_id}: {e}")
                results.append(
                    FolderSyncResult(folder_id=config.folder_id, status="failed", error=public_message(e))
                )
        return results

    async def save_sync_config(self, folder_id: str, **options):
        return await self.store.save_sync_config(folder_id, **options)

    async def get_sync_stats(self) -> Dict[str, int]:
        return await self.store.get_sync_stats()

    # ==================== Locks and claims ====================

    async def acquire_folder_lock(self, folder_id: str, ttl_seconds: Optional[float] = None) -> bool:
        ttl = self.lock_ttl_seconds if ttl_seconds is None else ttl_seconds
        acquired = await self.store.acquire_folder_lock(folder_id, self.worker_id, ttl)
        if acquired:
            app_logger.debug(f"Acquired lock on folder {folder_id} for {ttl:.0f}s")
        return acquired

    async def release_folder_lock(self, folder_id: str) -> None:
        await self.store.release_folder_lock(folder_id, self.worker_id)

    @asynccontextmanager
    async def folder_lock(self, folder_id: str, ttl_seconds: Optional[float] = None) -> AsyncIterator[None]:
        if not await self.acquire_folder_lock(folder_id, ttl_seconds):
            raise ConflictError(f"Sync already in progress for folder {folder_id}")
        try:
            yield
        finally:
            await self.release_folder_lock(folder_id)

    async def claim_batch(self, limit: Optional[int] = None) -> List[SyncedFile]:
        claimed = await self.store.claim_files(limit or self.batch_size)
        if claimed:
            app_logger.info(f"Worker {self.worker_id} claimed {len(claimed)} files")
        return claimed

    async def release(self, file_id: str, error_message: Optional[str] = None) -> None:
        await self.store.release_file(file_id, error_message)
        if error_message:
            app_logger.warning(f"Released file {file_id} with error: {error_message}")
        else:
            app_logger.info(f"Released file {file_id} back to pending")

    async def mark_processed(self, file_id: str, document_id: UUID) -> None:
        await self.store.mark_file_processed(file_id, document_id)

    @asynccontextmanager
    async def claim_scope(self, record: SyncedFile) -> AsyncIterator[ClaimScope]:
        """Release the claim on every exit path that did not mark it processed."""
        scope = ClaimScope(self, record)
        try:
            yield scope
        except BaseException as exc:
            if not scope.processed:
                message = public_message(exc) if isinstance(exc, Exception) else "Processing interrupted"
                await self.release(record.external_id, message)
            raise
        else:
            if not scope.processed:
                await self.release(record.external_id, None)

    # ==================== Processing ====================

    async def process_pending(
        self,
        limit: Optional[int] = None,
        credentials: Optional[ProviderCredentials] = None,
    ) -> ProcessSummary:
        """Claim a batch and process files one at a time; failures stay per file."""
        start_time = time.time()
        summary = ProcessSummary()
        summary.requeued_stale = await self.store.requeue_stale_claims(self.stale_claim_seconds)

        claimed = await self.claim_batch(limit)
        summary.claimed = len(claimed)
        for record in claimed:
            result = await self._process_claimed(record, credentials)
            summary.results.append(result)
            if result.status == "processed":
                summary.processed += 1
            else:
                summary.failed += 1

        summary.elapsed_seconds = round(time.time() - start_time, 2)
        log_performance(
            "process_pending",
            summary.elapsed_seconds,
            claimed=summary.claimed,
            processed=summary.processed,
            failed=summary.failed,
        )
        return summary

    async def _process_claimed(
        self, record: SyncedFile, credentials: Optional[ProviderCredentials]
    ) -> FileProcessResult:
        started = time.time()
        try:
            async with self.claim_scope(record) as scope:
                creds = credentials or await self._credentials_for(record)
                document_id, chunk_count, record_count = await self.process_file(record, creds)
                await scope.mark_processed(document_id)
        except Exception as e:
            app_logger.opt(exception=e).error(f"Failed to process {record.name} ({record.external_id}): {e}")
            return FileProcessResult(
                file_id=record.external_id,
                name=record.name,
                status="failed",
                error=public_message(e),
                elapsed_seconds=round(time.time() - started, 2),
            )

        app_logger.info(f"Processed {record.name}: chunks={chunk_count} records={record_count}")
        return FileProcessResult(
            file_id=record.external_id,
            name=record.name,
            status="processed",
            document_id=str(document_id),
            chunks=chunk_count,
            records=record_count,
            elapsed_seconds=round(time.time() - started, 2),
        )

    async def _credentials_for(self, record: SyncedFile) -> ProviderCredentials:
        config = await self.store.get_sync_config(record.folder_id)
        if config is None or not config.refresh_token:
            raise ValidationError(f"No saved credentials for folder {record.folder_id}")
        return ProviderCredentials(refresh_token=config.refresh_token)

    async def process_file(self, record: SyncedFile, credentials: ProviderCredentials) -> Tuple[UUID, int, int]:
        """Fetch, analyze, chunk, embed and persist one file.

        A document created by this call is deleted again if a later stage fails.
        """
        document_id = document_id_for(record.external_id)
        created = False
        try:
            if record.kind == TABULAR:
                content = await self.provider.fetch_tabular(record.external_id, credentials)
                created = await self.store.upsert_document(
                    self._document(record, document_id, content.title, {"sheet_names": content.sheet_names})
                )
                chunks, records, relationships = await self._build_tabular(document_id, content, record)
            else:
                content = await self.provider.fetch_text(record.external_id, credentials)
                created = await self.store.upsert_document(
                    self._document(record, document_id, content.title, {"characters": len(content.text)})
                )
                context = ChunkContext(document_id, content.title, record.team_context)
                chunks, records, relationships = self.chunker.chunk_document(content.text, context), [], None

            if not chunks:
                raise ValidationError(f"No content could be extracted from {record.name}")

            await self._embed(chunks)
            await self.store.replace_document_content(document_id, chunks, records, relationships)
        except BaseException:
            if created:
                await self._rollback_document(document_id)
            raise

        return document_id, len(chunks), len(records)

    @staticmethod
    def _document(record: SyncedFile, document_id: UUID, title: str, extra: Dict) -> Document:
        return Document(
            id=document_id,
            external_id=record.external_id,
            title=title or record.name,
            kind=record.kind,
            source_url=record.source_url,
            team_context=record.team_context,
            metadata_json={
                "mime_type": record.mime_type,
                "owners": record.owners,
                "modified_time": record.modified_time.isoformat() if record.modified_time else None,
                **extra,
            },
        )

    async def _build_tabular(
        self, document_id: UUID, content, record: SyncedFile
    ) -> Tuple[List[DocumentChunk], List[StructuredRecord], List[DocumentRelationship]]:
        sheets = {name: content.rows.get(name) or [] for name in content.sheet_names}
        sheets = {name: rows for name, rows in sheets.items() if rows}

        analyses = {}
        relationships: List[DocumentRelationship] = []
        if self.analyzer.available:
            for name, rows in sheets.items():
                analyses[name] = await self.analyzer.get_or_create_analysis(
                    document_id, name, rows, content.title, content.sheet_names
                )
            if len(sheets) >= 2:
                for inferred in await self.analyzer.analyze_relationships(sheets, content.title):
                    relationships.append(
                        DocumentRelationship(
                            source_document_id=document_id,
                            source_sheet=inferred.source_sheet,
                            target_document_id=document_id,
                            target_sheet=inferred.target_sheet,
                            relationship_type=inferred.relationship_type,
                            description=inferred.description,
                            confidence=inferred.confidence,
                        )
                    )
        else:
            app_logger.warning(f"Inference unavailable; using header heuristics for {record.name}")

        metadata = DocumentMetadata(document_id, content.title, record.source_url, record.team_context)
        context = ChunkContext(document_id, content.title, record.team_context)
        chunks: List[DocumentChunk] = []
        records: List[StructuredRecord] = []
        for name, rows in sheets.items():
            analysis = analyses.get(name)
            records.extend(self.extractor.extract(rows, name, analysis, metadata))
            chunks.extend(self.chunker.chunk_sheet(rows, name, analysis, context))

        for index, chunk in enumerate(chunks):
            chunk.chunk_index = index
        return chunks, records, relationships

    async def _embed(self, chunks: Sequence[DocumentChunk]) -> None:
        vectors = await self.embedder.embed([chunk.text for chunk in chunks])
        for chunk, vector in zip(chunks, vectors):
            chunk.embedding = vector

    async def _rollback_document(self, document_id: UUID) -> None:
        try:
            await self.store.delete_document(document_id)
            app_logger.warning(f"Rolled back partially ingested document {document_id}")
        except Exception as e:
            app_logger.error(f"Rollback of document {document_id} failed: {e}")
