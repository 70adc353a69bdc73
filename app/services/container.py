"""Process-wide service wiring, built once at start-up and passed by reference."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from app.config.logger import app_logger
from app.config.settings import Settings
from app.db.db import Database
from app.db.knowledge_store import KnowledgeStore
from app.models import EMBEDDING_DIMENSIONS
from app.services.content_provider import ContentProvider
from app.services.document_analyzer import DocumentAnalyzer
from app.services.embeddings import EmbeddingProvider
from app.services.google_drive import GoogleDriveProvider
from app.services.hierarchical_chunker import HierarchicalChunker
from app.services.inference import InferenceClient
from app.services.ingestion_coordinator import IngestionCoordinator
from app.services.openai_clients import init_openai_client
from app.services.query_classifier import QueryClassifier
from app.services.structured_extractor import StructuredExtractor
from app.services.tiered_retrieval import TieredRetriever
from app.utils.resilience import RetryPolicy


@dataclass
class KnowledgeServices:
    database: Database
    store: KnowledgeStore
    coordinator: IngestionCoordinator
    retriever: TieredRetriever
    http_client: Optional[httpx.AsyncClient] = None

    async def init(self) -> None:
        await self.database.init()

    async def aclose(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
        await self.database.dispose()


def _policy(settings: Settings, timeout_seconds: float) -> RetryPolicy:
    return RetryPolicy(
        timeout_seconds=timeout_seconds,
        max_attempts=settings.RETRY_MAX_ATTEMPTS,
        base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
        max_jitter_seconds=settings.RETRY_MAX_JITTER_SECONDS,
    )


def build_services(
    settings: Settings,
    *,
    database: Optional[Database] = None,
    provider: Optional[ContentProvider] = None,
    inference: Optional[InferenceClient] = None,
    embedder: Optional[EmbeddingProvider] = None,
) -> KnowledgeServices:
    """Wire the pipeline from settings; any collaborator may be supplied instead."""
    database = database or Database(settings.effective_database_url)
    store = KnowledgeStore(database)

    http_client: Optional[httpx.AsyncClient] = None
    if provider is None:
        http_client = httpx.AsyncClient(timeout=settings.FETCH_TIMEOUT_SECONDS)
        provider = GoogleDriveProvider(
            http_client,
            _policy(settings, settings.FETCH_TIMEOUT_SECONDS),
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            token_url=settings.GOOGLE_TOKEN_URL,
            drive_api_url=settings.GOOGLE_DRIVE_API_URL,
            sheets_api_url=settings.GOOGLE_SHEETS_API_URL,
            max_depth=settings.GOOGLE_DRIVE_MAX_DEPTH,
        )

    if inference is None or embedder is None:
        clients = init_openai_client(settings.OPENAI_API_KEY)
        inference = inference or InferenceClient(
            clients, settings.OPENAI_MODEL, _policy(settings, settings.INFERENCE_TIMEOUT_SECONDS)
        )
        embedder = embedder or EmbeddingProvider(
            clients,
            settings.OPENAI_EMBEDDING_MODEL,
            _policy(settings, settings.EMBEDDING_TIMEOUT_SECONDS),
            batch_size=settings.OPENAI_EMBEDDING_BATCH_SIZE,
            max_input_chars=settings.OPENAI_EMBEDDING_MAX_INPUT_CHARS,
            dimensions=EMBEDDING_DIMENSIONS,
        )

    analyzer = DocumentAnalyzer(
        inference,
        store,
        sample_rows=settings.ANALYSIS_SAMPLE_ROWS,
        max_tokens=settings.OPENAI_ANALYSIS_MAX_TOKENS,
        temperature=settings.OPENAI_ANALYSIS_TEMPERATURE,
    )
    coordinator = IngestionCoordinator(
        store,
        provider,
        analyzer,
        HierarchicalChunker(settings.CHUNK_MAX_CHARS, settings.CHUNK_MIN_CHARS, settings.CHUNK_ROWS_PER_BATCH),
        StructuredExtractor(),
        embedder,
        batch_size=settings.PROCESS_BATCH_SIZE,
        lock_ttl_seconds=settings.FOLDER_LOCK_TTL_SECONDS,
        stale_claim_seconds=settings.STALE_CLAIM_TIMEOUT_SECONDS,
    )
    retriever = TieredRetriever(
        store,
        embedder,
        QueryClassifier(inference, max_tokens=settings.OPENAI_INTENT_MAX_TOKENS),
        hot_window_days=settings.HOT_WINDOW_DAYS,
        min_results=settings.MIN_RESULTS_PER_TIER,
    )

    app_logger.info(f"Knowledge services wired (inference={'on' if inference.available else 'off'})")
    return KnowledgeServices(
        database=database,
        store=store,
        coordinator=coordinator,
        retriever=retriever,
        http_client=http_client,
    )
