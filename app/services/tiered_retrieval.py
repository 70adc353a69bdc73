"""Tiered retrieval over structured rows and embedded chunks.

Tiers run hot -> warm -> cold and stop as soon as the de-duplicated result
count reaches ``min_results``. Results from documents with recorded
relationships are expanded with a bounded sample of related rows.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from app.api.knowledge.schemas import RetrievalResponse, RetrievalResult, UserContext
from app.config.logger import app_logger, log_performance
from app.db.knowledge_store import KnowledgeStore
from app.models import DocumentAccess, DocumentRelationship, StructuredRecord
from app.services.embeddings import EmbeddingProvider
from app.services.query_classifier import QueryAnalysis, QueryClassifier

RELATED_SCORE = 0.25
SUGGESTED_SHEET_BONUS = 0.05
MAX_RELATIONSHIPS = 10
MAX_RELATED_ROWS = 10
DEDUP_PREFIX_CHARS = 100
ROW_FIELD_LIMIT = 20


@dataclass(frozen=True)
class TierConfig:
    name: str
    structured_limit: int
    semantic_top_k: int
    min_similarity: float
    score_factor: float
    recent_only: bool = False
    team_scoped: bool = True


HOT_TIER = TierConfig("hot", 20, 5, 0.75, 1.1, recent_only=True)
WARM_TIER = TierConfig("warm", 20, 5, 0.70, 1.0)
COLD_TIER = TierConfig("cold", 10, 5, 0.40, 0.8, team_scoped=False)


def format_structured_row(record: StructuredRecord) -> str:
    parts = [f"Sheet: {record.sheet_name}"]
    for label, value in (("Key", record.entity_key), ("Week", record.week), ("Date", record.date_value),
                         ("Category", record.category)):
        if value:
            parts.append(f"{label}: {value}")
    for name, value in list((record.field_values or {}).items())[:ROW_FIELD_LIMIT]:
        parts.append(f"{name}: {value}")
    if record.notes:
        parts.append(f"Notes: {record.notes}")
    return " | ".join(parts)


def dedup_key(result: RetrievalResult) -> str:
    if result.type == "structured":
        return f"{result.document_id}:{result.sheet_name}:{result.row_index}"
    return result.content[:DEDUP_PREFIX_CHARS]


def deduplicate(results: Sequence[RetrievalResult]) -> List[RetrievalResult]:
    """Keep the highest-scoring result per key, in first-seen order."""
    best: Dict[str, RetrievalResult] = {}
    for result in results:
        key = dedup_key(result)
        current = best.get(key)
        if current is None or result.score > current.score:
            best[key] = result
    return list(best.values())


def format_context(results: Sequence[RetrievalResult]) -> str:
    """Render results as a numbered context block for a downstream prompt."""
    if not results:
        return "No relevant documents found."
    blocks = []
    for index, result in enumerate(results, start=1):
        header = f"[{index}] {result.source}"
        if result.sheet_name:
            header += f" / {result.sheet_name}"
        if result.parent_section_title:
            header += f" / {result.parent_section_title}"
        if result.section_title and result.section_title != result.parent_section_title:
            header += f" / {result.section_title}"
        header += f" ({result.tier}, score {result.score:.2f})"
        if result.relationship:
            header += f" [related: {result.relationship}]"
        blocks.append(f"{header}\n{result.content}")
    return "\n\n".join(blocks)


class TieredRetriever:
    def __init__(
        self,
        store: KnowledgeStore,
        embedder: EmbeddingProvider,
        classifier: QueryClassifier,
        *,
        hot_window_days: int = 7,
        min_results: int = 3,
    ):
        self.store = store
        self.embedder = embedder
        self.classifier = classifier
        self.hot_window_days = hot_window_days
        self.min_results = min_results

    async def retrieve(self, query: str, user: Optional[UserContext] = None) -> RetrievalResponse:
        start_time = time.time()
        user = user or UserContext()
        analysis = await self.classifier.classify(query)
        run_structured = analysis.query_type in ("structured", "hybrid")
        run_semantic = analysis.query_type in ("semantic", "hybrid")

        query_vector = await self._query_vector(query) if run_semantic else None

        results: List[RetrievalResult] = []
        tiers_used: List[str] = []
        for name, search in (("hot", self._search_hot), ("warm", self._search_warm), ("cold", self._search_cold)):
            results.extend(await search(analysis, query_vector, user, run_structured))
            tiers_used.append(name)
            results = deduplicate(results)
            if len(results) >= self.min_results:
                break

        related = await self._expand(results)
        results = sorted(results + related, key=lambda r: r.score, reverse=True)

        await self._log_access(results, query, user)

        elapsed = round(time.time() - start_time, 3)
        response = RetrievalResponse(
            query_type=analysis.query_type,
            results=results,
            structured_count=sum(1 for r in results if r.type == "structured" and r.tier != "related"),
            semantic_count=sum(1 for r in results if r.type == "semantic"),
            related_count=len(related),
            tiers_used=tiers_used,
            elapsed_seconds=elapsed,
        )
        app_logger.info(
            f"Retrieval complete - type={analysis.query_type} tiers={','.join(tiers_used)} "
            f"structured={response.structured_count} semantic={response.semantic_count} "
            f"related={response.related_count} elapsed={elapsed:.3f}s"
        )
        log_performance("retrieve", elapsed, query_type=analysis.query_type, tiers=len(tiers_used))
        return response

    async def _query_vector(self, query: str) -> Optional[List[float]]:
        if not self.embedder.available:
            app_logger.warning("Embeddings unavailable; semantic search skipped")
            return None
        try:
            return await self.embedder.embed_query(query)
        except Exception as e:
            app_logger.warning(f"Query embedding failed; semantic search skipped: {e}")
            return None

    # ==================== Tiers ====================

    async def _search_hot(self, analysis, query_vector, user, run_structured) -> List[RetrievalResult]:
        return await self._search_tier(HOT_TIER, analysis, query_vector, user, run_structured)

    async def _search_warm(self, analysis, query_vector, user, run_structured) -> List[RetrievalResult]:
        return await self._search_tier(WARM_TIER, analysis, query_vector, user, run_structured)

    async def _search_cold(self, analysis, query_vector, user, run_structured) -> List[RetrievalResult]:
        return await self._search_tier(COLD_TIER, analysis, query_vector, user, run_structured)

    async def _search_tier(
        self,
        tier: TierConfig,
        analysis: QueryAnalysis,
        query_vector: Optional[List[float]],
        user: UserContext,
        run_structured: bool,
    ) -> List[RetrievalResult]:
        updated_since = None
        if tier.recent_only:
            updated_since = datetime.now(timezone.utc) - timedelta(days=self.hot_window_days)
        team_context = user.team_context if tier.team_scoped else None

        results: List[RetrievalResult] = []
        if run_structured:
            results.extend(await self._structured(tier, analysis, team_context, updated_since))
        if query_vector is not None:
            results.extend(await self._semantic(tier, query_vector, team_context, updated_since))
        app_logger.debug(f"Tier {tier.name} returned {len(results)} results")
        return results

    async def _structured(
        self,
        tier: TierConfig,
        analysis: QueryAnalysis,
        team_context: Optional[str],
        updated_since: Optional[datetime],
    ) -> List[RetrievalResult]:
        records = await self.store.search_structured(
            analysis.terms, analysis.entity_keys, team_context, updated_since, tier.structured_limit
        )
        return [
            self._structured_result(record, self._score_record(record, analysis) * tier.score_factor, tier.name)
            for record in records
        ]

    @staticmethod
    def _score_record(record: StructuredRecord, analysis: QueryAnalysis) -> float:
        keys = {k.upper() for k in analysis.entity_keys}
        if record.entity_key and record.entity_key.upper() in keys:
            score = 1.0
        elif analysis.terms:
            text = record.search_text or ""
            matched = sum(1 for term in analysis.terms if term in text)
            score = 0.5 + 0.5 * matched / len(analysis.terms)
        else:
            score = 0.5
        if record.sheet_type in analysis.suggested_sheet_types:
            score += SUGGESTED_SHEET_BONUS
        return score

    @staticmethod
    def _structured_result(record: StructuredRecord, score: float, tier: str, relationship=None) -> RetrievalResult:
        return RetrievalResult(
            type="structured",
            source=record.document_title or "Unknown document",
            source_url=record.source_url,
            content=format_structured_row(record),
            score=round(score, 4),
            tier=tier,
            document_id=str(record.document_id),
            sheet_name=record.sheet_name,
            row_index=record.row_index,
            relationship=relationship.relationship_type if relationship else None,
            relationship_description=relationship.description if relationship else None,
            metadata={
                "sheet_type": record.sheet_type,
                "entity_key": record.entity_key,
                "week": record.week,
                "date_value": record.date_value,
                "category": record.category,
            },
        )

    async def _semantic(
        self,
        tier: TierConfig,
        query_vector: List[float],
        team_context: Optional[str],
        updated_since: Optional[datetime],
    ) -> List[RetrievalResult]:
        scored = await self.store.semantic_search(
            query_vector,
            min_similarity=tier.min_similarity,
            top_k=tier.semantic_top_k,
            team_context=team_context,
            updated_since=updated_since,
        )

        parents = await self.store.get_chunks(c.parent_chunk_id for c, _, _ in scored if c.parent_chunk_id)
        results = []
        for chunk, document, similarity in scored:
            parent = parents.get(chunk.parent_chunk_id) if chunk.parent_chunk_id else None
            results.append(
                RetrievalResult(
                    type="semantic",
                    source=document.title,
                    source_url=document.source_url,
                    content=chunk.text,
                    score=round(similarity * tier.score_factor, 4),
                    tier=tier.name,
                    document_id=str(chunk.document_id),
                    sheet_name=chunk.sheet_name,
                    section_title=chunk.section_title,
                    parent_section_title=parent.section_title if parent else None,
                    metadata={"chunk_id": chunk.id, "level": chunk.level, "similarity": round(similarity, 4)},
                )
            )
        return results

    # ==================== Expansion ====================

    async def _expand(self, results: Sequence[RetrievalResult]) -> List[RetrievalResult]:
        """Append rows from sheets related to the sheets already in the results."""
        document_ids = list(dict.fromkeys(UUID(r.document_id) for r in results if r.document_id))
        if not document_ids:
            return []
        try:
            relationships = await self.store.relationships_for(document_ids, MAX_RELATIONSHIPS)
        except Exception as e:
            app_logger.warning(f"Relationship lookup failed; skipping expansion: {e}")
            return []

        present_docs = set(document_ids)
        present_sheets = {(UUID(r.document_id), r.sheet_name) for r in results if r.document_id}

        def side_present(document_id: UUID, sheet: Optional[str]) -> bool:
            if sheet is None:
                return document_id in present_docs
            return (document_id, sheet) in present_sheets or (document_id, None) in present_sheets

        targets: Dict[Tuple[UUID, Optional[str]], DocumentRelationship] = {}
        for rel in relationships:
            source_hit = side_present(rel.source_document_id, rel.source_sheet)
            target_hit = side_present(rel.target_document_id, rel.target_sheet)
            if source_hit and not target_hit:
                targets.setdefault((rel.target_document_id, rel.target_sheet), rel)
            elif target_hit and not source_hit:
                targets.setdefault((rel.source_document_id, rel.source_sheet), rel)
        if not targets:
            return []

        records = await self.store.records_for_sheets(list(targets.keys()), MAX_RELATED_ROWS)
        seen = {dedup_key(r) for r in results}
        related: List[RetrievalResult] = []
        for record in records:
            rel = targets.get((record.document_id, record.sheet_name)) or targets.get((record.document_id, None))
            if rel is None:
                continue
            result = self._structured_result(record, RELATED_SCORE, "related", relationship=rel)
            key = dedup_key(result)
            if key in seen:
                continue
            seen.add(key)
            related.append(result)
        return related

    async def _log_access(self, results: Sequence[RetrievalResult], query: str, user: UserContext) -> None:
        if not user.user_id or not results:
            return
        tiers: Dict[str, str] = {}
        for result in results:
            if result.document_id and result.document_id not in tiers:
                tiers[result.document_id] = result.tier
        entries = [
            DocumentAccess(document_id=UUID(doc_id), user_id=user.user_id, query_text=query[:2000], tier=tier)
            for doc_id, tier in tiers.items()
        ]
        try:
            await self.store.log_access(entries)
        except Exception as e:
            app_logger.warning(f"Failed to record document access: {e}")
