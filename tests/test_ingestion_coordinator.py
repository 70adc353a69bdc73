"""End-to-end ingestion tests against a temporary SQLite store."""

import asyncio
import json

import pytest

from app.models import document_id_for
from app.services.content_provider import ProviderCredentials, TabularContent, TextContent
from app.services.document_analyzer import DocumentAnalyzer
from app.services.hierarchical_chunker import HierarchicalChunker
from app.services.ingestion_coordinator import IngestionCoordinator
from app.services.structured_extractor import StructuredExtractor
from app.utils.errors import ConflictError, TransientProviderError

CREDENTIALS = ProviderCredentials(access_token="test-token")

FORECAST = [
    ["SKU", "Week", "Forecast Qty"],
    ["A100", "2025-W01", "120"],
    ["A100", "2025-W02", "135"],
    ["B200", "2025-W01", "40"],
]
INVENTORY = [["SKU", "On Hand"], ["A100", "500"], ["B200", "80"]]

SOP_TEXT = (
    "Warehouse returns are handled by the receiving team on weekdays only.\n\n"
    "# Inspection\n" + "Inspect each returned unit and record its condition in the log. " * 3 + "\n\n"
    "# Restocking\n" + "Restock sellable units within two business days of inspection. " * 3
)


def build_coordinator(store, provider, embedder, inference):
    return IngestionCoordinator(
        store,
        provider,
        DocumentAnalyzer(inference, store),
        HierarchicalChunker(min_chars=50),
        StructuredExtractor(),
        embedder,
        worker_id="test-worker",
    )


@pytest.fixture
def workbook(provider, source_factory):
    provider.files = [source_factory("sheet-1", "Demand Plan")]
    provider.tabular["sheet-1"] = TabularContent(
        title="Demand Plan",
        sheet_names=["Forecast", "Inventory"],
        rows={"Forecast": FORECAST, "Inventory": INVENTORY},
    )
    return provider


class TestDiscovery:
    def test_reconcile_counts_new_updated_skipped(self, open_store, workbook, embedder, inference_factory, source_factory):
        workbook.files.append(source_factory("doc-1", "Returns SOP", kind="text"))

        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, workbook, embedder, inference_factory(available=False))
                first = await coordinator.discover_and_reconcile("folder-1", CREDENTIALS, "supply")
                second = await coordinator.discover_and_reconcile("folder-1", CREDENTIALS, "supply")
                workbook.files[0] = source_factory("sheet-1", "Demand Plan", modified="2025-02-01T00:00:00Z")
                third = await coordinator.discover_and_reconcile("folder-1", CREDENTIALS, "supply")
                return first, second, third

        first, second, third = asyncio.run(run())

        assert (first.total_files, first.new, first.updated, first.skipped) == (2, 2, 0, 0)
        assert (second.new, second.updated, second.skipped) == (0, 0, 2)
        assert (third.new, third.updated, third.skipped) == (0, 1, 1)

    def test_row_failure_is_isolated(self, open_store, workbook, embedder, inference_factory, source_factory):
        workbook.files.append(source_factory("doc-1", "Returns SOP", kind="text"))

        async def run():
            async with open_store() as store:
                original = store.upsert_synced_file

                async def flaky(source, *args, **kwargs):
                    if source.external_id == "sheet-1":
                        raise RuntimeError("connection dropped with secret detail")
                    return await original(source, *args, **kwargs)

                store.upsert_synced_file = flaky
                coordinator = build_coordinator(store, workbook, embedder, inference_factory(available=False))
                return await coordinator.discover_and_reconcile("folder-1", CREDENTIALS)

        summary = asyncio.run(run())

        assert summary.new == 1
        assert [e.file_id for e in summary.errors] == ["sheet-1"]
        assert "secret" not in summary.errors[0].error

    def test_ingest_folder_conflicts_while_locked(self, open_store, workbook, embedder, inference_factory):
        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, workbook, embedder, inference_factory(available=False))
                await store.acquire_folder_lock("folder-1", "other-worker", 60)
                with pytest.raises(ConflictError):
                    await coordinator.ingest_folder("folder-1", CREDENTIALS)
                await store.release_folder_lock("folder-1")
                first = await coordinator.ingest_folder("folder-1", CREDENTIALS)
                second = await coordinator.ingest_folder("folder-1", CREDENTIALS)
                return first, second

        first, second = asyncio.run(run())

        assert first.new == 1
        assert second.skipped == 1

    def test_scheduled_sync_reports_each_folder(self, open_store, workbook, embedder, inference_factory):
        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, workbook, embedder, inference_factory(available=False))
                await coordinator.save_sync_config("folder-a", refresh_token="refresh-a", team_context="supply")
                await coordinator.save_sync_config("folder-b")
                await coordinator.save_sync_config("folder-c", refresh_token="refresh-c")
                await coordinator.save_sync_config("folder-d", refresh_token="refresh-d", sync_enabled=False)
                await store.acquire_folder_lock("folder-c", "other-worker", 60)
                results = await coordinator.run_scheduled_sync()
                return {r.folder_id: r for r in results}, await store.get_sync_config("folder-a")

        results, config = asyncio.run(run())

        assert set(results) == {"folder-a", "folder-b", "folder-c"}
        assert results["folder-a"].status == "synced"
        assert results["folder-a"].summary.new == 1
        assert results["folder-b"].status == "failed"
        assert results["folder-c"].status == "skipped"
        assert config.last_sync_at is not None


class TestProcessing:
    def test_processes_workbook_into_chunks_and_records(self, open_store, workbook, embedder, inference_factory):
        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, workbook, embedder, inference_factory(available=False))
                await coordinator.ingest_folder("folder-1", CREDENTIALS, team_context="supply")
                summary = await coordinator.process_pending(credentials=CREDENTIALS)
                document_id = document_id_for("sheet-1")
                return (
                    summary,
                    await store.get_document(document_id),
                    await store.list_chunks(document_id),
                    await store.list_records(document_id),
                    await store.get_synced_file("sheet-1"),
                )

        summary, document, chunks, records, synced = asyncio.run(run())

        assert (summary.claimed, summary.processed, summary.failed) == (1, 1, 0)
        assert summary.results[0].chunks == 6
        assert document.metadata_json["sheet_names"] == ["Forecast", "Inventory"]
        assert document.team_context == "supply"
        assert [c.chunk_index for c in chunks] == list(range(6))
        assert all(c.embedding is not None for c in chunks)
        forecast = [c for c in chunks if c.sheet_name == "Forecast"]
        assert len(forecast) == 3
        assert len(records) == 5
        assert {r.entity_key for r in records} == {"A100", "B200"}
        assert synced.sync_status == "synced"
        assert synced.document_id == document.id

    def test_reingestion_is_idempotent(self, open_store, workbook, embedder, inference_factory, source_factory):
        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, workbook, embedder, inference_factory(available=False))
                await coordinator.ingest_folder("folder-1", CREDENTIALS)
                first = await coordinator.process_pending(credentials=CREDENTIALS)
                document_id = document_id_for("sheet-1")
                before = (await store.list_chunks(document_id), await store.list_records(document_id))

                workbook.files[0] = source_factory("sheet-1", "Demand Plan", modified="2025-02-01T00:00:00Z")
                await coordinator.ingest_folder("folder-1", CREDENTIALS)
                second = await coordinator.process_pending(credentials=CREDENTIALS)
                after = (await store.list_chunks(document_id), await store.list_records(document_id))
                return first, second, before, after

        first, second, before, after = asyncio.run(run())

        assert first.results[0].document_id == second.results[0].document_id
        assert [(c.id, c.text) for c in before[0]] == [(c.id, c.text) for c in after[0]]
        assert [(r.sheet_name, r.row_index, r.field_values) for r in before[1]] == [
            (r.sheet_name, r.row_index, r.field_values) for r in after[1]
        ]

    def test_inferred_analysis_and_relationships(self, open_store, workbook, embedder, inference_factory):
        forecast_analysis = json.dumps(
            {"header_row": 0, "data_start_row": 1, "sheet_type": "forecast", "key_columns": [0, 1],
             "logical_grouping_column": 0}
        )
        inventory_analysis = json.dumps({"header_row": 0, "data_start_row": 1, "sheet_type": "inventory"})
        relationships = json.dumps(
            [{"source_sheet": "Forecast", "target_sheet": "Inventory", "relationship_type": "drives",
              "description": "Forecast drives replenishment", "confidence": 0.8}]
        )
        inference = inference_factory([forecast_analysis, inventory_analysis, relationships])

        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, workbook, embedder, inference)
                await coordinator.ingest_folder("folder-1", CREDENTIALS)
                await coordinator.process_pending(credentials=CREDENTIALS)
                document_id = document_id_for("sheet-1")
                return (
                    await store.list_chunks(document_id),
                    await store.list_records(document_id),
                    await store.relationships_for([document_id]),
                )

        chunks, records, stored_relationships = asyncio.run(run())

        assert inference.calls == 3
        # Forecast grouped by SKU, Inventory in one row batch
        assert len(chunks) == 5
        assert {r.sheet_type for r in records} == {"forecast", "inventory"}
        assert len(stored_relationships) == 1
        assert stored_relationships[0].source_sheet == "Forecast"
        assert stored_relationships[0].target_sheet == "Inventory"

    def test_processes_text_document(self, open_store, provider, embedder, inference_factory, source_factory):
        provider.files = [source_factory("doc-1", "Returns SOP", kind="text")]
        provider.texts["doc-1"] = TextContent(title="Returns SOP", text=SOP_TEXT)

        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, provider, embedder, inference_factory(available=False))
                await coordinator.ingest_folder("folder-1", CREDENTIALS)
                summary = await coordinator.process_pending(credentials=CREDENTIALS)
                return summary, await store.list_chunks(document_id_for("doc-1"))

        summary, chunks = asyncio.run(run())

        assert summary.processed == 1
        assert summary.results[0].records == 0
        assert [c.section_title for c in chunks[1:]] == ["Introduction", "# Inspection", "# Restocking"]

    def test_embedding_failure_rolls_back_new_document(self, open_store, workbook, embedder, inference_factory):
        embedder.fail_with = TransientProviderError("Embedding service unavailable")

        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, workbook, embedder, inference_factory(available=False))
                await coordinator.ingest_folder("folder-1", CREDENTIALS)
                summary = await coordinator.process_pending(credentials=CREDENTIALS)
                return (
                    summary,
                    await store.get_document(document_id_for("sheet-1")),
                    await store.get_synced_file("sheet-1"),
                )

        summary, document, synced = asyncio.run(run())

        assert summary.failed == 1
        assert summary.results[0].error == "Embedding service unavailable"
        assert document is None
        assert synced.sync_status == "error"
        assert synced.error_message == "Embedding service unavailable"

    def test_failed_reprocess_keeps_existing_document(
        self, open_store, workbook, embedder, inference_factory, source_factory
    ):
        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, workbook, embedder, inference_factory(available=False))
                await coordinator.ingest_folder("folder-1", CREDENTIALS)
                await coordinator.process_pending(credentials=CREDENTIALS)

                workbook.files[0] = source_factory("sheet-1", "Demand Plan", modified="2025-02-01T00:00:00Z")
                await coordinator.ingest_folder("folder-1", CREDENTIALS)
                embedder.fail_with = TransientProviderError("Embedding service unavailable")
                summary = await coordinator.process_pending(credentials=CREDENTIALS)
                document_id = document_id_for("sheet-1")
                return summary, await store.get_document(document_id), await store.list_chunks(document_id)

        summary, document, chunks = asyncio.run(run())

        assert summary.failed == 1
        assert document is not None
        assert len(chunks) == 6

    def test_one_bad_file_does_not_abort_batch(self, open_store, workbook, embedder, inference_factory, source_factory):
        workbook.files.append(source_factory("missing-1", "Gone"))

        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, workbook, embedder, inference_factory(available=False))
                await coordinator.ingest_folder("folder-1", CREDENTIALS)
                return await coordinator.process_pending(credentials=CREDENTIALS)

        summary = asyncio.run(run())

        statuses = {r.file_id: r.status for r in summary.results}
        assert statuses == {"sheet-1": "processed", "missing-1": "failed"}

    def test_empty_workbook_fails_without_document(self, open_store, provider, embedder, inference_factory, source_factory):
        provider.files = [source_factory("blank-1", "Blank")]
        provider.tabular["blank-1"] = TabularContent(title="Blank", sheet_names=["Sheet1"], rows={"Sheet1": []})

        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, provider, embedder, inference_factory(available=False))
                await coordinator.ingest_folder("folder-1", CREDENTIALS)
                summary = await coordinator.process_pending(credentials=CREDENTIALS)
                return summary, await store.get_document(document_id_for("blank-1"))

        summary, document = asyncio.run(run())

        assert summary.results[0].error == "No content could be extracted from Blank"
        assert document is None

    def test_saved_refresh_token_is_used(self, open_store, workbook, embedder, inference_factory):
        seen = []
        original = workbook.fetch_tabular

        async def recording_fetch(file_id, credentials):
            seen.append(credentials.refresh_token)
            return await original(file_id, credentials)

        workbook.fetch_tabular = recording_fetch

        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, workbook, embedder, inference_factory(available=False))
                await coordinator.save_sync_config("folder-1", refresh_token="saved-refresh")
                await coordinator.ingest_folder("folder-1", CREDENTIALS)
                return await coordinator.process_pending()

        summary = asyncio.run(run())

        assert summary.processed == 1
        assert seen == ["saved-refresh"]

    def test_missing_credentials_release_with_error(self, open_store, workbook, embedder, inference_factory):
        async def run():
            async with open_store() as store:
                coordinator = build_coordinator(store, workbook, embedder, inference_factory(available=False))
                await coordinator.ingest_folder("folder-1", CREDENTIALS)
                summary = await coordinator.process_pending()
                return summary, await store.get_synced_file("sheet-1")

        summary, synced = asyncio.run(run())

        assert summary.failed == 1
        assert synced.sync_status == "error"
        assert "No saved credentials" in synced.error_message
