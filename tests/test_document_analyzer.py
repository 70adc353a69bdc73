"""Tests for schema inference, the fingerprint cache and relationship inference."""

import asyncio
import json
from uuid import uuid4

import pytest

from app.models import Document
from app.services.document_analyzer import DocumentAnalyzer, SheetAnalysis, fingerprint_rows
from app.services.inference import parse_json_response, strip_code_fences
from app.utils.errors import ValidationError

ROWS = [["SKU", "Week", "Qty"], ["A100", "W1", "10"], ["B200", "W1", "4"]]

ANALYSIS_JSON = json.dumps(
    {
        "header_row": 0,
        "data_start_row": 1,
        "sheet_type": "forecast",
        "columns": [
            {"index": 0, "original_header": "SKU", "normalized_name": "sku", "data_type": "string"},
            {"index": 2, "original_header": "Qty", "normalized_name": "qty", "data_type": "number"},
        ],
        "key_columns": [0],
        "logical_grouping_column": 0,
        "summary": "Weekly forecast by SKU",
    }
)


class MemoryAnalysisStore:
    def __init__(self):
        self.entries = {}

    async def get_cached_analysis(self, document_id, sheet_name, content_hash):
        return self.entries.get((document_id, sheet_name, content_hash))

    async def save_analysis(self, document_id, sheet_name, content_hash, analysis):
        self.entries.setdefault((document_id, sheet_name, content_hash), analysis)


class TestJsonParsing:
    def test_strips_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert parse_json_response('```\n[1, 2]\n```') == [1, 2]

    def test_invalid_json_raises_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_json_response("not json")

        assert exc_info.value.code == "validation_error"


class TestSheetAnalysisModel:
    def test_coerces_unknown_values(self):
        analysis = SheetAnalysis.model_validate(
            {
                "header_row": 2,
                "data_start_row": 1,
                "sheet_type": "Spaceships",
                "columns": [{"index": 0, "data_type": "blob"}],
                "key_columns": [0, "x", -1, True],
                "logical_grouping_column": "SKU",
            }
        )

        assert analysis.sheet_type == "general"
        assert analysis.data_start_row == 3
        assert analysis.columns[0].data_type == "string"
        assert analysis.key_columns == [0]
        assert analysis.grouping_column is None

    def test_fallback_and_empty_variants(self):
        assert SheetAnalysis.fallback("Tab").is_fallback
        assert SheetAnalysis.empty().header_row is None


class TestAnalyze:
    def test_valid_response(self, inference_factory):
        inference = inference_factory([f"```json\n{ANALYSIS_JSON}\n```"])
        analyzer = DocumentAnalyzer(inference, MemoryAnalysisStore())

        analysis = asyncio.run(analyzer.analyze(ROWS, "Forecast", "Demand Plan", ["Forecast", "Inventory"]))

        assert analysis.source == "inference"
        assert analysis.sheet_type == "forecast"
        assert analysis.grouping_column == 0
        assert "Other tabs in workbook: Inventory" in inference.prompts[0]

    def test_malformed_response_yields_fallback(self, inference_factory):
        analyzer = DocumentAnalyzer(inference_factory(["The sheet looks like a forecast."]), MemoryAnalysisStore())

        analysis = asyncio.run(analyzer.analyze(ROWS, "Forecast", "Demand Plan"))

        assert analysis.source == "fallback"
        assert analysis.header_row == 0

    def test_provider_failure_yields_fallback(self, inference_factory):
        analyzer = DocumentAnalyzer(inference_factory([]), MemoryAnalysisStore())

        analysis = asyncio.run(analyzer.analyze(ROWS, "Forecast", "Demand Plan"))

        assert analysis.is_fallback

    def test_empty_rows_skip_inference(self, inference_factory):
        inference = inference_factory([ANALYSIS_JSON])
        analyzer = DocumentAnalyzer(inference, MemoryAnalysisStore())

        analysis = asyncio.run(analyzer.analyze([], "Empty", "Demand Plan"))

        assert analysis.source == "empty"
        assert inference.calls == 0


class TestAnalysisCache:
    def test_identical_content_infers_once(self, inference_factory):
        inference = inference_factory([ANALYSIS_JSON, ANALYSIS_JSON])
        analyzer = DocumentAnalyzer(inference, MemoryAnalysisStore())
        document_id = uuid4()

        async def run():
            first = await analyzer.get_or_create_analysis(document_id, "Forecast", ROWS, "Demand Plan")
            second = await analyzer.get_or_create_analysis(document_id, "Forecast", [list(r) for r in ROWS], "Demand Plan")
            return first, second

        first, second = asyncio.run(run())

        assert inference.calls == 1
        assert first == second

    def test_changed_cell_invalidates(self, inference_factory):
        inference = inference_factory([ANALYSIS_JSON, ANALYSIS_JSON])
        analyzer = DocumentAnalyzer(inference, MemoryAnalysisStore())
        document_id = uuid4()
        changed = [list(r) for r in ROWS]
        changed[2][2] = "5"

        async def run():
            await analyzer.get_or_create_analysis(document_id, "Forecast", ROWS, "Demand Plan")
            await analyzer.get_or_create_analysis(document_id, "Forecast", changed, "Demand Plan")

        asyncio.run(run())

        assert inference.calls == 2
        assert fingerprint_rows(ROWS) != fingerprint_rows(changed)

    def test_rows_beyond_sample_do_not_affect_fingerprint(self):
        rows = ROWS + [["C300", "W1", "1"]]

        assert fingerprint_rows(rows, sample_rows=3) == fingerprint_rows(ROWS, sample_rows=3)

    def test_fallback_results_are_not_cached(self, inference_factory):
        inference = inference_factory(["nonsense", ANALYSIS_JSON])
        store = MemoryAnalysisStore()
        analyzer = DocumentAnalyzer(inference, store)
        document_id = uuid4()

        async def run():
            first = await analyzer.get_or_create_analysis(document_id, "Forecast", ROWS, "Demand Plan")
            second = await analyzer.get_or_create_analysis(document_id, "Forecast", ROWS, "Demand Plan")
            return first, second

        first, second = asyncio.run(run())

        assert first.source == "fallback"
        assert second.source == "inference"
        assert len(store.entries) == 1

    def test_cache_persists_in_knowledge_store(self, open_store, inference_factory):
        inference = inference_factory([ANALYSIS_JSON])
        document_id = uuid4()

        async def run():
            async with open_store() as store:
                await store.upsert_document(
                    Document(id=document_id, external_id="sheet-1", title="Demand Plan", kind="tabular")
                )
                analyzer = DocumentAnalyzer(inference, store)
                await analyzer.get_or_create_analysis(document_id, "Forecast", ROWS, "Demand Plan")
                return await analyzer.get_or_create_analysis(document_id, "Forecast", ROWS, "Demand Plan")

        analysis = asyncio.run(run())

        assert inference.calls == 1
        assert analysis.grouping_column == 0
        assert analysis.columns[1].normalized_name == "qty"


class TestRelationships:
    SHEETS = {"Forecast": ROWS, "Inventory": [["SKU", "On Hand"], ["A100", "50"]]}

    def test_valid_relationships_are_kept(self, inference_factory):
        payload = json.dumps(
            [
                {"source_sheet": "Forecast", "target_sheet": "Inventory", "relationship_type": "drives",
                 "description": "Forecast drives replenishment", "confidence": 0.9},
                {"source_sheet": "Forecast", "target_sheet": "Missing", "relationship_type": "references"},
                {"source_sheet": "Forecast", "target_sheet": "Inventory", "relationship_type": "explodes"},
            ]
        )
        analyzer = DocumentAnalyzer(inference_factory([payload]), MemoryAnalysisStore())

        relationships = asyncio.run(analyzer.analyze_relationships(self.SHEETS, "Demand Plan"))

        assert len(relationships) == 1
        assert relationships[0].relationship_type == "drives"
        assert relationships[0].confidence == 0.9

    def test_single_sheet_skips_inference(self, inference_factory):
        inference = inference_factory(["[]"])
        analyzer = DocumentAnalyzer(inference, MemoryAnalysisStore())

        assert asyncio.run(analyzer.analyze_relationships({"Only": ROWS}, "Demand Plan")) == []
        assert inference.calls == 0

    def test_failure_returns_empty(self, inference_factory):
        analyzer = DocumentAnalyzer(inference_factory(["{not json"]), MemoryAnalysisStore())

        assert asyncio.run(analyzer.analyze_relationships(self.SHEETS, "Demand Plan")) == []
