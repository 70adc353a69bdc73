"""Tests for spreadsheet and document chunking."""

from uuid import uuid4

import pytest

from app.services.document_analyzer import SheetAnalysis
from app.services.hierarchical_chunker import ChunkContext, HierarchicalChunker, heuristic_analysis

FORECAST_ROWS = [
    ["SKU", "Week", "Forecast Qty"],
    ["A100", "2025-W01", "120"],
    ["A100", "2025-W02", "135"],
    ["B200", "2025-W01", "40"],
]


def assert_hierarchy(chunks):
    by_id = {c.id: c for c in chunks}
    assert len(by_id) == len(chunks), "chunk ids must be unique"
    for chunk in chunks:
        seen = set()
        current = chunk
        while current.parent_chunk_id is not None:
            assert current.id not in seen
            seen.add(current.id)
            parent = by_id[current.parent_chunk_id]
            assert parent.document_id == chunk.document_id
            current = parent


@pytest.fixture
def context():
    return ChunkContext(document_id=uuid4(), document_title="Demand Plan", team_context="supply")


class TestSheetChunking:
    def test_forecast_grouped_by_sku(self, context):
        analysis = SheetAnalysis(header_row=0, data_start_row=1, sheet_type="forecast", grouping_column=0)

        chunks = HierarchicalChunker().chunk_sheet(FORECAST_ROWS, "Forecast", analysis, context)

        assert len(chunks) == 3
        root, *groups = chunks
        assert root.parent_chunk_id is None
        assert root.level == "section"
        assert [g.metadata_json["group_key"] for g in groups] == ["A100", "B200"]
        assert all(g.parent_chunk_id == root.id and g.level == "group" for g in groups)
        assert "Row 1" in groups[0].text and "Row 2" in groups[0].text
        assert "B200" not in groups[0].text
        assert "Row 3" in groups[1].text
        assert_hierarchy(chunks)

    def test_ids_are_stable_across_runs(self, context):
        analysis = SheetAnalysis(header_row=0, data_start_row=1, grouping_column=0)
        chunker = HierarchicalChunker()

        first = [c.id for c in chunker.chunk_sheet(FORECAST_ROWS, "Forecast", analysis, context)]
        second = [c.id for c in chunker.chunk_sheet(FORECAST_ROWS, "Forecast", analysis, context)]

        assert first == second
        assert first[0] == f"{context.document_id}:Forecast:summary"

    def test_tab_names_differing_by_whitespace_get_distinct_ids(self, context):
        analysis = SheetAnalysis(header_row=0, data_start_row=1, grouping_column=0)
        chunker = HierarchicalChunker()

        padded = chunker.chunk_sheet(FORECAST_ROWS, " Plan", analysis, context)
        plain = chunker.chunk_sheet(FORECAST_ROWS, "Plan", analysis, context)

        assert plain[0].id == f"{context.document_id}:Plan:summary"
        assert padded[0].id != plain[0].id
        assert not {c.id for c in padded} & {c.id for c in plain}
        assert_hierarchy(padded + plain)

    def test_row_batches_without_grouping_column(self, context):
        rows = [["Warehouse", "Units"]] + [[f"WH-{i}", str(i)] for i in range(25)]
        analysis = SheetAnalysis(header_row=0, data_start_row=1)

        chunks = HierarchicalChunker(rows_per_batch=10).chunk_sheet(rows, "Inventory", analysis, context)

        assert len(chunks) == 4
        assert [c.section_title for c in chunks[1:]] == [
            "Inventory Rows 1-10",
            "Inventory Rows 11-20",
            "Inventory Rows 21-25",
        ]
        assert_hierarchy(chunks)

    def test_small_data_rows_are_kept(self, context):
        rows = [["SKU"], ["A"]]
        analysis = SheetAnalysis(header_row=0, data_start_row=1)

        chunks = HierarchicalChunker(min_chars=500).chunk_sheet(rows, "Tiny", analysis, context)

        assert len(chunks) == 2
        assert "Row 1: SKU: A" in chunks[1].text

    def test_oversized_group_splits_into_parts_with_prefix(self, context):
        rows = [["SKU", "Note"]] + [["A100", "x" * 80] for _ in range(10)]
        analysis = SheetAnalysis(header_row=0, data_start_row=1, grouping_column=0)

        chunks = HierarchicalChunker(max_chars=300).chunk_sheet(rows, "Forecast", analysis, context)
        parts = chunks[1:]

        assert len(parts) > 1
        assert all(p.text.startswith("[Forecast] SKU: A100\nHeaders: SKU | Note") for p in parts)
        assert all(p.id.startswith(f"{context.document_id}:Forecast:group:A100:part-") for p in parts)
        assert sum(p.text.count("Row ") for p in parts) == 10

    def test_heuristic_grouping_when_analysis_missing(self, context):
        chunks = HierarchicalChunker().chunk_sheet(FORECAST_ROWS, "Forecast", None, context)

        assert len(chunks) == 3
        assert heuristic_analysis(FORECAST_ROWS).grouping_column == 0

    def test_blank_rows_are_skipped(self, context):
        rows = [["SKU", "Qty"], ["", ""], ["A100", "1"]]
        analysis = SheetAnalysis(header_row=0, data_start_row=1)

        chunks = HierarchicalChunker().chunk_sheet(rows, "Forecast", analysis, context)

        assert "Data rows: 1" in chunks[0].text
        assert chunks[1].id.endswith(":rows-2")

    def test_empty_sheet(self, context):
        assert HierarchicalChunker().chunk_sheet([], "Empty", None, context) == []


class TestDocumentChunking:
    def test_sections_become_children(self, context):
        text = (
            "This handbook covers warehouse receiving for all teams and should be read before a first shift.\n\n"
            "# Receiving\n" + "Check every pallet against the packing list before signing. " * 3 + "\n\n"
            "# Returns\n" + "Returned goods are inspected and logged within one business day. " * 3
        )

        chunks = HierarchicalChunker(min_chars=50).chunk_document(text, context)

        root, *children = chunks
        assert root.parent_chunk_id is None
        assert "1. # Receiving" in root.text
        assert [c.section_title for c in children] == ["Introduction", "# Receiving", "# Returns"]
        assert all(c.parent_chunk_id == root.id for c in children)
        assert [c.chunk_index for c in chunks] == [0, 1, 2, 3]
        assert_hierarchy(chunks)

    def test_short_sections_fall_under_the_floor(self, context):
        text = "# Intro\nshort\n\n# Details\n" + "Long enough body text for the floor. " * 5

        chunks = HierarchicalChunker(min_chars=100).chunk_document(text, context)

        assert [c.section_title for c in chunks[1:]] == ["# Details"]

    def test_paragraph_packing_without_headings(self, context):
        paragraphs = [f"Paragraph {i} " + "words " * 30 for i in range(6)]

        chunks = HierarchicalChunker(max_chars=400, min_chars=10).chunk_document("\n\n".join(paragraphs), context)

        children = chunks[1:]
        assert len(children) >= 3
        assert all(len(c.text) <= 400 for c in children)
        assert all(c.id.startswith(f"{context.document_id}:chunk-") for c in children)
        joined = "\n\n".join(c.text for c in children)
        assert all(p.strip() in joined for p in paragraphs)

    def test_oversized_section_is_split_into_parts(self, context):
        text = "# Policy\n" + "\n\n".join("Rule text " * 20 for _ in range(5))

        chunks = HierarchicalChunker(max_chars=300, min_chars=10).chunk_document(text, context)

        assert all(c.id.startswith(f"{context.document_id}:section-0-part-") for c in chunks[1:])
        assert chunks[1].section_title == "# Policy (Part 1)"

    def test_blank_text(self, context):
        assert HierarchicalChunker().chunk_document("   \n ", context) == []
