"""Schema inference for spreadsheet tabs, cached by content fingerprint."""

from __future__ import annotations

import hashlib
import json
from typing import Dict, List, Literal, Optional, Sequence
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from app.config.logger import app_logger
from app.services.inference import InferenceClient, parse_json_response

SHEET_TYPES = ("forecast", "pipeline", "inventory", "cpfr", "psi", "sales", "sop", "product", "general")
DATA_TYPES = ("string", "number", "date", "currency", "percentage", "boolean")
RelationshipType = Literal["drives", "references", "summarizes", "derives_from", "supplements"]


class ColumnInfo(BaseModel):
    index: int = Field(ge=0)
    original_header: Optional[str] = None
    normalized_name: str = ""
    data_type: str = "string"
    description: Optional[str] = None

    @field_validator("data_type", mode="before")
    @classmethod
    def _known_data_type(cls, value):
        value = str(value or "string").strip().lower()
        return value if value in DATA_TYPES else "string"

    @field_validator("original_header", "description", mode="before")
    @classmethod
    def _stringify(cls, value):
        return None if value is None else str(value)


class SheetAnalysis(BaseModel):
    """Structure of one tab.

    ``source`` tags how the analysis was produced: ``inference`` for a validated
    model response, ``fallback`` when inference failed, ``empty`` for a tab with
    no rows. Only ``inference`` results are written to the cache.
    """

    source: Literal["inference", "fallback", "empty"] = "inference"
    header_row: Optional[int] = Field(default=0, ge=0)
    data_start_row: int = Field(default=1, ge=0)
    sheet_type: str = "general"
    columns: List[ColumnInfo] = Field(default_factory=list)
    key_columns: List[int] = Field(default_factory=list)
    grouping_column: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("grouping_column", "logical_grouping_column"),
    )
    summary: str = ""

    @field_validator("sheet_type", mode="before")
    @classmethod
    def _known_sheet_type(cls, value):
        value = str(value or "general").strip().lower()
        return value if value in SHEET_TYPES else "general"

    @field_validator("key_columns", mode="before")
    @classmethod
    def _int_indices(cls, value):
        if not isinstance(value, list):
            return []
        return [v for v in value if isinstance(v, int) and not isinstance(v, bool) and v >= 0]

    @field_validator("grouping_column", mode="before")
    @classmethod
    def _grouping_index(cls, value):
        if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
            return value
        return None

    @field_validator("summary", mode="before")
    @classmethod
    def _summary_text(cls, value):
        return "" if value is None else str(value)

    @model_validator(mode="after")
    def _data_after_header(self):
        if self.header_row is not None and self.data_start_row <= self.header_row:
            self.data_start_row = self.header_row + 1
        return self

    @property
    def is_fallback(self) -> bool:
        return self.source != "inference"

    def column(self, index: int) -> Optional[ColumnInfo]:
        for col in self.columns:
            if col.index == index:
                return col
        return None

    @classmethod
    def fallback(cls, sheet_name: str) -> "SheetAnalysis":
        return cls(
            source="fallback",
            header_row=0,
            data_start_row=1,
            sheet_type="general",
            summary=f"Could not analyze: {sheet_name}",
        )

    @classmethod
    def empty(cls) -> "SheetAnalysis":
        return cls(source="empty", header_row=None, data_start_row=0, summary="Empty sheet")


class RelationshipSpec(BaseModel):
    source_sheet: str
    target_sheet: str
    relationship_type: RelationshipType
    description: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


def _cell(value) -> str:
    return "" if value is None else str(value)


def fingerprint_rows(rows: Sequence[Sequence[object]], sample_rows: int = 50) -> str:
    """SHA-256 over the sampled prefix of a tab."""
    sample = [[_cell(c) for c in row] for row in rows[:sample_rows]]
    payload = json.dumps(sample, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class DocumentAnalyzer:
    def __init__(
        self,
        inference: InferenceClient,
        store,
        *,
        sample_rows: int = 50,
        max_tokens: int = 4096,
        temperature: float = 0.1,
    ):
        self.inference = inference
        self.store = store
        self.sample_rows = sample_rows
        self.max_tokens = max_tokens
        self.temperature = temperature

    @property
    def available(self) -> bool:
        return self.inference.available

    def _sheet_prompt(self, rows, sheet_name: str, document_title: str, sibling_sheet_names: Sequence[str]) -> str:
        sample = rows[: self.sample_rows]
        rows_text = "\n".join(
            f"Row {idx}: " + " | ".join(f"[{cidx}]{_cell(cell)}" for cidx, cell in enumerate(row))
            for idx, row in enumerate(sample)
        )
        others = ", ".join(n for n in sibling_sheet_names if n != sheet_name) or "none"
        return f"""Analyze this spreadsheet tab and return a JSON object describing its structure.

Workbook: {document_title}
Tab name: {sheet_name}
Other tabs in workbook: {others}

First {len(sample)} rows:
{rows_text}

Return ONLY valid JSON (no markdown, no explanation) with this structure:
{{
  "header_row": <0-based row index containing column headers, or null>,
  "data_start_row": <0-based row index where data begins>,
  "sheet_type": "<one of: forecast, pipeline, inventory, cpfr, psi, sales, sop, general>",
  "columns": [
    {{
      "index": <column index>,
      "original_header": "<exact header text>",
      "normalized_name": "<snake_case name such as sku, forecast_qty, week_ending>",
      "data_type": "<string, number, date, currency, percentage, boolean>",
      "description": "<what this column represents>"
    }}
  ],
  "key_columns": [<indices of identifier columns such as SKU, date, account>],
  "logical_grouping_column": <index of the best column for grouping rows, e.g. SKU, or null>,
  "summary": "<1-2 sentence description of the tab>"
}}"""

    async def analyze(
        self,
        rows: Sequence[Sequence[object]],
        sheet_name: str,
        document_title: str,
        sibling_sheet_names: Sequence[str] = (),
    ) -> SheetAnalysis:
        """Infer tab structure. Never raises: failures yield the fallback variant."""
        if not rows:
            return SheetAnalysis.empty()

        prompt = self._sheet_prompt(rows, sheet_name, document_title, sibling_sheet_names)
        try:
            text = await self.inference.complete(prompt, self.max_tokens, self.temperature)
            payload = parse_json_response(text)
            if not isinstance(payload, dict):
                raise ValueError("analysis response is not an object")
            payload.pop("source", None)
            return SheetAnalysis.model_validate(payload)
        except (PydanticValidationError, ValueError) as e:
            app_logger.warning(f"Analysis for sheet '{sheet_name}' returned an unusable shape: {e}")
        except Exception as e:
            app_logger.error(f"Error analyzing sheet '{sheet_name}': {type(e).__name__}: {e}")
        return SheetAnalysis.fallback(sheet_name)

    async def get_or_create_analysis(
        self,
        document_id: UUID,
        sheet_name: str,
        rows: Sequence[Sequence[object]],
        document_title: str,
        sibling_sheet_names: Sequence[str] = (),
    ) -> SheetAnalysis:
        content_hash = fingerprint_rows(rows, self.sample_rows)

        cached = await self.store.get_cached_analysis(document_id, sheet_name, content_hash)
        if cached is not None:
            try:
                analysis = SheetAnalysis.model_validate(cached)
                app_logger.debug(f"Using cached analysis for '{sheet_name}' (hash {content_hash[:12]})")
                return analysis
            except PydanticValidationError:
                app_logger.warning(f"Cached analysis for '{sheet_name}' is invalid; recomputing")

        app_logger.info(f"Running schema inference for sheet '{sheet_name}'")
        analysis = await self.analyze(rows, sheet_name, document_title, sibling_sheet_names)
        if analysis.source == "inference":
            await self.store.save_analysis(document_id, sheet_name, content_hash, analysis.model_dump())
        return analysis

    async def analyze_relationships(
        self,
        sheets: Dict[str, Sequence[Sequence[object]]],
        document_title: str,
    ) -> List[RelationshipSpec]:
        """Infer how tabs in a workbook relate. Empty on single tabs or failure."""
        names = list(sheets.keys())
        if len(names) < 2:
            return []

        summaries = []
        for name in names:
            preview = "\n".join(
                f"  Row {idx}: " + " | ".join(_cell(c) for c in row)
                for idx, row in enumerate(list(sheets[name])[:5])
            )
            summaries.append(f"Tab: {name}\n{preview}")

        prompt = f"""Analyze the relationships between tabs in this spreadsheet workbook.

Workbook: {document_title}

{chr(10).join(summaries)}

Return ONLY valid JSON (no markdown, no explanation) as an array:
[
  {{
    "source_sheet": "<tab that provides or drives data>",
    "target_sheet": "<tab that consumes or references data>",
    "relationship_type": "<one of: drives, references, summarizes, derives_from, supplements>",
    "description": "<brief explanation>",
    "confidence": <0.0 to 1.0>
  }}
]

Only include relationships you are confident about. Return [] if none are clear."""

        try:
            payload = parse_json_response(
                await self.inference.complete(prompt, self.max_tokens, self.temperature)
            )
        except Exception as e:
            app_logger.error(f"Error analyzing workbook relationships for '{document_title}': {e}")
            return []

        if not isinstance(payload, list):
            return []

        relationships: List[RelationshipSpec] = []
        for item in payload:
            try:
                candidate = RelationshipSpec.model_validate(item)
            except PydanticValidationError:
                continue
            known = candidate.source_sheet in sheets and candidate.target_sheet in sheets
            if known and candidate.source_sheet != candidate.target_sheet:
                relationships.append(candidate)
        app_logger.info(f"Found {len(relationships)} tab relationships in '{document_title}'")
        return relationships
