"""Turn analyzed spreadsheet rows into normalized structured records."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Union
from uuid import UUID

from app.models.structured_record import StructuredRecord

if TYPE_CHECKING:
    from app.services.document_analyzer import SheetAnalysis

NUMERIC_TYPES = ("number", "currency", "percentage")

# Checked in order; a column feeds at most one shortcut
SHORTCUT_RULES = (
    ("week", ("week",)),
    ("date_value", ("date", "period", "month")),
    ("category", ("category", "type", "line")),
    ("entity_key", ("sku", "asin", "item", "product")),
)
NOTE_FIELDS = ("notes", "comments", "remarks", "description")
IDENTIFIER_HINTS = ("sku", "asin", "item", "product", "code", "id", "po", "week", "date", "period", "month", "year")

SHEET_TYPE_PATTERNS = (
    ("forecast", re.compile(r"forecast|demand|projection|wo1|wo2|wo3|wo4")),
    ("pipeline", re.compile(r"pipeline|inbound|eta|arrival|shipment")),
    ("inventory", re.compile(r"inventory|stock|warehouse|units on hand")),
    ("cpfr", re.compile(r"cpfr|collaborative|planning")),
    ("sales", re.compile(r"sales|revenue|orders|sell.?through")),
    ("product", re.compile(r"sku|asin|product|item")),
)

_CURRENCY_CHARS = re.compile(r"[\$€£¥,\s]")


def normalize_header(header: Optional[str]) -> str:
    if not header:
        return ""
    text = re.sub(r"[^\w\s]", "", str(header).strip().lower())
    return re.sub(r"\s+", "_", text.strip())


def detect_sheet_type(headers: Sequence[str]) -> str:
    """Keyword classification of a tab from its header text."""
    joined = "|".join(str(h) for h in headers).lower()
    for sheet_type, pattern in SHEET_TYPE_PATTERNS:
        if pattern.search(joined):
            return sheet_type
    return "general"


def parse_number(value: Any) -> Union[int, float, Any]:
    """Parse numeric, currency and percentage text; return the input if unparsable."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return value
    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]
    text = _CURRENCY_CHARS.sub("", text).rstrip("%")
    if text.startswith("-"):
        negative = not negative
        text = text[1:]
    if not re.fullmatch(r"\d+(\.\d+)?|\.\d+", text):
        return value
    number: Union[int, float] = float(text) if "." in text else int(text)
    return -number if negative else number


def _looks_like_identifier(name: str) -> bool:
    return any(hint in name for hint in IDENTIFIER_HINTS)


def _unique(name: str, taken: set) -> str:
    """``name``, or ``name_2``, ``name_3``... when already taken."""
    candidate, n = name, 1
    while candidate in taken:
        n += 1
        candidate = f"{name}_{n}"
    taken.add(candidate)
    return candidate


@dataclass
class DocumentMetadata:
    document_id: UUID
    title: str
    source_url: Optional[str] = None
    team_context: str = "general"


def as_flat_dict(record: StructuredRecord) -> Dict[str, Any]:
    """Field map with the reserved shortcuts applied last so they always win."""
    flat: Dict[str, Any] = dict(record.field_values or {})
    flat.update(
        {
            "entity_key": record.entity_key,
            "category": record.category,
            "date_value": record.date_value,
            "week": record.week,
            "notes": record.notes,
            "raw_data": record.raw_data,
            "document_id": str(record.document_id),
            "sheet_name": record.sheet_name,
            "sheet_type": record.sheet_type,
            "row_index": record.row_index,
        }
    )
    return flat


class StructuredExtractor:
    def extract(
        self,
        rows: Sequence[Sequence[object]],
        sheet_name: str,
        analysis: Optional["SheetAnalysis"],
        document: DocumentMetadata,
    ) -> List[StructuredRecord]:
        if not rows:
            return []

        if analysis is not None and analysis.source != "empty":
            header_row = analysis.header_row
            data_start = analysis.data_start_row
        else:
            header_row, data_start = 0, 1

        header_cells = list(rows[header_row]) if header_row is not None and header_row < len(rows) else []
        width = max((len(r) for r in rows[data_start:]), default=0)
        width = max(width, len(header_cells))

        names: List[str] = []
        raw_headers: List[str] = []
        raw_keys: List[str] = []
        data_types: List[Optional[str]] = []
        taken_names: set = set()
        taken_raw: set = set()
        for idx in range(width):
            header_text = str(header_cells[idx]) if idx < len(header_cells) and header_cells[idx] is not None else ""
            column = analysis.column(idx) if analysis is not None else None
            name = (column.normalized_name if column and column.normalized_name else "") or normalize_header(header_text)
            name = _unique(normalize_header(name) or f"column_{idx}", taken_names)
            names.append(name)
            raw_header = header_text or (column.original_header if column and column.original_header else name)
            raw_headers.append(raw_header)
            # Repeated headers keep every cell in raw_data
            raw_keys.append(_unique(raw_header, taken_raw))
            data_types.append(column.data_type if column else None)

        if analysis is not None and analysis.source == "inference" and analysis.sheet_type != "general":
            sheet_type = analysis.sheet_type
        else:
            sheet_type = detect_sheet_type(raw_headers)

        key_indices = [i for i in (analysis.key_columns if analysis else []) if i < width]
        shortcut_indices = key_indices or list(range(width))
        has_types = analysis is not None and bool(analysis.columns)

        records: List[StructuredRecord] = []
        for row_index in range(data_start, len(rows)):
            row = rows[row_index]
            if all(cell is None or str(cell).strip() == "" for cell in row):
                continue

            field_values: Dict[str, Any] = {}
            raw_data: Dict[str, Any] = {}
            for idx, cell in enumerate(row):
                if cell is None or str(cell).strip() == "":
                    continue
                name = names[idx] if idx < len(names) else f"column_{idx}"
                raw_data[raw_keys[idx] if idx < len(raw_keys) else name] = cell
                if has_types:
                    value = parse_number(cell) if data_types[idx] in NUMERIC_TYPES else cell
                else:
                    value = cell if _looks_like_identifier(name) else parse_number(cell)
                field_values[name] = value

            filled = [
                i for i in shortcut_indices if i < len(row) and row[i] is not None and str(row[i]).strip() != ""
            ]
            shortcuts: Dict[str, Optional[str]] = {}
            used = set()
            for target, tokens in SHORTCUT_RULES:
                shortcuts[target] = None
                for token in tokens:
                    idx = next((i for i in filled if i not in used and token in names[i]), None)
                    if idx is not None:
                        shortcuts[target] = str(row[idx]).strip()
                        used.add(idx)
                        break

            notes = next((str(field_values[n]) for n in NOTE_FIELDS if n in field_values), None)
            search_parts = [sheet_name, *(str(v) for v in shortcuts.values() if v), notes or ""]
            search_parts.extend(str(v) for v in field_values.values() if isinstance(v, str))

            records.append(
                StructuredRecord(
                    document_id=document.document_id,
                    sheet_name=sheet_name,
                    sheet_type=sheet_type,
                    row_index=row_index,
                    notes=notes,
                    field_values=field_values,
                    raw_data=raw_data,
                    search_text=" ".join(p for p in search_parts if p).lower(),
                    document_title=document.title,
                    source_url=document.source_url,
                    team_context=document.team_context,
                    **shortcuts,
                )
            )

        return records
