"""Content-aware chunking into a two-level hierarchy.

Spreadsheets: one summary chunk per tab, with children grouped by a logical
column (e.g. SKU) or, without one, by fixed-size row batches.

Documents: one overview chunk per document, with a child per detected section
(markdown headings, numbered sections, all-caps lines), or paragraph-packed
children when no headings are found.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from app.models.chunk import DocumentChunk
from app.services.document_analyzer import SheetAnalysis
from app.services.structured_extractor import normalize_header

SECTION_PATTERN = re.compile(
    r"^(?:#{1,4}[ \t]+\S.*|(?:\d+\.)+[ \t]+\S.*|[A-Z][A-Z \t]{3,}[A-Z][ \t]*$)",
    re.MULTILINE,
)

GROUPING_HEADER_NAMES = ("sku", "asin", "item_code", "product_id", "product_code")


@dataclass
class ChunkContext:
    document_id: UUID
    document_title: str
    team_context: str = "general"


def _id_part(value: str) -> str:
    """Chunk id component for a tab name; distinct names never share one."""
    digest = hashlib.sha1(value.encode("utf-8")).hexdigest()[:12]
    stripped = value.strip()
    if stripped != value or not stripped:
        return f"{stripped[:64] or 'blank'}-{digest}"
    if len(value) <= 80:
        return value
    return f"{value[:64]}-{digest}"


def _is_blank_row(row: Sequence[object]) -> bool:
    return all(cell is None or str(cell).strip() == "" for cell in row)


def heuristic_analysis(rows: Sequence[Sequence[object]]) -> SheetAnalysis:
    """Row 0 is the header; group by an identifier-like column if one exists."""
    analysis = SheetAnalysis.fallback("")
    analysis.summary = ""
    headers = [normalize_header(str(h)) for h in (rows[0] if rows else [])]
    for name in GROUPING_HEADER_NAMES:
        if name in headers:
            analysis.grouping_column = headers.index(name)
            break
    return analysis


class HierarchicalChunker:
    def __init__(self, max_chars: int = 12000, min_chars: int = 100, rows_per_batch: int = 10):
        self.max_chars = max_chars
        self.min_chars = min_chars
        self.rows_per_batch = rows_per_batch

    # ==================== Spreadsheets ====================

    def chunk_sheet(
        self,
        rows: Sequence[Sequence[object]],
        sheet_name: str,
        analysis: Optional[SheetAnalysis],
        context: ChunkContext,
    ) -> List[DocumentChunk]:
        """Chunk one tab. Data rows are never dropped by the size floor."""
        if not rows:
            return []
        if analysis is None or analysis.source == "empty":
            analysis = heuristic_analysis(rows)

        header_row = analysis.header_row if analysis.header_row is not None else None
        data_start = analysis.data_start_row
        headers = [str(h) if h is not None else "" for h in rows[header_row]] if header_row is not None and header_row < len(rows) else []
        header_line = " | ".join(h for h in headers if h.strip())
        data_rows = [(i, rows[i]) for i in range(data_start, len(rows)) if not _is_blank_row(rows[i])]

        root = DocumentChunk(
            id=f"{context.document_id}:{_id_part(sheet_name)}:summary",
            document_id=context.document_id,
            text=self._sheet_summary(sheet_name, headers, analysis, len(data_rows)),
            level="section",
            parent_chunk_id=None,
            section_title=f"{sheet_name} (Summary)",
            sheet_name=sheet_name,
            team_context=context.team_context,
            metadata_json={"type": "spreadsheet", "sheet_type": analysis.sheet_type},
        )
        chunks = [root]

        grouping = analysis.grouping_column
        if grouping is not None and (grouping < len(headers) or not headers):
            groups: Dict[str, list] = {}
            for index, row in data_rows:
                key = str(row[grouping]).strip() if grouping < len(row) and row[grouping] is not None else ""
                groups.setdefault(key or "Ungrouped", []).append((index, row))

            label = headers[grouping] if grouping < len(headers) and headers[grouping] else "Group"
            for key, group_rows in groups.items():
                prefix = f"[{sheet_name}] {label}: {key}\nHeaders: {header_line}\n"
                lines = [self._row_line(index, row, headers) for index, row in group_rows]
                chunks.extend(self._group_chunks(root, sheet_name, key, prefix, lines, context))
        else:
            for start in range(0, len(data_rows), self.rows_per_batch):
                batch = data_rows[start : start + self.rows_per_batch]
                first, last = batch[0][0], batch[-1][0]
                text = f"[{sheet_name}]\nHeaders: {header_line}\n\n" + "\n".join(
                    self._row_line(index, row, headers) for index, row in batch
                )
                chunks.append(
                    self._child(
                        root,
                        f"{root.id[: -len(':summary')]}:rows-{first}",
                        text,
                        "paragraph",
                        f"{sheet_name} Rows {first}-{last}",
                        context,
                        sheet_name,
                    )
                )

        return self._indexed(chunks)

    def _group_chunks(self, root, sheet_name, key, prefix, lines, context) -> List[DocumentChunk]:
        base_id = f"{root.id[: -len(':summary')]}:group:{_id_part(key)}"
        meta = {"group_key": key}
        text = prefix + "\n" + "\n".join(lines)
        if len(text) <= self.max_chars:
            return [self._child(root, base_id, text, "group", f"{sheet_name} > {key}", context, sheet_name, meta)]

        # Every part repeats the group identifier and header lines
        parts: List[List[str]] = []
        current: List[str] = []
        size = len(prefix) + 1
        for line in lines:
            if current and size + len(line) + 1 > self.max_chars:
                parts.append(current)
                current, size = [], len(prefix) + 1
            current.append(line)
            size += len(line) + 1
        if current:
            parts.append(current)

        return [
            self._child(
                root,
                f"{base_id}:part-{n}",
                prefix + "\n" + "\n".join(part),
                "group",
                f"{sheet_name} > {key} (Part {n + 1})",
                context,
                sheet_name,
                meta,
            )
            for n, part in enumerate(parts)
        ]

    @staticmethod
    def _row_line(index: int, row: Sequence[object], headers: List[str]) -> str:
        cells = []
        for cidx, cell in enumerate(row):
            header = headers[cidx] if cidx < len(headers) and headers[cidx] else f"Col{cidx}"
            value = "(empty)" if cell is None or str(cell) == "" else str(cell)
            cells.append(f"{header}: {value}")
        return f"Row {index}: " + ", ".join(cells)

    @staticmethod
    def _sheet_summary(sheet_name: str, headers: List[str], analysis: SheetAnalysis, row_count: int) -> str:
        lines = [
            f"Sheet: {sheet_name}",
            f"Type: {analysis.sheet_type}",
            f"Columns: {', '.join(h for h in headers if h.strip())}",
            f"Data rows: {row_count}",
        ]
        if analysis.summary:
            lines.append(f"Summary: {analysis.summary}")
        if analysis.columns:
            lines.append("")
            lines.append("Column details:")
            for col in analysis.columns:
                lines.append(f"- {col.original_header or col.normalized_name}: {col.description or col.data_type}")
        return "\n".join(lines)

    # ==================== Documents ====================

    def chunk_document(self, text: str, context: ChunkContext) -> List[DocumentChunk]:
        if not text or not text.strip():
            return []

        clean = re.sub(r"\n{3,}", "\n\n", text.replace("\r\n", "\n").replace("\r", "\n")).strip()
        matches = list(SECTION_PATTERN.finditer(clean))
        titles = [m.group(0).strip() for m in matches]

        if titles:
            overview = f"Document: {context.document_title}\nSections:\n" + "\n".join(
                f"{i + 1}. {t}" for i, t in enumerate(titles)
            )
        else:
            overview = f"Document: {context.document_title}\nLength: {len(clean)} characters"

        root = DocumentChunk(
            id=f"{context.document_id}:summary",
            document_id=context.document_id,
            text=overview,
            level="section",
            parent_chunk_id=None,
            section_title=f"{context.document_title} (Overview)",
            team_context=context.team_context,
            metadata_json={"type": "document"},
        )
        chunks = [root]
        doc_prefix = str(context.document_id)

        if not matches:
            for n, body in enumerate(self._pack_paragraphs(clean)):
                if len(body) >= self.min_chars:
                    chunks.append(self._child(root, f"{doc_prefix}:chunk-{n}", body, "paragraph", None, context))
            return self._indexed(chunks)

        preamble = clean[: matches[0].start()].strip()
        if len(preamble) >= self.min_chars:
            chunks.append(self._child(root, f"{doc_prefix}:preamble", preamble, "paragraph", "Introduction", context))

        for i, match in enumerate(matches):
            end = matches[i + 1].start() if i + 1 < len(matches) else len(clean)
            section = clean[match.start() : end].strip()
            title = titles[i]
            if len(section) < self.min_chars:
                continue
            if len(section) <= self.max_chars:
                chunks.append(self._child(root, f"{doc_prefix}:section-{i}", section, "paragraph", title, context))
                continue
            for n, body in enumerate(self._pack_paragraphs(section)):
                if len(body) >= self.min_chars:
                    chunks.append(
                        self._child(
                            root,
                            f"{doc_prefix}:section-{i}-part-{n}",
                            body,
                            "paragraph",
                            f"{title} (Part {n + 1})",
                            context,
                        )
                    )

        return self._indexed(chunks)

    def _pack_paragraphs(self, text: str) -> List[str]:
        """Pack paragraphs into bodies under ``max_chars`` without splitting them."""
        pieces: List[str] = []
        for para in (p.strip() for p in text.split("\n\n")):
            if not para:
                continue
            if len(para) <= self.max_chars:
                pieces.append(para)
            else:
                pieces.extend(self._split_oversized(para))

        bodies: List[str] = []
        current = ""
        for piece in pieces:
            if current and len(current) + len(piece) + 2 > self.max_chars:
                bodies.append(current)
                current = ""
            current = f"{current}\n\n{piece}" if current else piece
        if current:
            bodies.append(current)
        return bodies

    def _split_oversized(self, para: str) -> List[str]:
        # Single paragraph over budget: fall back to line, then hard, boundaries
        out: List[str] = []
        current = ""
        for line in para.split("\n"):
            while len(line) > self.max_chars:
                if current:
                    out.append(current)
                    current = ""
                out.append(line[: self.max_chars])
                line = line[self.max_chars :]
            if current and len(current) + len(line) + 1 > self.max_chars:
                out.append(current)
                current = ""
            current = f"{current}\n{line}" if current else line
        if current:
            out.append(current)
        return out

    # ==================== Helpers ====================

    @staticmethod
    def _child(root, chunk_id, text, level, title, context, sheet_name=None, extra=None) -> DocumentChunk:
        metadata = dict(root.metadata_json)
        if extra:
            metadata.update(extra)
        return DocumentChunk(
            id=chunk_id,
            document_id=context.document_id,
            text=text.strip(),
            level=level,
            parent_chunk_id=root.id,
            section_title=title,
            sheet_name=sheet_name,
            team_context=context.team_context,
            metadata_json=metadata,
        )

    @staticmethod
    def _indexed(chunks: List[DocumentChunk]) -> List[DocumentChunk]:
        for i, chunk in enumerate(chunks):
            chunk.chunk_index = i
        return chunks
