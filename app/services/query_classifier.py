"""Route a query to structured lookup, semantic search, or both."""

from __future__ import annotations

import re
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from app.config.logger import app_logger
from app.services.document_analyzer import SHEET_TYPES
from app.services.inference import InferenceClient, parse_json_response

QueryType = Literal["structured", "semantic", "hybrid"]

STRUCTURED_KEYWORDS = (
    "forecast", "pipeline", "sku", "asin", "week", "wo", "inventory", "units", "quantity",
    "sales", "orders", "inbound", "eta", "tracking", "cpfr", "costco", "amazon", "walmart",
    "target", "category", "product",
)
SEMANTIC_KEYWORDS = (
    "how to", "what is", "why", "explain", "procedure", "process", "sop", "guide", "training",
    "policy", "best practice", "standard", "who", "when", "where", "meeting", "notes",
    "comment", "summary",
)

QUERY_PATTERNS = {
    "week_over_week": re.compile(r"week.{0,5}week|wo.?w|delta|change", re.IGNORECASE),
    "sku_lookup": re.compile(r"\b(?:sku|asin|b0[0-9a-z]+)\b", re.IGNORECASE),
    "forecast": re.compile(r"forecast|demand|projection", re.IGNORECASE),
    "sop": re.compile(r"\bsop\b|procedure|how to|guide", re.IGNORECASE),
    "pipeline": re.compile(r"pipeline|status|tracking|inbound", re.IGNORECASE),
}
# Patterns that point at a sheet type
PATTERN_SHEET_TYPES = {"forecast": "forecast", "pipeline": "pipeline", "sop": "sop", "week_over_week": "forecast"}

ASIN_PATTERN = re.compile(r"\bB0[0-9A-Z]{8}\b", re.IGNORECASE)
SKU_PATTERN = re.compile(r"\b(?:sku|item)[\s:#-]*([A-Za-z0-9_-]*\d[A-Za-z0-9_-]*)\b", re.IGNORECASE)
TERM_PATTERN = re.compile(r"[a-z0-9][a-z0-9_-]*")

STOPWORDS = frozenset(
    "the and for are was were what which who whom this that these those with from into about "
    "have has had not but can could should would will shall our your their its how why when where "
    "does did show give tell list all any there here than then them they you me my we us".split()
)


def _keyword_pattern(keywords) -> re.Pattern:
    alternatives = "|".join(re.escape(k) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


STRUCTURED_PATTERN = _keyword_pattern(STRUCTURED_KEYWORDS)
SEMANTIC_PATTERN = _keyword_pattern(SEMANTIC_KEYWORDS)


class QueryAnalysis(BaseModel):
    query_type: QueryType = "hybrid"
    source: Literal["keywords", "inference", "default"] = "keywords"
    structured_signals: List[str] = Field(default_factory=list)
    semantic_signals: List[str] = Field(default_factory=list)
    patterns: List[str] = Field(default_factory=list)
    entity_keys: List[str] = Field(default_factory=list)
    terms: List[str] = Field(default_factory=list)
    suggested_sheet_types: List[str] = Field(default_factory=list)

    @field_validator("suggested_sheet_types", mode="before")
    @classmethod
    def _known_sheet_types(cls, value):
        if not isinstance(value, list):
            return []
        return [str(v).lower() for v in value if str(v).lower() in SHEET_TYPES]


def extract_entity_keys(query: str) -> List[str]:
    """ASINs and explicitly labelled SKUs, upper-cased and de-duplicated."""
    keys: List[str] = []
    for match in ASIN_PATTERN.finditer(query):
        keys.append(match.group(0).upper())
    for match in SKU_PATTERN.finditer(query):
        keys.append(match.group(1).upper())
    return list(dict.fromkeys(keys))


def extract_terms(query: str) -> List[str]:
    words = TERM_PATTERN.findall(query.lower())
    return list(dict.fromkeys(w for w in words if len(w) > 2 and w not in STOPWORDS))


class QueryClassifier:
    def __init__(self, inference: Optional[InferenceClient] = None, max_tokens: int = 500):
        self.inference = inference
        self.max_tokens = max_tokens

    def classify_keywords(self, query: str) -> QueryAnalysis:
        """Keyword and pattern routing; ambiguous queries come back as hybrid."""
        structured = [m.lower() for m in STRUCTURED_PATTERN.findall(query)]
        semantic = [m.lower() for m in SEMANTIC_PATTERN.findall(query)]
        patterns = [name for name, pattern in QUERY_PATTERNS.items() if pattern.search(query)]
        entity_keys = extract_entity_keys(query)

        if entity_keys and "sku_lookup" not in patterns:
            patterns.append("sku_lookup")
        has_structured = bool(structured) or bool(entity_keys)

        if has_structured and not semantic:
            query_type = "structured"
        elif semantic and not has_structured:
            query_type = "semantic"
        else:
            query_type = "hybrid"

        return QueryAnalysis(
            query_type=query_type,
            source="keywords",
            structured_signals=list(dict.fromkeys(structured)),
            semantic_signals=list(dict.fromkeys(semantic)),
            patterns=patterns,
            entity_keys=entity_keys,
            terms=extract_terms(query),
            suggested_sheet_types=list(dict.fromkeys(PATTERN_SHEET_TYPES[p] for p in patterns if p in PATTERN_SHEET_TYPES)),
        )

    async def classify(self, query: str) -> QueryAnalysis:
        """Keyword routing first; hybrid queries escalate to inference when available."""
        analysis = self.classify_keywords(query)
        if analysis.query_type != "hybrid" or self.inference is None or not self.inference.available:
            return analysis

        prompt = f"""Classify this business question for a retrieval system.

Question: {query}

"structured" means it asks for specific numbers, rows or records (forecasts, SKUs, inventory, orders).
"semantic" means it asks about procedures, explanations, policies or discussion.
"hybrid" means it needs both.

Return ONLY valid JSON (no markdown, no explanation):
{{
  "query_type": "<structured, semantic or hybrid>",
  "suggested_sheet_types": [<zero or more of: {", ".join(SHEET_TYPES)}>]
}}"""

        try:
            payload = parse_json_response(await self.inference.complete(prompt, self.max_tokens, 0.0))
            if not isinstance(payload, dict):
                raise ValueError("intent response is not an object")
            query_type = str(payload.get("query_type", "hybrid")).lower()
            if query_type not in ("structured", "semantic", "hybrid"):
                query_type = "hybrid"
            suggested = QueryAnalysis(suggested_sheet_types=payload.get("suggested_sheet_types") or [])
        except Exception as e:
            app_logger.warning(f"Intent inference failed, defaulting to hybrid: {e}")
            return analysis.model_copy(update={"source": "default"})

        merged = list(dict.fromkeys(analysis.suggested_sheet_types + suggested.suggested_sheet_types))
        return analysis.model_copy(
            update={"query_type": query_type, "source": "inference", "suggested_sheet_types": merged}
        )
