"""Shared fixtures: a temporary SQLite store and in-memory collaborators."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from app.db.db import Database
from app.db.knowledge_store import KnowledgeStore
from app.models import EMBEDDING_DIMENSIONS
from app.services.content_provider import SourceFile, TabularContent, TextContent
from app.utils.errors import NotFoundError, TransientProviderError


class FakeProvider:
    """Serves files and content from dictionaries keyed by external id."""

    def __init__(self):
        self.files: List[SourceFile] = []
        self.tabular: Dict[str, TabularContent] = {}
        self.texts: Dict[str, TextContent] = {}
        self.fail_fetch: Dict[str, Exception] = {}
        self.fetch_calls: List[str] = []

    async def list_files(self, folder_id, credentials, recursive=True):
        return list(self.files)

    async def fetch_tabular(self, file_id, credentials):
        self.fetch_calls.append(file_id)
        if file_id in self.fail_fetch:
            raise self.fail_fetch[file_id]
        if file_id not in self.tabular:
            raise NotFoundError(f"Spreadsheet {file_id} not found")
        return self.tabular[file_id]

    async def fetch_text(self, file_id, credentials):
        self.fetch_calls.append(file_id)
        if file_id in self.fail_fetch:
            raise self.fail_fetch[file_id]
        if file_id not in self.texts:
            raise NotFoundError(f"Document {file_id} not found")
        return self.texts[file_id]


class FakeEmbedder:
    """Deterministic vectors from a small vocabulary, zero-padded to the column width."""

    VOCABULARY = ("forecast", "sku", "inventory", "procedure", "returns", "warehouse", "week", "policy")

    def __init__(self, available: bool = True):
        self.available = available
        self.fail_with: Optional[Exception] = None
        self.calls = 0

    def vector(self, text: str) -> List[float]:
        lowered = text.lower()
        counts = [float(lowered.count(word)) for word in self.VOCABULARY] + [0.1]
        return counts + [0.0] * (EMBEDDING_DIMENSIONS - len(counts))

    async def embed(self, texts):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return [self.vector(t) if isinstance(t, str) and t.strip() else None for t in texts]

    async def embed_query(self, text):
        return (await self.embed([text]))[0]


class FakeInference:
    """Returns queued responses in order and counts calls."""

    def __init__(self, responses=None, available: bool = True):
        self.responses = list(responses or [])
        self.available = available
        self.calls = 0
        self.prompts: List[str] = []

    async def complete(self, prompt, max_tokens, temperature):
        self.calls += 1
        self.prompts.append(prompt)
        if not self.responses:
            raise TransientProviderError("no response queued")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_source(external_id: str, name: str = None, kind: str = "tabular", modified: str = "2025-01-06T10:00:00Z"):
    return SourceFile(
        external_id=external_id,
        name=name or f"{external_id}.xlsx",
        kind=kind,
        parent_id="folder-1",
        modified_time=datetime.fromisoformat(modified.replace("Z", "+00:00")).astimezone(timezone.utc),
        owners=["planner@example.com"],
        mime_type="application/vnd.google-apps.spreadsheet" if kind == "tabular" else "application/vnd.google-apps.document",
        url=f"https://docs.google.com/d/{external_id}",
    )


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'knowledge.db'}"


@pytest.fixture
def open_store(db_url):
    """Async context manager factory yielding a KnowledgeStore on a fresh file database.

    Use it inside the same event loop as the test body (``asyncio.run``).
    """

    @asynccontextmanager
    async def _open():
        database = Database(db_url)
        await database.init()
        try:
            yield KnowledgeStore(database)
        finally:
            await database.dispose()

    return _open


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def source_factory():
    return make_source


@pytest.fixture
def inference_factory():
    return FakeInference
