"""Tests for the Drive/Sheets adapter against a mocked HTTP transport."""

import asyncio

import httpx
import pytest

from app.services.content_provider import ProviderCredentials, parse_timestamp
from app.services.google_drive import DOCUMENT_MIME, FOLDER_MIME, SPREADSHEET_MIME, GoogleDriveProvider
from app.utils.errors import ConfigurationError, NotFoundError, TransientProviderError, ValidationError
from app.utils.resilience import RetryPolicy

FAST = RetryPolicy(timeout_seconds=2, max_attempts=3, base_delay_seconds=0, max_jitter_seconds=0)
ACCESS = ProviderCredentials(access_token="access-1")


def _file(file_id, mime, name=None, parent="root-folder"):
    return {
        "id": file_id,
        "name": name or file_id,
        "mimeType": mime,
        "modifiedTime": "2025-01-06T10:00:00.000Z",
        "parents": [parent],
        "owners": [{"emailAddress": "planner@example.com"}],
        "webViewLink": f"https://docs.google.com/d/{file_id}",
    }


class DriveStub:
    """Routes requests to canned Drive, Sheets and token responses."""

    def __init__(self):
        self.requests = []
        self.token_calls = 0
        self.status_overrides = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.status_overrides:
            return httpx.Response(self.status_overrides[path])

        if request.url.host == "oauth2.googleapis.com":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": "refreshed-1", "expires_in": 3600})

        if path == "/drive/v3/files":
            query = request.url.params["q"]
            if "'root-folder'" in query:
                if request.url.params.get("pageToken") == "page-2":
                    return httpx.Response(200, json={"files": [_file("doc-1", DOCUMENT_MIME, "Returns SOP")]})
                return httpx.Response(
                    200,
                    json={
                        "files": [
                            _file("sheet-1", SPREADSHEET_MIME, "Demand Plan"),
                            _file("sub-folder", FOLDER_MIME),
                            _file("pdf-1", "application/pdf"),
                        ],
                        "nextPageToken": "page-2",
                    },
                )
            if "'sub-folder'" in query:
                return httpx.Response(200, json={"files": [_file("sheet-2", SPREADSHEET_MIME, parent="sub-folder")]})
            return httpx.Response(200, json={"files": []})

        if path == "/v4/spreadsheets/sheet-1":
            return httpx.Response(
                200,
                json={
                    "properties": {"title": "Demand Plan"},
                    "sheets": [{"properties": {"title": "Forecast"}}, {"properties": {"title": "Notes"}}],
                },
            )
        if path == "/v4/spreadsheets/sheet-1/values:batchGet":
            return httpx.Response(
                200,
                json={"valueRanges": [{"values": [["SKU", "Qty"], ["A100", 120]]}, {}]},
            )

        if path == "/drive/v3/files/doc-1":
            return httpx.Response(200, json={"name": "Returns SOP"})
        if path == "/drive/v3/files/doc-1/export":
            return httpx.Response(200, text="PURPOSE\nInspect every unit.")

        return httpx.Response(404)


def run_with_provider(stub, coro_factory, **kwargs):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(stub)) as client:
            provider = GoogleDriveProvider(client, FAST, **kwargs)
            return await coro_factory(provider)

    return asyncio.run(run())


class TestListing:
    def test_recursive_listing_follows_pages_and_subfolders(self):
        stub = DriveStub()

        files = run_with_provider(stub, lambda p: p.list_files("root-folder", ACCESS))

        assert sorted(f.external_id for f in files) == ["doc-1", "sheet-1", "sheet-2"]
        by_id = {f.external_id: f for f in files}
        assert by_id["sheet-1"].kind == "tabular"
        assert by_id["doc-1"].kind == "text"
        assert by_id["sheet-2"].parent_id == "sub-folder"
        assert by_id["sheet-1"].owners == ["planner@example.com"]
        assert by_id["sheet-1"].modified_time == parse_timestamp("2025-01-06T10:00:00Z")
        assert all(r.headers["Authorization"] == "Bearer access-1" for r in stub.requests)

    def test_non_recursive_listing_skips_subfolders(self):
        files = run_with_provider(DriveStub(), lambda p: p.list_files("root-folder", ACCESS, recursive=False))

        assert sorted(f.external_id for f in files) == ["doc-1", "sheet-1"]


class TestTokens:
    def test_refresh_token_is_exchanged_once(self):
        stub = DriveStub()
        credentials = ProviderCredentials(refresh_token="refresh-1")

        async def list_twice(provider):
            await provider.list_files("sub-folder", credentials)
            return await provider.list_files("sub-folder", credentials)

        run_with_provider(stub, list_twice, client_id="client", client_secret="secret")

        assert stub.token_calls == 1
        api_requests = [r for r in stub.requests if r.url.host != "oauth2.googleapis.com"]
        assert all(r.headers["Authorization"] == "Bearer refreshed-1" for r in api_requests)

    def test_refresh_without_oauth_client_fails(self):
        credentials = ProviderCredentials(refresh_token="refresh-1")

        with pytest.raises(ConfigurationError):
            run_with_provider(DriveStub(), lambda p: p.list_files("root-folder", credentials))

    def test_credentials_require_a_token(self):
        with pytest.raises(ValidationError):
            ProviderCredentials()

    def test_credentials_repr_hides_tokens(self):
        assert "access-1" not in repr(ACCESS)


class TestContent:
    def test_fetch_tabular_reads_every_sheet(self):
        content = run_with_provider(DriveStub(), lambda p: p.fetch_tabular("sheet-1", ACCESS))

        assert content.title == "Demand Plan"
        assert content.sheet_names == ["Forecast", "Notes"]
        assert content.rows == {"Forecast": [["SKU", "Qty"], ["A100", "120"]], "Notes": []}

    def test_fetch_text_exports_plain_text(self):
        content = run_with_provider(DriveStub(), lambda p: p.fetch_text("doc-1", ACCESS))

        assert content.title == "Returns SOP"
        assert content.text.startswith("PURPOSE")


class TestStatusMapping:
    def test_missing_file_is_not_found(self):
        with pytest.raises(NotFoundError):
            run_with_provider(DriveStub(), lambda p: p.fetch_tabular("missing", ACCESS))

    def test_access_denied_is_validation_error(self):
        stub = DriveStub()
        stub.status_overrides["/v4/spreadsheets/sheet-1"] = 403

        with pytest.raises(ValidationError) as exc_info:
            run_with_provider(stub, lambda p: p.fetch_tabular("sheet-1", ACCESS))

        assert "access denied" in exc_info.value.message
        assert len(stub.requests) == 1

    def test_unavailable_provider_is_retried(self):
        stub = DriveStub()
        stub.status_overrides["/drive/v3/files/doc-1"] = 503

        with pytest.raises(TransientProviderError):
            run_with_provider(stub, lambda p: p.fetch_text("doc-1", ACCESS))

        assert len(stub.requests) == FAST.max_attempts
