"""Google Drive / Sheets REST adapter over httpx."""

from __future__ import annotations

import time
from typing import Dict, List, Optional, Tuple

import httpx

from app.config.logger import app_logger
from app.services.content_provider import (
    TABULAR,
    TEXT,
    ProviderCredentials,
    SourceFile,
    TabularContent,
    TextContent,
    parse_timestamp,
)
from app.utils.errors import ConfigurationError, NotFoundError, TransientProviderError, ValidationError
from app.utils.resilience import RetryPolicy, TRANSIENT_STATUS_CODES, call_with_policy

FOLDER_MIME = "application/vnd.google-apps.folder"
SPREADSHEET_MIME = "application/vnd.google-apps.spreadsheet"
DOCUMENT_MIME = "application/vnd.google-apps.document"

KIND_BY_MIME = {
    SPREADSHEET_MIME: TABULAR,
    DOCUMENT_MIME: TEXT,
}

FILE_FIELDS = "nextPageToken, files(id, name, mimeType, modifiedTime, parents, owners(emailAddress), webViewLink)"


def raise_for_provider_status(response: httpx.Response, what: str) -> None:
    """Translate an HTTP error status into the service error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    if status in TRANSIENT_STATUS_CODES:
        raise TransientProviderError(f"{what} is temporarily unavailable", status=status)
    if status == 404:
        raise NotFoundError(f"{what} was not found")
    if status in (401, 403):
        raise ValidationError(f"{what} was rejected: access denied", detail=f"status={status}")
    raise ValidationError(f"{what} was rejected by the provider", detail=f"status={status}")


class GoogleDriveProvider:
    """Lists a Drive folder and fetches spreadsheet/document content."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        policy: RetryPolicy,
        *,
        client_id: str = "",
        client_secret: str = "",
        token_url: str = "https://oauth2.googleapis.com/token",
        drive_api_url: str = "https://www.googleapis.com/drive/v3",
        sheets_api_url: str = "https://sheets.googleapis.com/v4",
        max_depth: int = 10,
    ):
        self.http = http_client
        self.policy = policy
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.drive_api_url = drive_api_url.rstrip("/")
        self.sheets_api_url = sheets_api_url.rstrip("/")
        self.max_depth = max_depth
        # refresh token -> (access token, expiry monotonic time)
        self._token_cache: Dict[str, Tuple[str, float]] = {}

    async def _access_token(self, credentials: ProviderCredentials) -> str:
        if credentials.access_token:
            return credentials.access_token

        cached = self._token_cache.get(credentials.refresh_token)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        if not self.client_id or not self.client_secret:
            raise ConfigurationError("Google OAuth client is not configured")

        async def _refresh() -> httpx.Response:
            response = await self.http.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
            raise_for_provider_status(response, "Token refresh")
            return response

        response = await call_with_policy(_refresh, self.policy, "google.token_refresh")
        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise ValidationError("Token refresh returned no access token")
        expires_in = float(payload.get("expires_in", 3600))
        self._token_cache[credentials.refresh_token] = (token, time.monotonic() + expires_in - 60)
        return token

    async def _get(self, url: str, credentials: ProviderCredentials, what: str, params=None) -> httpx.Response:
        token = await self._access_token(credentials)

        async def _call() -> httpx.Response:
            response = await self.http.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
            raise_for_provider_status(response, what)
            return response

        return await call_with_policy(_call, self.policy, f"google.get {what}")

    async def _list_children(self, folder_id: str, credentials: ProviderCredentials) -> List[dict]:
        items: List[dict] = []
        page_token: Optional[str] = None
        while True:
            params = {
                "q": f"'{folder_id}' in parents and trashed = false",
                "fields": FILE_FIELDS,
                "pageSize": 1000,
                "supportsAllDrives": "true",
                "includeItemsFromAllDrives": "true",
            }
            if page_token:
                params["pageToken"] = page_token
            response = await self._get(f"{self.drive_api_url}/files", credentials, "Folder listing", params)
            payload = response.json()
            items.extend(payload.get("files", []))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return items

    async def list_files(
        self, folder_id: str, credentials: ProviderCredentials, recursive: bool = True
    ) -> List[SourceFile]:
        """List spreadsheets and documents under a folder, following pagination."""
        files: List[SourceFile] = []
        visited = set()
        pending = [(folder_id, 0)]

        while pending:
            current, depth = pending.pop()
            if current in visited:
                continue
            visited.add(current)

            for item in await self._list_children(current, credentials):
                mime = item.get("mimeType")
                if mime == FOLDER_MIME:
                    if recursive and depth < self.max_depth:
                        pending.append((item["id"], depth + 1))
                    elif recursive:
                        app_logger.warning(f"Skipping folder {item['id']}: max depth {self.max_depth} reached")
                    continue
                kind = KIND_BY_MIME.get(mime)
                if kind is None:
                    continue
                files.append(
                    SourceFile(
                        external_id=item["id"],
                        name=item.get("name") or item["id"],
                        kind=kind,
                        parent_id=(item.get("parents") or [current])[0],
                        modified_time=parse_timestamp(item.get("modifiedTime", "")),
                        owners=[o.get("emailAddress") for o in item.get("owners", []) if o.get("emailAddress")],
                        mime_type=mime,
                        url=item.get("webViewLink"),
                    )
                )

        app_logger.info(f"Listed {len(files)} supported files under folder {folder_id}")
        return files

    async def fetch_tabular(self, file_id: str, credentials: ProviderCredentials) -> TabularContent:
        base = f"{self.sheets_api_url}/spreadsheets/{file_id}"
        meta = (
            await self._get(base, credentials, "Spreadsheet", {"fields": "properties.title,sheets.properties.title"})
        ).json()
        title = meta.get("properties", {}).get("title") or file_id
        sheet_names = [s["properties"]["title"] for s in meta.get("sheets", [])]

        rows: Dict[str, List[List[str]]] = {name: [] for name in sheet_names}
        if sheet_names:
            params = [("ranges", f"'{name}'") for name in sheet_names]
            params.append(("valueRenderOption", "FORMATTED_VALUE"))
            values = (await self._get(f"{base}/values:batchGet", credentials, "Spreadsheet values", params)).json()
            for name, value_range in zip(sheet_names, values.get("valueRanges", [])):
                rows[name] = [[str(cell) for cell in row] for row in value_range.get("values", [])]

        return TabularContent(title=title, sheet_names=sheet_names, rows=rows)

    async def fetch_text(self, file_id: str, credentials: ProviderCredentials) -> TextContent:
        meta = (
            await self._get(f"{self.drive_api_url}/files/{file_id}", credentials, "Document", {"fields": "name"})
        ).json()
        export = await self._get(
            f"{self.drive_api_url}/files/{file_id}/export",
            credentials,
            "Document export",
            {"mimeType": "text/plain"},
        )
        return TextContent(title=meta.get("name") or file_id, text=export.text)
