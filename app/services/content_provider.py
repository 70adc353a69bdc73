"""Content provider boundary: listing and fetching source files."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from app.utils.errors import ValidationError

TABULAR = "tabular"
TEXT = "text"


@dataclass
class ProviderCredentials:
    """OAuth credentials for one folder owner.

    Either a short-lived access token or a refresh token (or both) must be set.
    """

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.access_token and not self.refresh_token:
            raise ValidationError("Provider credentials require an access or refresh token")

    def __repr__(self) -> str:
        return "ProviderCredentials(access_token=***, refresh_token=***)"


@dataclass
class SourceFile:
    external_id: str
    name: str
    kind: str
    parent_id: Optional[str]
    modified_time: datetime
    owners: List[str] = field(default_factory=list)
    mime_type: Optional[str] = None
    url: Optional[str] = None

    @property
    def modified_epoch(self) -> float:
        return self.modified_time.timestamp()


@dataclass
class TabularContent:
    title: str
    sheet_names: List[str]
    rows: Dict[str, List[List[str]]]


@dataclass
class TextContent:
    title: str
    text: str


class ContentProvider(Protocol):
    async def list_files(
        self, folder_id: str, credentials: ProviderCredentials, recursive: bool = True
    ) -> List[SourceFile]: ...

    async def fetch_tabular(self, file_id: str, credentials: ProviderCredentials) -> TabularContent: ...

    async def fetch_text(self, file_id: str, credentials: ProviderCredentials) -> TextContent: ...


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if not value:
        raise ValidationError("Missing modification timestamp")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid timestamp: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
