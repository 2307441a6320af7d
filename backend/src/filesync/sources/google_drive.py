"""
Google Drive change feed.

Polls the Drive v3 changes API. The first poll (no cursor) asks for a start
page token and lists changes from there; later polls resume from the cursor
returned by the previous one. Access tokens come from a caller-supplied
provider; filesync does not run the OAuth flow itself.

Limitations:
- Drive-native documents (Docs, Sheets, ...) have no downloadable bytes
  without an export step and are skipped.
- Folder scoping is not supported; every change visible to the token is
  reported.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import httpx

from ..core.exceptions import FileReadError, SyncFailedError
from ..core.logging import get_logger
from ..ingestion.filetypes import GOOGLE_APPS_MIME_PREFIX
from .base import ChangeEvent, ChangeKind, PollResult

logger = get_logger(__name__)

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
CHANGE_FIELDS = (
    "nextPageToken,newStartPageToken,"
    "changes(fileId,removed,file(id,name,mimeType,createdTime,modifiedTime,md5Checksum,size,trashed))"
)

TokenProvider = Callable[[], Awaitable[str]]


def static_token(token: str) -> TokenProvider:
    """Token provider returning a fixed access token."""

    async def provide() -> str:
        return token

    return provide


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def _change_kind(file: dict[str, Any]) -> ChangeKind:
    created = _parse_time(file.get("createdTime"))
    modified = _parse_time(file.get("modifiedTime"))
    if created is not None and created == modified:
        return ChangeKind.ADDED
    return ChangeKind.MODIFIED


class GoogleDriveChangeSource:
    """Polling change source backed by the Drive changes API."""

    name = "google_drive"

    def __init__(
        self,
        token_provider: TokenProvider,
        client: httpx.AsyncClient | None = None,
        drive_id: str | None = None,
        include_shared_drives: bool = True,
        timeout_seconds: float = 30.0,
        page_size: int = 100,
    ) -> None:
        self._token_provider = token_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
            headers={"User-Agent": "filesync"},
        )
        self.drive_id = drive_id
        self.include_shared_drives = include_shared_drives
        self.page_size = page_size

    @classmethod
    def from_settings(cls, settings, client: httpx.AsyncClient | None = None) -> GoogleDriveChangeSource:  # type: ignore[no-untyped-def]
        if not settings.google_drive_access_token:
            raise ValueError("GOOGLE_DRIVE_ACCESS_TOKEN is not configured")
        return cls(
            token_provider=static_token(settings.google_drive_access_token),
            client=client,
            drive_id=settings.google_drive_id,
            include_shared_drives=settings.google_drive_include_shared,
            timeout_seconds=settings.http_timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> GoogleDriveChangeSource:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.aclose()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll(self, cursor: str | None) -> PollResult:
        """Return every change since ``cursor`` and the cursor for the next poll.

        Raises:
            SyncFailedError: If any page request fails or returns an unusable body.
        """
        page_token = cursor or await self._get_start_page_token()
        params: dict[str, Any] = {
            "pageToken": page_token,
            "pageSize": self.page_size,
            "supportsAllDrives": "true",
            "includeItemsFromAllDrives": "true" if self.include_shared_drives else "false",
            "fields": CHANGE_FIELDS,
        }
        if self.drive_id:
            params["driveId"] = self.drive_id

        changes: list[ChangeEvent] = []
        new_start: str | None = None
        while True:
            resp = await self._get_json("/changes", params)
            for change in resp.get("changes") or []:
                event = self._to_event(change)
                if event is not None:
                    changes.append(event)
            new_start = resp.get("newStartPageToken") or new_start
            next_token = resp.get("nextPageToken")
            if not next_token:
                break
            params["pageToken"] = next_token

        if not new_start:
            raise SyncFailedError(self.name, "changes listing ended without newStartPageToken")

        logger.info(
            "Drive changes polled",
            extra={"change_count": len(changes), "had_cursor": cursor is not None},
        )
        return PollResult(changes=changes, next_cursor=new_start)

    async def _get_start_page_token(self) -> str:
        params: dict[str, Any] = {"supportsAllDrives": "true"}
        if self.drive_id:
            params["driveId"] = self.drive_id
        resp = await self._get_json("/changes/startPageToken", params)
        token = resp.get("startPageToken")
        if not token:
            raise SyncFailedError(self.name, "response did not include startPageToken")
        return token

    def _to_event(self, change: dict[str, Any]) -> ChangeEvent | None:
        file = change.get("file") or {}
        file_id = change.get("fileId") or file.get("id")
        if not file_id:
            return None

        if change.get("removed") or file.get("trashed"):
            # Treat trashed files as removed (user deleted -> trash)
            return ChangeEvent(
                path_or_id=file_id,
                kind=ChangeKind.REMOVED,
                name=file.get("name"),
                source_id=file_id,
            )

        mime_type = file.get("mimeType") or ""
        if mime_type.startswith(GOOGLE_APPS_MIME_PREFIX):
            logger.debug("Skipping Drive-native item", extra={"file_id": file_id, "mime_type": mime_type})
            return None

        size = file.get("size")
        return ChangeEvent(
            path_or_id=file_id,
            kind=_change_kind(file),
            bytes_provider=self._bytes_provider(file_id),
            name=file.get("name") or file_id,
            source_id=file_id,
            mime_type=mime_type or None,
            size_hint=int(size) if size is not None else None,
        )

    def _bytes_provider(self, file_id: str) -> Callable[[], Awaitable[bytes]]:
        async def download() -> bytes:
            return await self.download(file_id)

        return download

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _headers(self) -> dict[str, str]:
        token = await self._token_provider()
        return {"Authorization": f"Bearer {token}"}

    async def _get_json(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{DRIVE_API_BASE}{path}"
        try:
            response = await self._client.get(url, params=params, headers=await self._headers())
        except httpx.HTTPError as e:
            raise SyncFailedError(self.name, f"request to {path} failed: {e}") from e

        if response.status_code >= 400:
            raise SyncFailedError(
                self.name,
                f"{path} returned HTTP {response.status_code}",
                status_code=response.status_code,
                details={"path": path, "status_code": response.status_code, "body": response.text[:500]},
            )
        try:
            body = response.json()
        except ValueError as e:
            raise SyncFailedError(self.name, f"{path} returned invalid JSON") from e
        if not isinstance(body, dict):
            raise SyncFailedError(self.name, f"{path} returned unexpected body type {type(body).__name__}")
        return body

    async def download(self, file_id: str) -> bytes:
        """Fetch a file's content.

        Raises:
            FileReadError: If the download fails; affects only this file.
        """
        url = f"{DRIVE_API_BASE}/files/{file_id}"
        try:
            response = await self._client.get(
                url,
                params={"alt": "media", "supportsAllDrives": "true"},
                headers=await self._headers(),
            )
        except httpx.HTTPError as e:
            raise FileReadError(file_id, f"download failed: {e}") from e
        if response.status_code >= 400:
            raise FileReadError(
                file_id,
                f"download returned HTTP {response.status_code}",
                details={"file_id": file_id, "status_code": response.status_code},
            )
        return response.content
