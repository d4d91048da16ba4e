"""Async client for the Dropbox HTTP API: list folders, download files, temporary links."""

import asyncio
import json
import logging
from typing import Any, Dict, List, NamedTuple, Optional

import httpx
from pydantic import BaseModel

from aperture.config import Settings
from aperture.errors import ConfigurationError, RemoteProviderError

log = logging.getLogger(__name__)

DROPBOX_API_BASE_URL = "https://api.dropboxapi.com/2"
DROPBOX_CONTENT_BASE_URL = "https://content.dropboxapi.com/2"


class RemoteFile(BaseModel):
    """One file entry from a Dropbox folder listing."""

    id: str
    name: str
    path_display: Optional[str] = None
    path_lower: Optional[str] = None
    size: Optional[int] = None
    content_hash: Optional[str] = None
    client_modified: Optional[str] = None
    server_modified: Optional[str] = None
    rev: Optional[str] = None
    is_downloadable: bool = True

    @classmethod
    def from_entry(cls, entry: Dict[str, Any]) -> Optional["RemoteFile"]:
        """Map a list_folder entry; folders and deleted entries return None."""
        if not isinstance(entry, dict) or entry.get(".tag") != "file":
            return None
        return cls.from_metadata(entry)

    @classmethod
    def from_metadata(cls, entry: Dict[str, Any]) -> "RemoteFile":
        size = entry.get("size")
        return cls(
            id=str(entry.get("id") or ""),
            name=str(entry.get("name") or ""),
            path_display=entry.get("path_display"),
            path_lower=entry.get("path_lower"),
            size=size if isinstance(size, int) else None,
            content_hash=entry.get("content_hash"),
            client_modified=entry.get("client_modified"),
            server_modified=entry.get("server_modified"),
            rev=entry.get("rev"),
            is_downloadable=entry.get("is_downloadable") is not False,
        )


class DownloadedFile(NamedTuple):
    """File body plus whatever metadata Dropbox returned in the Dropbox-API-Result header."""

    body: bytes
    content_type: Optional[str]
    metadata: Optional[RemoteFile]


def _reason_for(status_code: int, details: str) -> str:
    if status_code == 401:
        return "expired_token"
    if status_code == 429:
        return "rate_limited"
    if status_code == 409 and "not_found" in details:
        return "not_found"
    if status_code >= 500:
        return "unavailable"
    return "error"


_REASON_TEXT = {
    "expired_token": "access token is expired or invalid",
    "rate_limited": "rate limited",
    "not_found": "path not found",
    "unavailable": "service unavailable",
    "error": "request rejected",
}


class DropboxClient:
    """
    Dropbox API client over a shared httpx.AsyncClient (owned by the application lifespan).
    The access token is static; token acquisition is handled outside this service.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        access_token: str = "",
        api_base_url: str = DROPBOX_API_BASE_URL,
        content_base_url: str = DROPBOX_CONTENT_BASE_URL,
        timeout: float = 60.0,
        max_attempts: int = 3,
        max_retry_delay: float = 30.0,
    ) -> None:
        self._http = http
        self._access_token = access_token.strip()
        self._api_base_url = api_base_url.rstrip("/")
        self._content_base_url = content_base_url.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._max_retry_delay = max_retry_delay

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, settings: Settings) -> "DropboxClient":
        return cls(
            http,
            access_token=settings.dropbox_access_token,
            api_base_url=settings.dropbox_api_base_url,
            content_base_url=settings.dropbox_content_base_url,
            timeout=settings.dropbox_timeout_seconds,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self._access_token)

    def _headers(self) -> Dict[str, str]:
        if not self._access_token:
            raise ConfigurationError("Dropbox access token is not configured (APERTURE_DROPBOX_ACCESS_TOKEN)")
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _post(self, operation: str, url: str, **kwargs: Any) -> httpx.Response:
        """POST with retries on 429/503 (Retry-After honoured, capped). Raises RemoteProviderError."""
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        for attempt in range(self._max_attempts):
            try:
                r = await self._http.post(url, headers=headers, timeout=self._timeout, **kwargs)
            except httpx.HTTPError as e:
                if attempt < self._max_attempts - 1:
                    log.warning("Dropbox %s: %s, retrying (attempt %d/%d)", operation, e, attempt + 1, self._max_attempts)
                    continue
                raise RemoteProviderError(f"Dropbox {operation} failed: {e}", reason="unavailable") from e
            if r.status_code in (429, 503) and attempt < self._max_attempts - 1:
                retry_after = r.headers.get("Retry-After")
                delay = float(retry_after) if retry_after and retry_after.isdigit() else 2.0 * (2 ** attempt)
                delay = min(delay, self._max_retry_delay)
                log.warning(
                    "Dropbox %s: %s, retry in %.1fs (attempt %d/%d)",
                    operation, r.status_code, delay, attempt + 1, self._max_attempts,
                )
                await asyncio.sleep(delay)
                continue
            if r.is_success:
                return r
            details = r.text[:500]
            reason = _reason_for(r.status_code, details)
            log.warning("Dropbox %s failed status=%d reason=%s details=%s", operation, r.status_code, reason, details)
            raise RemoteProviderError(
                f"Dropbox {operation} failed ({r.status_code}): {_REASON_TEXT[reason]}",
                status_code=r.status_code,
                reason=reason,
            )
        raise RemoteProviderError(f"Dropbox {operation} failed after {self._max_attempts} attempts")

    async def list_folder(
        self,
        path: str = "",
        *,
        recursive: bool = False,
        shared_link_url: Optional[str] = None,
    ) -> List[RemoteFile]:
        """All file entries in a folder ('' is the root), following has_more cursors."""
        body: Dict[str, Any] = {
            "path": path,
            "recursive": recursive,
            "include_media_info": False,
            "include_deleted": False,
            "include_non_downloadable_files": False,
        }
        if shared_link_url:
            body["shared_link"] = {"url": shared_link_url}
        url = f"{self._api_base_url}/files/list_folder"
        files: List[RemoteFile] = []
        while True:
            r = await self._post("list_folder", url, json=body)
            data = r.json()
            for entry in data.get("entries") or []:
                remote = RemoteFile.from_entry(entry)
                if remote is not None:
                    files.append(remote)
            cursor = data.get("cursor")
            if not data.get("has_more") or not cursor:
                break
            url = f"{self._api_base_url}/files/list_folder/continue"
            body = {"cursor": cursor}
        log.info("list_folder path=%r recursive=%s count=%d", path, recursive, len(files))
        return files

    async def download_file(self, *, file_id: Optional[str] = None, path: Optional[str] = None) -> DownloadedFile:
        """Download by id (preferred) or path."""
        selector = file_id or path
        if not selector:
            raise ValueError("download_file requires a file id or path")
        r = await self._post(
            "download",
            f"{self._content_base_url}/files/download",
            headers={"Dropbox-API-Arg": json.dumps({"path": selector})},
        )
        metadata: Optional[RemoteFile] = None
        raw = r.headers.get("dropbox-api-result")
        if raw:
            try:
                metadata = RemoteFile.from_metadata(json.loads(raw))
            except ValueError as e:
                log.debug("Ignoring unparsable Dropbox-API-Result header: %s", e)
        log.info("download_file selector=%s size=%d", selector, len(r.content))
        return DownloadedFile(body=r.content, content_type=r.headers.get("content-type"), metadata=metadata)

    async def get_temporary_link(self, *, file_id: Optional[str] = None, path: Optional[str] = None) -> str:
        """Short-lived direct download link for a file."""
        selector = file_id or path
        if not selector:
            raise ValueError("get_temporary_link requires a file id or path")
        r = await self._post("get_temporary_link", f"{self._api_base_url}/files/get_temporary_link", json={"path": selector})
        link = r.json().get("link")
        if not link:
            raise RemoteProviderError("Dropbox get_temporary_link response did not include a link")
        return link
