"""Pytest configuration: test settings, a per-test catalog database and a fake Dropbox."""

import json
import os
import tempfile
from typing import Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

# Set before aperture.main is imported so the module-level app never points at /data
_tmp = tempfile.mkdtemp(prefix="aperture_test_")
os.environ.setdefault("APERTURE_DB_PATH", os.path.join(_tmp, "import.db"))
os.environ.setdefault("APERTURE_STORAGE_BASE_PATH", os.path.join(_tmp, "blobs"))
os.environ.setdefault("APERTURE_LOG_LEVEL", "DEBUG")

from aperture.config import Settings  # noqa: E402
from aperture.db.session import Database  # noqa: E402
from aperture.dropbox.client import DropboxClient  # noqa: E402
from aperture.galleries.blob_store import LocalBlobStore  # noqa: E402
from aperture.galleries.catalog import CatalogSchema  # noqa: E402
from aperture.services import Services  # noqa: E402

DROPBOX_API = "https://dropbox.test/api"
DROPBOX_CONTENT = "https://dropbox.test/content"
PUBLIC_BASE_URL = "https://cdn.example.test"


class FakeDropbox:
    """In-memory Dropbox served through httpx.MockTransport.

    Folders are keyed by lower-cased path ('' is root); a shared link is keyed
    'link:<url>'. Plain download URLs (webhook files) live in `urls`.
    """

    def __init__(self) -> None:
        self.folders: Dict[str, List[dict]] = {}
        self.contents: Dict[str, bytes] = {}
        self.urls: Dict[str, bytes] = {}
        self.failing_downloads: set = set()
        self.listed: List[str] = []
        self.downloaded: List[str] = []
        self.notifications: List[httpx.Request] = []
        self._next_id = 1

    def add_file(self, folder: str, name: str, body: bytes, file_id: Optional[str] = None, rev: str = "0123abcd") -> dict:
        """Register a file in a folder listing and return its entry."""
        if file_id is None:
            file_id = f"id:{self._next_id:04d}"
            self._next_id += 1
        path = f"{folder.rstrip('/')}/{name}"
        entry = {
            ".tag": "file",
            "id": file_id,
            "name": name,
            "path_display": path,
            "path_lower": path.lower(),
            "size": len(body),
            "rev": rev,
            "client_modified": "2024-05-01T10:00:00Z",
            "server_modified": "2024-05-01T10:05:00Z",
            "content_hash": "hash-" + file_id,
        }
        self.folders.setdefault(folder.rstrip("/").lower(), []).append(entry)
        self.contents[file_id] = body
        return entry

    def add_entries(self, key: str, entries: List[dict]) -> None:
        self.folders.setdefault(key.lower(), []).extend(entries)

    def _list_folder(self, body: dict) -> httpx.Response:
        if "cursor" in body:
            return httpx.Response(200, json={"entries": [], "has_more": False, "cursor": body["cursor"]})
        link = (body.get("shared_link") or {}).get("url")
        key = f"link:{link}" if link else str(body.get("path", "")).lower()
        self.listed.append(key)
        if key not in self.folders:
            return httpx.Response(409, json={"error_summary": "path/not_found/.."})
        return httpx.Response(200, json={"entries": self.folders[key], "has_more": False, "cursor": "c1"})

    def _download(self, request: httpx.Request) -> httpx.Response:
        selector = json.loads(request.headers["Dropbox-API-Arg"])["path"]
        self.downloaded.append(selector)
        if selector in self.failing_downloads:
            return httpx.Response(409, json={"error_summary": "path/not_found/.."})
        if selector not in self.contents:
            return httpx.Response(409, json={"error_summary": "path/not_found/.."})
        metadata = next(
            (e for entries in self.folders.values() for e in entries if e.get("id") == selector),
            {"id": selector, "name": selector},
        )
        return httpx.Response(
            200,
            content=self.contents[selector],
            headers={"content-type": "application/octet-stream", "dropbox-api-result": json.dumps(metadata)},
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url.startswith(DROPBOX_API + "/files/list_folder"):
            return self._list_folder(json.loads(request.content or b"{}"))
        if url == DROPBOX_CONTENT + "/files/download":
            return self._download(request)
        if url in self.urls:
            return httpx.Response(200, content=self.urls[url], headers={"content-type": "image/jpeg"})
        if url.startswith("https://hooks.example.test"):
            self.notifications.append(request)
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404, text="not found")


@pytest.fixture
def fake_dropbox() -> FakeDropbox:
    return FakeDropbox()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at tmp_path with a Dropbox token and the fake Dropbox URLs."""
    return Settings(
        db_path=tmp_path / "catalog.db",
        storage_base_path=tmp_path / "blobs",
        storage_public_base_url=PUBLIC_BASE_URL,
        dropbox_access_token="test-token",
        dropbox_api_base_url=DROPBOX_API,
        dropbox_content_base_url=DROPBOX_CONTENT,
        import_concurrency=4,
        import_timeout_seconds=30,
    )


@pytest.fixture
def blob_store(settings) -> LocalBlobStore:
    return LocalBlobStore(settings.storage_base_path, settings.storage_public_base_url)


@pytest_asyncio.fixture
async def database(settings):
    """Fresh SQLite catalog per test."""
    db = Database(settings.sqlalchemy_url)
    await db.init()
    yield db
    await db.dispose()


@pytest.fixture
def session_factory(database):
    """Use as `async with session_factory() as session`."""
    return database.session


@pytest.fixture
def catalog(database) -> CatalogSchema:
    return CatalogSchema.from_database(database)


@pytest_asyncio.fixture
async def http_client(fake_dropbox):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_dropbox.handler)) as client:
        yield client


@pytest.fixture
def dropbox(http_client, settings) -> DropboxClient:
    return DropboxClient.from_settings(http_client, settings)


@pytest.fixture
def services(settings, database, blob_store, http_client, dropbox) -> Services:
    return Services(settings, database, blob_store, http_client, dropbox)


@pytest.fixture
def stored_objects(settings):
    """Callable returning relative paths of every object written to the local blob store."""
    root = settings.storage_base_path

    def _list() -> List[str]:
        if not root.exists():
            return []
        return sorted(str(p.relative_to(root)) for p in root.rglob("*") if p.is_file())

    return _list
