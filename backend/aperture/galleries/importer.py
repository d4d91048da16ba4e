"""Batch import: resolve Dropbox references, then download, dedupe and store each file.

Items run concurrently under a bounded pool, each with its own database session,
so one failing file never affects its siblings. Errors are captured per item.
"""

import asyncio
import logging
import mimetypes
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from aperture.dropbox.resolver import (
    RemoteReference,
    ResolvedRemoteFile,
    normalize_reference,
    resolve_references,
)
from aperture.dropbox.selection import expand_selection
from aperture.errors import RemoteProviderError
from aperture.galleries.catalog import mark_attached
from aperture.galleries.models import CamelModel, Gallery, GalleryAssetOut
from aperture.galleries.storage import DEFAULT_CONTENT_TYPE, StoreResult, store_gallery_asset
from aperture.services import Services

log = logging.getLogger(__name__)

IMPORT_SOURCE = "dropbox-import"
WEBHOOK_SOURCE = "dropbox-webhook"


class ImportRequest(CamelModel):
    """Body of a gallery import. References and selection are merged before resolving."""

    gallery_id: Optional[str] = None
    gallery_name: Optional[str] = None
    client_name: Optional[str] = None
    client_id: Optional[str] = None
    project_code: Optional[str] = None
    folder_path: Optional[str] = None
    trigger_zapier: bool = True
    assets: List[RemoteReference] = Field(default_factory=list)
    selection: List[Dict[str, Any]] = Field(default_factory=list)


class ItemResult(CamelModel):
    """Outcome for one file of a batch."""

    id: str
    status: Literal["stored", "duplicate", "error"]
    duplicate: bool = False
    error: Optional[str] = None
    asset: Optional[GalleryAssetOut] = None
    # Set when the failure came from the provider; not part of the response body
    provider_error: bool = Field(default=False, exclude=True)

    @classmethod
    def from_store(cls, item_id: str, result: StoreResult) -> "ItemResult":
        return cls(
            id=item_id,
            status="duplicate" if result.duplicate else "stored",
            duplicate=result.duplicate,
            asset=GalleryAssetOut.from_asset(result.asset, result.duplicate_of),
        )

    @classmethod
    def from_error(cls, item_id: str, error: Exception) -> "ItemResult":
        return cls(
            id=item_id,
            status="error",
            error=str(error) or type(error).__name__,
            provider_error=isinstance(error, RemoteProviderError),
        )


class ImportCounts(CamelModel):
    imported: int
    skipped: int
    duplicates: int
    failed: int


class _Outcome(BaseModel):
    counts: ImportCounts
    results: List[ItemResult]
    resolved: List[ResolvedRemoteFile] = Field(default_factory=list)

    @property
    def failed_ids(self) -> List[str]:
        return [r.id for r in self.results if r.status == "error"]


class ImportSuccess(_Outcome):
    kind: Literal["success"] = "success"


class ImportPartialFailure(_Outcome):
    kind: Literal["partial"] = "partial"


class ImportTotalFailure(_Outcome):
    kind: Literal["failure"] = "failure"

    @property
    def provider_only(self) -> bool:
        """Every item failed at the provider (downloads), none at storage."""
        return all(r.provider_error for r in self.results)


ImportOutcome = Union[ImportSuccess, ImportPartialFailure, ImportTotalFailure]


def summarize(results: List[ItemResult], resolved: Optional[List[ResolvedRemoteFile]] = None) -> ImportOutcome:
    """Tag the batch: all items errored is a total failure, some is partial."""
    imported = sum(1 for r in results if r.status == "stored")
    duplicates = sum(1 for r in results if r.status == "duplicate")
    failed = sum(1 for r in results if r.status == "error")
    counts = ImportCounts(
        imported=imported,
        skipped=len(results) - imported,
        duplicates=duplicates,
        failed=failed,
    )
    fields = {"counts": counts, "results": results, "resolved": resolved or []}
    if failed and failed == len(results):
        return ImportTotalFailure(**fields)
    if failed:
        return ImportPartialFailure(**fields)
    return ImportSuccess(**fields)


def collect_references(*groups: List[RemoteReference]) -> List[RemoteReference]:
    """Normalize and merge reference lists; later entries with the same key replace earlier ones."""
    by_key: Dict[str, RemoteReference] = {}
    for group in groups:
        for ref in group:
            cleaned = normalize_reference(ref)
            if cleaned is not None:
                by_key[cleaned.key()] = cleaned
    return list(by_key.values())


def guess_content_type(file_name: str, reported: Optional[str] = None) -> str:
    """Reported type unless it is missing or generic, then a guess from the extension."""
    if reported and reported.split(";")[0].strip() not in ("", DEFAULT_CONTENT_TYPE):
        return reported
    guessed, _ = mimetypes.guess_type(file_name)
    return guessed or reported or DEFAULT_CONTENT_TYPE


async def run_bounded(
    items: List[Any],
    worker: Callable[[Any], Awaitable[ItemResult]],
    item_id: Callable[[Any], str],
    concurrency: int,
    timeout: float,
) -> List[ItemResult]:
    """
    Run worker over items with at most `concurrency` in flight, results in input order.

    Items that have not started when the deadline passes are reported as errors;
    items already running are allowed to finish.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run_one(item: Any) -> ItemResult:
        async with semaphore:
            if loop.time() >= deadline:
                log.warning("Import deadline passed before item %s started", item_id(item))
                return ItemResult.from_error(item_id(item), TimeoutError("Import timed out before this file was processed"))
            return await worker(item)

    return list(await asyncio.gather(*(run_one(item) for item in items)))


async def _gallery_client_id(services: Services, gallery_id: str) -> Optional[str]:
    async with services.db.session() as session:
        gallery = await session.get(Gallery, gallery_id)
    return gallery.client_id if gallery is not None else None


async def _import_one(
    services: Services,
    item: ResolvedRemoteFile,
    client_id: Optional[str],
    project_code: Optional[str],
) -> ItemResult:
    try:
        downloaded = await services.dropbox.download_file(file_id=item.dropbox_file_id)
        async with services.db.session() as session:
            result = await store_gallery_asset(
                session,
                services.blob_store,
                services.catalog,
                bucket=services.settings.storage_bucket,
                body=downloaded.body,
                file_name=item.file_name,
                content_type=guess_content_type(item.file_name, downloaded.content_type),
                size=len(downloaded.body),
                client_id=client_id,
                project_code=project_code,
                dropbox_file_id=item.dropbox_file_id,
                dropbox_revision=item.rev or (downloaded.metadata.rev if downloaded.metadata else None),
                source=IMPORT_SOURCE,
            )
    except Exception as e:
        log.warning("import item %s (%s) failed: %s", item.dropbox_file_id, item.dropbox_path, e)
        return ItemResult.from_error(item.dropbox_file_id, e)
    return ItemResult.from_store(item.dropbox_file_id, result)


async def run_import(services: Services, request: ImportRequest) -> ImportOutcome:
    """
    Import Dropbox files into a gallery.

    Raises ValueError when galleryId is missing or nothing resolves, ConfigurationError
    when Dropbox is not configured and RemoteProviderError when listing fails. Once
    items are resolved, per-file failures are reported in the outcome instead.
    """
    gallery_id = (request.gallery_id or "").strip()
    if not gallery_id:
        raise ValueError("galleryId is required to import Dropbox assets")

    expanded: List[RemoteReference] = []
    if request.selection:
        expanded = await expand_selection(services.dropbox, request.selection)
    references = collect_references(request.assets, expanded)

    resolved = await resolve_references(services.dropbox, references, request.folder_path)
    if not resolved:
        raise ValueError("Unable to resolve Dropbox files for import. Confirm the folder path and try again.")

    client_id = request.client_id or await _gallery_client_id(services, gallery_id)
    settings = services.settings
    results = await run_bounded(
        resolved,
        lambda item: _import_one(services, item, client_id, request.project_code),
        lambda item: item.dropbox_file_id,
        settings.import_concurrency,
        settings.import_timeout_seconds,
    )

    asset_ids = [r.asset.id for r in results if r.asset is not None]
    if asset_ids:
        # Items are already committed; a failed attach must not hide their results.
        try:
            async with services.db.session() as session:
                await mark_attached(session, services.catalog, asset_ids, gallery_id)
        except Exception:
            log.exception("run_import gallery=%s could not attach %d assets", gallery_id, len(asset_ids))

    outcome = summarize(results, resolved)
    log.info(
        "run_import gallery=%s client=%s requested=%d resolved=%d imported=%d duplicates=%d failed=%d",
        gallery_id, client_id, len(references), len(resolved),
        outcome.counts.imported, outcome.counts.duplicates, outcome.counts.failed,
    )
    return outcome


def build_import_notification(
    request: ImportRequest,
    references_count: int,
    outcome: ImportOutcome,
) -> Dict[str, Any]:
    """Payload of the gallery.imported event, one per batch."""
    assets = []
    for item, result in zip(outcome.resolved, outcome.results):
        if result.status == "error":
            continue
        assets.append({
            "dropboxFileId": item.dropbox_file_id,
            "dropboxPath": item.dropbox_path,
            "fileName": item.file_name,
            "sizeInBytes": item.size_in_bytes,
            "clientModified": item.client_modified,
            "serverModified": item.server_modified,
            "contentHash": item.content_hash,
            "publicUrl": result.asset.public_url if result.asset else None,
            "duplicate": result.duplicate,
        })
    return {
        "event": "gallery.imported",
        "galleryId": request.gallery_id,
        "galleryName": request.gallery_name,
        "clientId": request.client_id,
        "clientName": request.client_name,
        "importedAt": datetime.now(timezone.utc).isoformat(),
        "requestedAssetCount": references_count,
        "resolvedAssetCount": len(outcome.resolved),
        **outcome.counts.model_dump(),
        "assets": assets,
    }


class WebhookFile(CamelModel):
    """One file announced by an inbound webhook."""

    id: Optional[str] = None
    name: Optional[str] = None
    download_url: Optional[str] = None
    size: Optional[int] = None
    content_type: Optional[str] = None
    rev: Optional[str] = None
    revision: Optional[str] = None
    client_id: Optional[str] = None
    project_code: Optional[str] = None


async def _download(services: Services, url: Optional[str]) -> Tuple[bytes, Optional[str]]:
    if not url:
        raise ValueError("File is missing downloadUrl")
    try:
        r = await services.http.get(url, timeout=services.settings.dropbox_timeout_seconds)
    except Exception as e:
        raise RemoteProviderError(f"Failed to download file: {e}", reason="unavailable") from e
    if not r.is_success:
        raise RemoteProviderError(f"Failed to download file ({r.status_code})", status_code=r.status_code)
    return r.content, r.headers.get("content-type")


def _file_identifier(raw: Dict[str, Any], index: int) -> str:
    for key in ("id", "name"):
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return f"file-{index + 1}"


async def ingest_webhook_files(services: Services, payload: Dict[str, Any]) -> List[ItemResult]:
    """
    Store every file listed under payload['files']. File-level clientId/projectCode
    win over the payload-level ones. Returns one result per file, in order.
    """
    raw_files = payload.get("files")
    if not isinstance(raw_files, list):
        return []
    default_client = payload.get("clientId") if isinstance(payload.get("clientId"), str) else None
    default_project = payload.get("projectCode") if isinstance(payload.get("projectCode"), str) else None

    entries = []
    for index, raw in enumerate(raw_files):
        raw = raw if isinstance(raw, dict) else {}
        entries.append((_file_identifier(raw, index), raw))

    async def ingest(entry) -> ItemResult:
        identifier, raw = entry
        try:
            # Validated per file so one malformed entry only fails itself.
            file = WebhookFile.model_validate(raw)
            body, reported_type = await _download(services, file.download_url)
            name = file.name or identifier
            async with services.db.session() as session:
                result = await store_gallery_asset(
                    session,
                    services.blob_store,
                    services.catalog,
                    bucket=services.settings.storage_bucket,
                    body=body,
                    file_name=name,
                    content_type=file.content_type or guess_content_type(name, reported_type),
                    size=file.size if file.size is not None else len(body),
                    client_id=file.client_id or default_client,
                    project_code=file.project_code or default_project,
                    dropbox_file_id=file.id,
                    dropbox_revision=file.rev or file.revision,
                    source=WEBHOOK_SOURCE,
                )
        except Exception as e:
            log.warning("webhook file %s failed: %s", identifier, e)
            return ItemResult.from_error(identifier, e)
        return ItemResult.from_store(identifier, result)

    results = await run_bounded(
        entries,
        ingest,
        lambda entry: entry[0],
        services.settings.import_concurrency,
        services.settings.import_timeout_seconds,
    )
    log.info(
        "ingest_webhook_files files=%d stored=%d duplicates=%d failed=%d",
        len(results),
        sum(1 for r in results if r.status == "stored"),
        sum(1 for r in results if r.status == "duplicate"),
        sum(1 for r in results if r.status == "error"),
    )
    return results
