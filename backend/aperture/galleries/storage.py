"""Store gallery content: dedupe by checksum, upload new bytes, record in the catalog."""

import logging
import re
import time
import uuid
from typing import NamedTuple, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from aperture.errors import DuplicateContentError, StorageError
from aperture.galleries.blob_store import BlobStore
from aperture.galleries.catalog import CatalogSchema, link_duplicate, store_new
from aperture.galleries.checksum import compute_checksum, find_duplicate, resolve_original
from aperture.galleries.models import GalleryAsset

log = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class StoreResult(NamedTuple):
    """Outcome of storing one file. duplicate_of is the original's id on a dedup hit."""

    asset: GalleryAsset
    duplicate: bool
    duplicate_of: Optional[str] = None


def slugify(value: Optional[str]) -> str:
    """Folder-safe slug for a scope key; empty or missing values map to 'unassigned'."""
    if not value:
        return "unassigned"
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)[:60].strip("-")
    return slug or "unassigned"


def sanitize_file_name(value: str) -> str:
    """Replace anything outside [A-Za-z0-9_.-] with '-'; leading dots are dropped."""
    cleaned = re.sub(r"[^a-zA-Z0-9_.-]", "-", (value or "").strip()).lstrip(".")
    return cleaned or f"asset-{uuid.uuid4()}"


def build_storage_path(client_id: Optional[str], project_code: Optional[str], file_name: str) -> str:
    """client/project/<ms-timestamp>-<uuid>-<name>; unique per call so uploads never collide."""
    unique_name = f"{int(time.time() * 1000)}-{uuid.uuid4()}-{sanitize_file_name(file_name)}"
    return "/".join([slugify(client_id), slugify(project_code), unique_name])


async def _duplicate_result(
    session: AsyncSession,
    blob_store: BlobStore,
    existing: GalleryAsset,
    dropbox_file_id: Optional[str],
    dropbox_revision: Optional[str],
) -> StoreResult:
    original = await resolve_original(session, existing)
    if not original.public_url and original.storage_path and original.storage_bucket:
        url = await blob_store.public_url(original.storage_bucket, original.storage_path)
        if url:
            original.public_url = url
    await link_duplicate(session, original.id, dropbox_file_id, dropbox_revision)
    return StoreResult(asset=original, duplicate=True, duplicate_of=original.id)


async def store_gallery_asset(
    session: AsyncSession,
    blob_store: BlobStore,
    schema: CatalogSchema,
    *,
    bucket: str,
    body: bytes,
    file_name: str,
    content_type: Optional[str] = None,
    size: Optional[int] = None,
    client_id: Optional[str] = None,
    project_code: Optional[str] = None,
    dropbox_file_id: Optional[str] = None,
    dropbox_revision: Optional[str] = None,
    source: str = "uploader",
) -> StoreResult:
    """
    Store one file for a (client, project) scope. Commits the session.

    Identical bytes already stored in the same scope are not uploaded again: the
    existing original is returned and only its Dropbox linkage is updated. If a
    concurrent writer wins the insert, the bytes just uploaded are discarded and
    the winner is returned as the duplicate.
    """
    await blob_store.ensure_container(bucket)
    checksum = compute_checksum(body)
    existing = await find_duplicate(session, checksum, client_id, project_code)
    if existing is not None:
        result = await _duplicate_result(session, blob_store, existing, dropbox_file_id, dropbox_revision)
        log.info(
            "store_asset duplicate client=%s project=%s checksum=%s original=%s",
            client_id, project_code, checksum, result.duplicate_of,
        )
        return result

    storage_path = build_storage_path(client_id, project_code, file_name)
    upload_type = content_type or DEFAULT_CONTENT_TYPE
    try:
        await blob_store.upload(bucket, storage_path, body, upload_type)
    except (OSError, ValueError) as e:
        raise StorageError(f"Upload failed for {file_name}: {e}") from e
    public_url = await blob_store.public_url(bucket, storage_path)

    values = {
        "id": str(uuid.uuid4()),
        "client_id": client_id,
        "project_code": project_code,
        "file_name": file_name,
        "content_type": upload_type,
        "size_bytes": size if isinstance(size, int) and size >= 0 else len(body),
        "storage_bucket": bucket,
        "storage_path": storage_path,
        "public_url": public_url,
        "checksum": checksum,
        "duplicate_of": None,
        "dropbox_file_id": dropbox_file_id,
        "dropbox_revision": dropbox_revision,
        "source": source,
    }
    try:
        asset = await store_new(session, schema, values)
    except DuplicateContentError:
        log.info("store_asset lost insert race checksum=%s; discarding %s", checksum, storage_path)
        try:
            await blob_store.discard(bucket, storage_path)
        except Exception as e:
            log.warning("Could not discard orphan object %s/%s: %s", bucket, storage_path, e)
        winner = await find_duplicate(session, checksum, client_id, project_code)
        if winner is None:
            raise
        return await _duplicate_result(session, blob_store, winner, dropbox_file_id, dropbox_revision)

    log.info(
        "store_asset stored client=%s project=%s checksum=%s id=%s size=%d",
        client_id, project_code, checksum, asset.id, asset.size_bytes,
    )
    return StoreResult(asset=asset, duplicate=False)
