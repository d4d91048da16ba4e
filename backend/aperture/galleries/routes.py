"""Gallery API routes: upload, Dropbox import, create, read, publish."""

import json
import logging
from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile

from aperture.db.session import get_db
from aperture.errors import ConfigurationError, RemoteProviderError, StorageError
from aperture.galleries.catalog import list_gallery_assets
from aperture.galleries.importer import (
    ImportPartialFailure,
    ImportRequest,
    ImportTotalFailure,
    build_import_notification,
    run_import,
)
from aperture.galleries.models import (
    Gallery,
    GalleryAssetOut,
    GalleryCreate,
    GalleryOut,
    GalleryPublication,
    PublishRequest,
)
from aperture.galleries.storage import store_gallery_asset
from aperture.limiter import IMPORT_LIMIT, UPLOAD_LIMIT, limiter
from aperture.services import Services, get_services
from aperture.webhooks.events import emit_notification

router = APIRouter(prefix="/api/galleries", tags=["galleries"])
log = logging.getLogger(__name__)


def _form_text(form, *names: str) -> Optional[str]:
    """First non-empty text field among names (uploader sends either camelCase or short names)."""
    for name in names:
        value = form.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@router.post("/upload")
@limiter.limit(UPLOAD_LIMIT)
async def upload_asset(
    request: Request,
    services: Annotated[Services, Depends(get_services)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> JSONResponse:
    """
    Upload one file (multipart, first file part). Form fields: clientId/client,
    projectCode/project, dropboxFileId, dropboxRevision.
    201 with the new asset, 200 with the original when the bytes are already stored.
    """
    form = await request.form()
    upload = next((v for _, v in form.multi_items() if isinstance(v, UploadFile)), None)
    if upload is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file uploaded")
    max_bytes = services.settings.max_upload_bytes
    body = await upload.read(max_bytes + 1)
    if len(body) > max_bytes:
        log.warning("upload_asset rejected file=%s: larger than %d bytes", upload.filename, max_bytes)
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {max_bytes} byte upload limit",
        )
    client_id = _form_text(form, "clientId", "client")
    project_code = _form_text(form, "projectCode", "project")
    try:
        result = await store_gallery_asset(
            session,
            services.blob_store,
            services.catalog,
            bucket=services.settings.storage_bucket,
            body=body,
            file_name=upload.filename or "upload",
            content_type=upload.content_type,
            size=len(body),
            client_id=client_id,
            project_code=project_code,
            dropbox_file_id=_form_text(form, "dropboxFileId"),
            dropbox_revision=_form_text(form, "dropboxRevision"),
            source="uploader",
        )
    except (StorageError, ConfigurationError, OSError) as e:
        log.error("upload_asset failed file=%s client=%s project=%s: %s", upload.filename, client_id, project_code, e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    out = GalleryAssetOut.from_asset(result.asset, result.duplicate_of)
    log.info(
        "upload_asset file=%s client=%s project=%s size=%d duplicate=%s id=%s",
        upload.filename, client_id, project_code, len(body), result.duplicate, out.id,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if result.duplicate else status.HTTP_201_CREATED,
        content={"data": out.model_dump(mode="json", by_alias=True)},
    )


@router.post("/import")
@limiter.limit(IMPORT_LIMIT)
async def import_from_dropbox(
    request: Request,
    background: BackgroundTasks,
    services: Annotated[Services, Depends(get_services)],
) -> JSONResponse:
    """
    Import Dropbox files into a gallery. 200 when every file was stored or already
    present, 207 with the failing ids when only some failed.
    """
    try:
        body = ImportRequest.model_validate(json.loads(await request.body() or b"{}"))
    except (ValueError, ValidationError) as e:
        log.warning("import rejected: invalid body: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid import request body")
    try:
        outcome = await run_import(services, body)
    except ValueError as e:
        log.warning("import rejected gallery=%s: %s", body.gallery_id, e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConfigurationError as e:
        log.error("import gallery=%s: %s", body.gallery_id, e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    except RemoteProviderError as e:
        log.error("import gallery=%s provider failure reason=%s: %s", body.gallery_id, e.reason, e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    counts = outcome.counts.model_dump()
    if isinstance(outcome, ImportTotalFailure):
        code = status.HTTP_502_BAD_GATEWAY if outcome.provider_only else status.HTTP_500_INTERNAL_SERVER_ERROR
        return JSONResponse(
            status_code=code,
            content={
                "error": f"All {len(outcome.results)} files failed to import",
                "data": counts,
                "failed": outcome.failed_ids,
            },
        )

    if body.trigger_zapier:
        background.add_task(
            emit_notification,
            services,
            "gallery.imported",
            build_import_notification(body, len(body.assets) + len(body.selection), outcome),
        )

    if isinstance(outcome, ImportPartialFailure):
        failed = outcome.failed_ids
        return JSONResponse(
            status_code=status.HTTP_207_MULTI_STATUS,
            content={
                "error": f"{len(failed)} of {len(outcome.results)} files failed to import",
                "data": counts,
                "failed": failed,
            },
        )
    return JSONResponse(content={"data": counts})


@router.post("", status_code=status.HTTP_201_CREATED, response_model=GalleryOut)
async def create_gallery(
    body: GalleryCreate,
    session: Annotated[AsyncSession, Depends(get_db)],
) -> GalleryOut:
    """Create a draft gallery."""
    gallery = Gallery(
        client_id=body.client_id,
        gallery_name=body.gallery_name,
        gallery_url=body.gallery_url,
        deliver_by=body.deliver_by,
        expires_at=body.expires_at,
    )
    session.add(gallery)
    await session.commit()
    await session.refresh(gallery)
    log.info("create_gallery id=%s name=%r client=%s", gallery.id, gallery.gallery_name, gallery.client_id)
    return GalleryOut.model_validate(gallery)


async def _gallery_or_404(session: AsyncSession, gallery_id: str) -> Gallery:
    gallery = await session.get(Gallery, gallery_id)
    if gallery is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Gallery not found")
    return gallery


@router.get("/{gallery_id}", response_model=GalleryOut)
async def get_gallery(
    gallery_id: str,
    services: Annotated[Services, Depends(get_services)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> GalleryOut:
    """Gallery with its attached assets."""
    gallery = await _gallery_or_404(session, gallery_id)
    assets = await list_gallery_assets(session, services.catalog, gallery_id)
    out = GalleryOut.model_validate(gallery)
    out.assets = [GalleryAssetOut.from_asset(a) for a in assets]
    return out


@router.post("/{gallery_id}/publish", response_model=GalleryOut)
async def publish_gallery(
    gallery_id: str,
    body: PublishRequest,
    background: BackgroundTasks,
    services: Annotated[Services, Depends(get_services)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> GalleryOut:
    """Mark gallery live, append a publication row, optionally notify downstream."""
    gallery = await _gallery_or_404(session, gallery_id)
    published_at = datetime.now(timezone.utc)
    gallery.status = "live"
    gallery.published_at = published_at
    gallery.published_url = body.publish_url or gallery.gallery_url
    gallery.published_by = body.published_by
    session.add(
        GalleryPublication(
            gallery_id=gallery.id,
            publish_target=body.publish_target,
            publish_url=gallery.published_url,
            status="success",
            payload=body.payload,
            published_at=published_at,
            published_by=body.published_by,
        )
    )
    try:
        await session.commit()
    except Exception as e:
        log.exception("publish_gallery id=%s could not be saved", gallery_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Unable to publish gallery",
        ) from e

    assets = await list_gallery_assets(session, services.catalog, gallery_id)
    if body.trigger_zapier:
        background.add_task(
            emit_notification,
            services,
            "gallery.published",
            {
                "event": "gallery.published",
                "galleryId": gallery.id,
                "galleryName": gallery.gallery_name,
                "clientId": gallery.client_id,
                "publishUrl": gallery.published_url,
                "publishedAt": published_at.isoformat(),
                "deliveryDueDate": gallery.deliver_by.isoformat() if gallery.deliver_by else None,
                "expiresAt": gallery.expires_at.isoformat() if gallery.expires_at else None,
                "assetCount": len(assets),
                "totalBytes": sum(a.size_bytes for a in assets),
                "metadata": body.payload or {},
            },
        )
    log.info("publish_gallery id=%s target=%s url=%s assets=%d", gallery.id, body.publish_target, gallery.published_url, len(assets))
    out = GalleryOut.model_validate(gallery)
    out.assets = [GalleryAssetOut.from_asset(a) for a in assets]
    return out
