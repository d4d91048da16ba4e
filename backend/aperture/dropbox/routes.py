"""Dropbox API routes: list a folder so the UI can pick files to import."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from aperture.dropbox.resolver import normalize_folder_path, to_list_path
from aperture.errors import ConfigurationError, RemoteProviderError
from aperture.galleries.models import CamelModel
from aperture.limiter import LIST_FOLDER_LIMIT, limiter
from aperture.services import Services, get_services

router = APIRouter(prefix="/api/dropbox", tags=["dropbox"])
log = logging.getLogger(__name__)


class ListFolderRequest(CamelModel):
    path: str = ""
    recursive: bool = False


@router.post("/list-folder")
@limiter.limit(LIST_FOLDER_LIMIT)
async def list_folder(
    request: Request,
    body: ListFolderRequest,
    services: Annotated[Services, Depends(get_services)],
) -> dict:
    """File entries of a Dropbox folder ('' or '/' is the root)."""
    path = to_list_path(normalize_folder_path(body.path))
    try:
        entries = await services.dropbox.list_folder(path, recursive=body.recursive)
    except ConfigurationError as e:
        log.error("list_folder path=%r: %s", path, e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    except RemoteProviderError as e:
        log.warning("list_folder path=%r failed reason=%s: %s", path, e.reason, e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return {"data": {"entries": [entry.model_dump() for entry in entries]}}
