"""Services held by the application for the lifetime of the process."""

import logging
from typing import Optional

import httpx
from fastapi import Request

from aperture.config import Settings
from aperture.db.session import Database
from aperture.dropbox.client import DropboxClient
from aperture.galleries.blob_store import BlobStore, build_blob_store
from aperture.galleries.catalog import CatalogSchema

log = logging.getLogger(__name__)


class Services:
    """Database, blob store, Dropbox client and shared HTTP client, built once in the lifespan."""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        blob_store: BlobStore,
        http: httpx.AsyncClient,
        dropbox: DropboxClient,
    ) -> None:
        self.settings = settings
        self.db = db
        self.blob_store = blob_store
        self.http = http
        self.dropbox = dropbox
        self.catalog = CatalogSchema.from_database(db)

    @classmethod
    async def start(
        cls,
        settings: Settings,
        blob_store: Optional[BlobStore] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "Services":
        """Open the database (creating tables) and build clients from settings."""
        db = Database(settings.sqlalchemy_url)
        await db.init()
        http = httpx.AsyncClient(transport=http_transport, follow_redirects=True)
        store = blob_store if blob_store is not None else build_blob_store(settings)
        dropbox = DropboxClient.from_settings(http, settings)
        if not dropbox.has_credentials:
            log.warning("APERTURE_DROPBOX_ACCESS_TOKEN not set: Dropbox imports will be refused")
        if not settings.webhook_secret:
            if settings.webhook_require_secret:
                log.warning("APERTURE_WEBHOOK_SECRET not set and required: inbound webhooks will be refused")
            else:
                log.warning("APERTURE_WEBHOOK_SECRET not set: inbound webhooks are accepted without signature")
        return cls(settings, db, store, http, dropbox)

    async def close(self) -> None:
        await self.http.aclose()
        await self.db.dispose()


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the app's services."""
    return request.app.state.services
