"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from aperture.config import Settings, get_settings
from aperture.dropbox.routes import router as dropbox_router
from aperture.galleries.blob_store import BlobStore
from aperture.galleries.routes import router as galleries_router
from aperture.limiter import limiter
from aperture.services import Services
from aperture.webhooks.routes import router as webhooks_router

log = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging from settings (stderr always; optional file)."""
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger("aperture")
    root.setLevel(level)
    root.handlers.clear()
    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root.addHandler(sh)
    if settings.log_file and settings.log_file.strip():
        try:
            fh = logging.FileHandler(settings.log_file, encoding="utf-8")
            fh.setLevel(level)
            fh.setFormatter(fmt)
            root.addHandler(fh)
            root.info("Logging to file %s", settings.log_file)
        except OSError as e:
            root.warning("Could not open log file %s: %s", settings.log_file, e)
    else:
        root.debug("Logging to stderr only (no log_file set)")


_setup_logging()


def create_app(
    settings: Optional[Settings] = None,
    blob_store: Optional[BlobStore] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application. Services (database, blob store, HTTP and Dropbox
    clients) are created in the lifespan; tests pass their own blob store and
    an httpx transport standing in for Dropbox and file downloads.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the catalog database and clients on startup, close them on shutdown."""
        log.info("Startup: opening catalog and clients (storage=%s)", settings.storage_backend)
        services = await Services.start(settings, blob_store=blob_store, http_transport=http_transport)
        app.state.services = services
        log.info("Startup complete")
        try:
            yield
        finally:
            await services.close()
            log.info("Shutdown")

    app = FastAPI(title="Aperture Ingest API", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Return generic 500 without leaking stack trace or internals."""
        if isinstance(exc, HTTPException):
            raise exc
        log.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.include_router(galleries_router)
    app.include_router(webhooks_router)
    app.include_router(dropbox_router)

    @app.get("/health")
    @limiter.exempt
    def health() -> JSONResponse:
        """Health check for Docker. Exempt from rate limiting."""
        return JSONResponse(content={"status": "ok"})

    return app


app = create_app()


def run() -> None:
    """Serve the app with uvicorn on the configured port."""
    import uvicorn

    uvicorn.run("aperture.main:app", host="0.0.0.0", port=get_settings().port, log_config=None)


if __name__ == "__main__":
    run()
