"""Inbound webhook gate and event log routes."""

import json
import logging
from typing import Annotated, Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from aperture.db.session import get_db
from aperture.galleries.importer import (
    ImportRequest,
    ImportTotalFailure,
    ItemResult,
    build_import_notification,
    ingest_webhook_files,
    run_import,
)
from aperture.limiter import WEBHOOK_LIMIT, limiter
from aperture.services import Services, get_services
from aperture.webhooks.events import (
    emit_notification,
    list_events,
    loggable_headers,
    mark_event_failed,
    mark_event_processed,
    record_inbound_event,
)
from aperture.webhooks.models import WebhookEventOut
from aperture.webhooks.signature import verify_signature

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
log = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Zapier-Signature"
ZAP_ID_HEADER = "X-Zap-Id"
EVENT_HEADER = "X-Zap-Event"


def _parse_payload(raw_body: bytes) -> Optional[Any]:
    """Parsed JSON, or None for an empty or malformed body."""
    if not raw_body.strip():
        return None
    try:
        return json.loads(raw_body)
    except ValueError as e:
        log.warning("Inbound webhook payload is not valid JSON: %s", e)
        return None


async def process_payload(services: Services, payload: Optional[Any]) -> List[ItemResult]:
    """
    Business logic for an admitted delivery: a 'files' list is stored directly,
    a body naming a galleryId runs a gallery import and, when triggerZapier is
    set, emits gallery.imported. Anything else is only logged.
    """
    if not isinstance(payload, dict):
        return []
    if isinstance(payload.get("files"), list):
        return await ingest_webhook_files(services, payload)
    if payload.get("galleryId"):
        try:
            import_request = ImportRequest.model_validate(payload)
        except ValidationError as e:
            raise ValueError(f"Invalid gallery import payload: {e}") from e
        outcome = await run_import(services, import_request)
        if import_request.trigger_zapier and not isinstance(outcome, ImportTotalFailure):
            await emit_notification(
                services,
                "gallery.imported",
                build_import_notification(
                    import_request,
                    len(import_request.assets) + len(import_request.selection),
                    outcome,
                ),
            )
        return outcome.results
    return []


@router.post("/inbound", status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(WEBHOOK_LIMIT)
async def inbound_webhook(
    request: Request,
    services: Annotated[Services, Depends(get_services)],
) -> JSONResponse:
    """
    Verify the HMAC signature over the raw body, log the delivery, then process it.
    202 once the delivery is logged, whatever the processing outcome.
    """
    settings = services.settings
    if not settings.webhook_secret and settings.webhook_require_secret:
        log.error("inbound webhook refused: APERTURE_WEBHOOK_SECRET is required but not set")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook secret not configured")

    raw_body = await request.body()
    if not verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), settings.webhook_secret):
        log.warning("inbound webhook rejected: signature mismatch from %s", request.client.host if request.client else "?")
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"ok": False})

    payload = _parse_payload(raw_body)
    event_type = request.headers.get(EVENT_HEADER)
    if not event_type and isinstance(payload, dict) and payload.get("event") is not None:
        event_type = str(payload["event"])

    async with services.db.session() as session:
        event = await record_inbound_event(
            session,
            raw_body=raw_body,
            payload=payload,
            headers=loggable_headers(request.headers),
            zap_id=request.headers.get(ZAP_ID_HEADER),
            event_type=event_type,
        )

    results: List[ItemResult] = []
    try:
        results = await process_payload(services, payload)
    except Exception as e:
        log.exception("inbound webhook %s processing failed", event.id)
        async with services.db.session() as session:
            await mark_event_failed(session, event.id, str(e) or type(e).__name__)
        event_status = "failed"
    else:
        async with services.db.session() as session:
            await mark_event_processed(session, event.id)
        event_status = "processed"

    log.info("inbound webhook id=%s event=%s status=%s items=%d", event.id, event_type, event_status, len(results))
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={
            "ok": True,
            "eventId": event.id,
            "status": event_status,
            "data": [r.model_dump(mode="json", by_alias=True) for r in results],
        },
    )


@router.get("/events", response_model=List[WebhookEventOut])
async def get_events(
    session: Annotated[AsyncSession, Depends(get_db)],
) -> List[WebhookEventOut]:
    """Latest 50 inbound and outbound events, newest first."""
    events = await list_events(session, limit=50)
    return [WebhookEventOut.model_validate(e) for e in events]
