"""Webhook event log: record inbound deliveries, emit outbound notifications."""

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from aperture.webhooks.models import WebhookEvent
from aperture.webhooks.signature import sign

if TYPE_CHECKING:
    from aperture.services import Services

log = logging.getLogger(__name__)

NOTIFY_SIGNATURE_HEADER = "X-Aperture-Signature"
NOTIFY_EVENT_HEADER = "X-Aperture-Event"

# Not worth keeping in an audit log
_DROPPED_HEADERS = frozenset({"authorization", "cookie"})


def loggable_headers(headers: Any) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items() if k.lower() not in _DROPPED_HEADERS}


async def record_inbound_event(
    session: AsyncSession,
    *,
    raw_body: bytes,
    payload: Optional[Any],
    headers: Dict[str, str],
    zap_id: Optional[str] = None,
    event_type: Optional[str] = None,
) -> WebhookEvent:
    """Write the log row for an admitted delivery (status received) and commit."""
    event = WebhookEvent(
        zap_id=zap_id,
        event_type=event_type,
        direction="inbound",
        status="received",
        payload=payload,
        raw_body=raw_body.decode("utf-8", errors="replace"),
        headers=headers,
    )
    session.add(event)
    await session.commit()
    log.info("record_inbound_event id=%s zap=%s event=%s bytes=%d", event.id, zap_id, event_type, len(raw_body))
    return event


async def _set_status(session: AsyncSession, event_id: str, status: str, error_message: Optional[str]) -> None:
    await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .values(status=status, error_message=error_message, processed_at=datetime.now(timezone.utc))
    )
    await session.commit()


async def mark_event_processed(session: AsyncSession, event_id: str) -> None:
    await _set_status(session, event_id, "processed", None)


async def mark_event_failed(session: AsyncSession, event_id: str, error_message: str) -> None:
    await _set_status(session, event_id, "failed", error_message[:2000])
    log.warning("webhook event %s failed: %s", event_id, error_message)


async def list_events(session: AsyncSession, limit: int = 50) -> List[WebhookEvent]:
    """Most recent events first."""
    result = await session.execute(
        select(WebhookEvent).order_by(WebhookEvent.received_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def emit_notification(services: "Services", event_type: str, payload: Dict[str, Any]) -> None:
    """
    Record an outbound event and deliver it to the configured notification URL.

    Runs after the response has been sent; nothing here propagates to the caller.
    """
    body = json.dumps(payload, default=str).encode("utf-8")
    try:
        async with services.db.session() as session:
            event = WebhookEvent(
                event_type=event_type,
                direction="outbound",
                status="processed",
                payload=json.loads(body),
                processed_at=datetime.now(timezone.utc),
            )
            session.add(event)
    except Exception:
        log.exception("emit_notification could not record %s", event_type)
        return

    url = services.settings.notify_webhook_url
    if not url:
        log.info("emit_notification event=%s id=%s recorded (no delivery url)", event_type, event.id)
        return
    headers = {"Content-Type": "application/json", NOTIFY_EVENT_HEADER: event_type}
    signature = sign(services.settings.notify_webhook_secret, body)
    if signature:
        headers[NOTIFY_SIGNATURE_HEADER] = signature
    try:
        r = await services.http.post(url, content=body, headers=headers, timeout=10.0)
        r.raise_for_status()
    except Exception as e:
        log.warning("emit_notification event=%s delivery to %s failed: %s", event_type, url, e)
        try:
            async with services.db.session() as session:
                await mark_event_failed(session, event.id, f"Delivery failed: {e}")
        except Exception:
            log.exception("emit_notification could not mark %s failed", event.id)
        return
    log.info("emit_notification event=%s id=%s delivered status=%d", event_type, event.id, r.status_code)
