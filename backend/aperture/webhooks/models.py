"""Webhook event log model and schema."""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from aperture.db.session import Base
from aperture.galleries.models import CamelModel


class WebhookEvent(Base):
    """Immutable record of one admitted inbound delivery or one emitted notification.

    Only status, processed_at and error_message change after insert.
    """

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    zap_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False, default="inbound")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="received")  # received|processed|failed
    payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    raw_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    headers: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class WebhookEventOut(CamelModel):
    """Event log row as returned by API (raw body and headers omitted)."""

    id: str
    zap_id: Optional[str] = None
    event_type: Optional[str] = None
    direction: str
    status: str
    payload: Optional[Any] = None
    error_message: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None
