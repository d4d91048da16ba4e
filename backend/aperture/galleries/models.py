"""Gallery and gallery asset SQLAlchemy models and Pydantic schemas."""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, BigInteger, DateTime, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from aperture.db.session import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Gallery(Base):
    """Client gallery that imported assets are attached to and published from."""

    __tablename__ = "galleries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    client_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gallery_name: Mapped[str] = mapped_column(String(255), nullable=False)
    gallery_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    published_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    published_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    deliver_by: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class GalleryAsset(Base):
    """One stored piece of content. duplicate_of points at the original row for the same checksum+scope."""

    __tablename__ = "gallery_assets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    client_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    project_code: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_name: Mapped[str] = mapped_column(String(1024), nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False, default="application/octet-stream")
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    storage_bucket: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    storage_path: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    public_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # SHA-256 hex
    duplicate_of: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    dropbox_file_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    dropbox_revision: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    # Optional columns: older catalogs may not have them, so they are never loaded implicitly.
    source: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, deferred=True)
    gallery_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, deferred=True)


# One original per (checksum, client, project); NULL scope keys compare equal via coalesce.
Index(
    "uq_gallery_assets_original",
    GalleryAsset.checksum,
    func.coalesce(GalleryAsset.client_id, ""),
    func.coalesce(GalleryAsset.project_code, ""),
    unique=True,
    sqlite_where=GalleryAsset.duplicate_of.is_(None),
    postgresql_where=GalleryAsset.duplicate_of.is_(None),
)

OPTIONAL_ASSET_COLUMNS = frozenset({"source", "gallery_id"})


class GalleryPublication(Base):
    """Append-only log of gallery publications."""

    __tablename__ = "gallery_publications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    gallery_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    publish_target: Mapped[str] = mapped_column(String(255), nullable=False)
    publish_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="success")
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    published_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


# Pydantic schemas for API (camelCase on the wire)
class CamelModel(BaseModel):
    """Base for request/response bodies: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class GalleryAssetOut(CamelModel):
    """Asset as returned by API."""

    id: str
    file_name: str
    content_type: str
    size: int = Field(validation_alias="size_bytes")
    storage_bucket: Optional[str] = None
    storage_path: Optional[str] = None
    public_url: Optional[str] = ""
    checksum: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    duplicate_of: Optional[str] = None
    is_duplicate: bool = False
    client_id: Optional[str] = None
    project_code: Optional[str] = None
    dropbox_file_id: Optional[str] = None
    dropbox_revision: Optional[str] = None

    @classmethod
    def from_asset(cls, asset: GalleryAsset, duplicate_of: Optional[str] = None) -> "GalleryAssetOut":
        """Build from a row; duplicate_of marks the response as a dedup hit against that original."""
        out = cls.model_validate(asset)
        out.public_url = asset.public_url or ""
        if duplicate_of:
            out.duplicate_of = duplicate_of
            out.is_duplicate = True
        else:
            out.is_duplicate = bool(asset.duplicate_of)
        return out


class GalleryCreate(CamelModel):
    """Payload for creating a gallery."""

    gallery_name: str
    client_id: Optional[str] = None
    gallery_url: Optional[str] = None
    deliver_by: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class GalleryOut(CamelModel):
    """Gallery as returned by API."""

    id: str
    client_id: Optional[str] = None
    gallery_name: str
    gallery_url: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    published_url: Optional[str] = None
    published_by: Optional[str] = None
    deliver_by: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    assets: List[GalleryAssetOut] = Field(default_factory=list)


class PublishRequest(CamelModel):
    """Request body for publishing a gallery."""

    publish_url: Optional[str] = None
    publish_target: str = "client-portal"
    published_by: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    trigger_zapier: bool = True
