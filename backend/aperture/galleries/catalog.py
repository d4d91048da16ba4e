"""Asset catalog: insert originals, link duplicates, attach assets to galleries.

Writes only the columns the live table has. Catalogs created before the
optional columns (``source``, ``gallery_id``) existed keep working; the
column set comes from the probe in ``Database.init``.
"""

import logging
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from aperture.db.session import Database
from aperture.errors import DuplicateContentError
from aperture.galleries.models import OPTIONAL_ASSET_COLUMNS, GalleryAsset

log = logging.getLogger(__name__)

_ALL_COLUMNS = frozenset(c.name for c in GalleryAsset.__table__.columns)


class CatalogSchema:
    """Live column set of the gallery_assets table."""

    def __init__(self, columns: Optional[Iterable[str]] = None) -> None:
        self.columns: FrozenSet[str] = frozenset(columns) if columns else _ALL_COLUMNS

    @classmethod
    def from_database(cls, db: Database) -> "CatalogSchema":
        schema = cls(db.table_columns.get(GalleryAsset.__tablename__))
        missing = sorted(OPTIONAL_ASSET_COLUMNS - schema.columns)
        if missing:
            log.warning("gallery_assets lacks optional columns %s; they will not be written", missing)
        return schema

    def supports(self, column: str) -> bool:
        return column in self.columns


async def store_new(session: AsyncSession, schema: CatalogSchema, values: Dict[str, Any]) -> GalleryAsset:
    """Insert a new original asset row and commit.

    Keys the live table lacks are dropped. Raises DuplicateContentError if another
    writer already committed an original for the same checksum and scope.
    """
    row = {k: v for k, v in values.items() if schema.supports(k)}
    dropped = sorted(set(values) - set(row))
    if dropped:
        log.debug("store_new dropping unsupported columns %s", dropped)
    try:
        await session.execute(insert(GalleryAsset).values(**row))
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise DuplicateContentError(
            f"Original already stored for checksum {values.get('checksum')}"
        ) from e
    asset = await session.get(GalleryAsset, row["id"])
    if asset is None:
        raise RuntimeError(f"Inserted asset {row['id']} not found")
    log.info("store_new id=%s checksum=%s path=%s", asset.id, asset.checksum, asset.storage_path)
    return asset


async def link_duplicate(
    session: AsyncSession,
    asset_id: str,
    dropbox_file_id: Optional[str],
    dropbox_revision: Optional[str],
) -> None:
    """Update only the remote linkage of an existing asset. Absent values keep the stored ones."""
    changes: Dict[str, Any] = {}
    if dropbox_file_id:
        changes["dropbox_file_id"] = dropbox_file_id
    if dropbox_revision:
        changes["dropbox_revision"] = dropbox_revision
    if not changes:
        return
    await session.execute(update(GalleryAsset).where(GalleryAsset.id == asset_id).values(**changes))
    await session.commit()
    log.info("link_duplicate id=%s dropbox_file_id=%s rev=%s", asset_id, dropbox_file_id, dropbox_revision)


async def mark_attached(
    session: AsyncSession,
    schema: CatalogSchema,
    asset_ids: List[str],
    gallery_id: str,
) -> int:
    """Associate assets with a gallery. Returns rows updated (0 when the catalog has no gallery_id column)."""
    ids = sorted(set(asset_ids))
    if not ids:
        return 0
    if not schema.supports("gallery_id"):
        log.warning("mark_attached skipped: gallery_assets has no gallery_id column (gallery=%s)", gallery_id)
        return 0
    result = await session.execute(
        update(GalleryAsset)
        .where(GalleryAsset.id.in_(ids))
        .values(gallery_id=gallery_id)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    log.info("mark_attached gallery=%s count=%d", gallery_id, result.rowcount)
    return result.rowcount


async def list_gallery_assets(session: AsyncSession, schema: CatalogSchema, gallery_id: str) -> List[GalleryAsset]:
    """Assets attached to a gallery, oldest first."""
    if not schema.supports("gallery_id"):
        return []
    result = await session.execute(
        select(GalleryAsset).where(GalleryAsset.gallery_id == gallery_id).order_by(GalleryAsset.uploaded_at)
    )
    return list(result.scalars().all())
