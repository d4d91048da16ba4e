"""Content checksums and duplicate lookup. Checksum is SHA-256 of the file body.

Collisions are an accepted risk: the digest is a dedup key, not a security boundary.
"""

import hashlib
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aperture.galleries.models import GalleryAsset

log = logging.getLogger(__name__)


def compute_checksum(body: bytes) -> str:
    """SHA-256 hex digest of file body (name and content type do not participate)."""
    return hashlib.sha256(body).hexdigest()


def _scope_clause(column, value: Optional[str]):
    # An omitted scope key matches only other omissions, never "any tenant".
    return column.is_(None) if value is None else column == value


async def find_duplicate(
    session: AsyncSession,
    checksum: str,
    client_id: Optional[str],
    project_code: Optional[str],
) -> Optional[GalleryAsset]:
    """Return the stored asset with this checksum in the same (client, project) scope, or None.

    Originals (duplicate_of IS NULL) are preferred over linked rows.
    """
    result = await session.execute(
        select(GalleryAsset)
        .where(
            GalleryAsset.checksum == checksum,
            _scope_clause(GalleryAsset.client_id, client_id),
            _scope_clause(GalleryAsset.project_code, project_code),
        )
        .order_by(GalleryAsset.duplicate_of.is_not(None), GalleryAsset.uploaded_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def resolve_original(session: AsyncSession, asset: GalleryAsset) -> GalleryAsset:
    """Follow duplicate_of to the terminal original. Stops on cycles or dangling links."""
    seen = {asset.id}
    current = asset
    while current.duplicate_of:
        parent = await session.get(GalleryAsset, current.duplicate_of)
        if parent is None or parent.id in seen:
            log.warning("Broken duplicate chain at asset=%s -> %s", current.id, current.duplicate_of)
            break
        seen.add(parent.id)
        current = parent
    return current
