"""Tests for storing gallery assets: dedup per scope, no re-upload, concurrent writers."""

import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from aperture.galleries import storage
from aperture.galleries.models import GalleryAsset
from aperture.galleries.storage import build_storage_path, sanitize_file_name, slugify, store_gallery_asset


async def _store(session_factory, blob_store, catalog, body: bytes, **kwargs):
    kwargs.setdefault("file_name", "photo.jpg")
    kwargs.setdefault("content_type", "image/jpeg")
    async with session_factory() as session:
        return await store_gallery_asset(session, blob_store, catalog, bucket="galleries", body=body, **kwargs)


async def _originals(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count()).select_from(GalleryAsset).where(GalleryAsset.duplicate_of.is_(None))
        )


def test_slugify() -> None:
    """Slugs are lowercase, dash-separated; missing values map to 'unassigned'."""
    assert slugify("Acme Photo Co.") == "acme-photo-co"
    assert slugify(None) == "unassigned"
    assert slugify("!!!") == "unassigned"


def test_sanitize_file_name() -> None:
    assert sanitize_file_name("My Photo (1).jpg") == "My-Photo--1-.jpg"
    assert sanitize_file_name("../../etc/passwd") == "-..-etc-passwd"
    assert sanitize_file_name("").startswith("asset-")


def test_build_storage_path_is_unique_and_scoped() -> None:
    """Path is client/project/<timestamp>-<uuid>-<name>, different on every call."""
    first = build_storage_path("Acme", "Wedding 2024", "a.jpg")
    second = build_storage_path("Acme", "Wedding 2024", "a.jpg")
    assert first.startswith("acme/wedding-2024/")
    assert first.endswith("-a.jpg")
    assert first != second


@pytest.mark.asyncio
async def test_upload_twice_same_scope_is_idempotent(session_factory, blob_store, catalog, stored_objects) -> None:
    """Second upload of identical bytes returns the first row and writes no second object."""
    first = await _store(session_factory, blob_store, catalog, b"same-bytes", client_id="acme", project_code="p1")
    second = await _store(
        session_factory, blob_store, catalog, b"same-bytes",
        file_name="renamed.jpg", client_id="acme", project_code="p1",
    )
    assert first.duplicate is False
    assert second.duplicate is True
    assert second.asset.id == first.asset.id
    assert second.duplicate_of == first.asset.id
    assert await _originals(session_factory) == 1
    assert len(stored_objects()) == 1


@pytest.mark.asyncio
async def test_same_bytes_other_scope_are_separate(session_factory, blob_store, catalog, stored_objects) -> None:
    """Identical bytes under different clients or projects are stored independently."""
    a = await _store(session_factory, blob_store, catalog, b"bytes", client_id="acme", project_code="p1")
    b = await _store(session_factory, blob_store, catalog, b"bytes", client_id="acme", project_code="p2")
    c = await _store(session_factory, blob_store, catalog, b"bytes", client_id="other", project_code="p1")
    d = await _store(session_factory, blob_store, catalog, b"bytes")
    assert not any(r.duplicate for r in (a, b, c, d))
    assert len({r.asset.id for r in (a, b, c, d)}) == 4
    assert len(stored_objects()) == 4


@pytest.mark.asyncio
async def test_store_records_metadata(session_factory, blob_store, catalog) -> None:
    """Stored row carries size, content type, storage path and public URL."""
    result = await _store(
        session_factory, blob_store, catalog, b"12345",
        client_id="Acme", project_code="P1", dropbox_file_id="id:1", dropbox_revision="r1",
    )
    asset = result.asset
    assert asset.size_bytes == 5
    assert asset.content_type == "image/jpeg"
    assert asset.storage_bucket == "galleries"
    assert asset.storage_path.startswith("acme/p1/")
    assert asset.public_url == f"https://cdn.example.test/galleries/{asset.storage_path}"
    assert asset.dropbox_file_id == "id:1"


@pytest.mark.asyncio
async def test_duplicate_updates_dropbox_linkage(session_factory, blob_store, catalog) -> None:
    """A duplicate hit stores the new Dropbox id/revision on the original."""
    first = await _store(session_factory, blob_store, catalog, b"img", client_id="acme")
    await _store(
        session_factory, blob_store, catalog, b"img",
        client_id="acme", dropbox_file_id="id:77", dropbox_revision="r9",
    )
    async with session_factory() as session:
        row = await session.get(GalleryAsset, first.asset.id)
        assert row.dropbox_file_id == "id:77"
        assert row.dropbox_revision == "r9"


@pytest.mark.asyncio
async def test_concurrent_uploads_converge_on_one_original(session_factory, blob_store, catalog, stored_objects) -> None:
    """Simultaneous uploads of the same bytes end with one original and no orphan objects."""
    results = await asyncio.gather(*(
        _store(session_factory, blob_store, catalog, b"raced-bytes", client_id="acme", project_code="p1")
        for _ in range(4)
    ))
    assert len({r.asset.id for r in results}) == 1
    assert sum(1 for r in results if not r.duplicate) == 1
    assert await _originals(session_factory) == 1
    assert len(stored_objects()) == 1


@pytest.mark.asyncio
async def test_lost_insert_race_becomes_duplicate(session_factory, blob_store, catalog, stored_objects) -> None:
    """If the lookup misses but another writer already inserted, the loser returns the winner."""
    winner = await _store(session_factory, blob_store, catalog, b"race", client_id="acme")
    real_find = storage.find_duplicate
    calls = {"n": 0}

    async def miss_first(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return await real_find(*args, **kwargs)

    with patch.object(storage, "find_duplicate", side_effect=miss_first):
        loser = await _store(session_factory, blob_store, catalog, b"race", client_id="acme")
    assert loser.duplicate is True
    assert loser.asset.id == winner.asset.id
    assert len(stored_objects()) == 1
