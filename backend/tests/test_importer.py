"""Tests for batch imports: isolation of failing items, counts, attach, webhook file ingest."""

import asyncio

import pytest
from sqlalchemy import func, select

from aperture.dropbox.resolver import RemoteReference
from aperture.errors import ConfigurationError
from aperture.galleries.importer import (
    ImportPartialFailure,
    ImportRequest,
    ImportSuccess,
    ImportTotalFailure,
    ItemResult,
    build_import_notification,
    collect_references,
    guess_content_type,
    ingest_webhook_files,
    run_bounded,
    run_import,
    summarize,
)
from aperture.galleries.models import Gallery, GalleryAsset


async def _asset_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(GalleryAsset))


def test_collect_references_dedupes_by_key() -> None:
    refs = collect_references(
        [RemoteReference(dropbox_file_id=" id:1 "), RemoteReference(file_name="  ")],
        [RemoteReference(dropbox_file_id="id:1", file_name="a.jpg"), RemoteReference(dropbox_path="/x.jpg")],
    )
    assert [(r.dropbox_file_id, r.dropbox_path) for r in refs] == [("id:1", None), (None, "/x.jpg")]
    assert refs[0].file_name == "a.jpg"


def test_guess_content_type() -> None:
    assert guess_content_type("a.jpg", "application/octet-stream") == "image/jpeg"
    assert guess_content_type("a.bin", "image/png") == "image/png"
    assert guess_content_type("noext", None) == "application/octet-stream"


def test_summarize_tags_outcome() -> None:
    """Counts: skipped = total - imported; tag follows how many items errored."""
    stored = ItemResult(id="1", status="stored")
    dup = ItemResult(id="2", status="duplicate", duplicate=True)
    err = ItemResult(id="3", status="error", error="boom")

    success = summarize([stored, dup])
    assert isinstance(success, ImportSuccess)
    assert success.counts.model_dump() == {"imported": 1, "skipped": 1, "duplicates": 1, "failed": 0}

    partial = summarize([stored, err])
    assert isinstance(partial, ImportPartialFailure)
    assert partial.failed_ids == ["3"]

    assert isinstance(summarize([err]), ImportTotalFailure)


@pytest.mark.asyncio
async def test_run_bounded_limits_concurrency_and_keeps_order() -> None:
    running = {"now": 0, "max": 0}

    async def worker(n: int) -> ItemResult:
        running["now"] += 1
        running["max"] = max(running["max"], running["now"])
        await asyncio.sleep(0.01)
        running["now"] -= 1
        return ItemResult(id=str(n), status="stored")

    results = await run_bounded(list(range(6)), worker, str, concurrency=2, timeout=30)
    assert [r.id for r in results] == [str(n) for n in range(6)]
    assert running["max"] == 2


@pytest.mark.asyncio
async def test_run_bounded_deadline_skips_unstarted_items() -> None:
    """Items not started before the deadline are errors; started ones finish."""

    async def worker(n: int) -> ItemResult:
        await asyncio.sleep(0.05)
        return ItemResult(id=str(n), status="stored")

    results = await run_bounded([1, 2, 3], worker, str, concurrency=1, timeout=0.02)
    assert results[0].status == "stored"
    assert [r.status for r in results[1:]] == ["error", "error"]
    assert "timed out" in results[1].error


@pytest.mark.asyncio
async def test_import_requires_gallery_id(services) -> None:
    with pytest.raises(ValueError, match="galleryId"):
        await run_import(services, ImportRequest(folder_path="/Shoots"))


@pytest.mark.asyncio
async def test_import_nothing_resolved_is_value_error(services, fake_dropbox) -> None:
    fake_dropbox.add_file("/Shoots", "a.jpg", b"a")
    request = ImportRequest(gallery_id="g1", assets=[RemoteReference(dropbox_path="/Shoots/missing.jpg")])
    with pytest.raises(ValueError, match="resolve"):
        await run_import(services, request)


@pytest.mark.asyncio
async def test_import_selection_without_token(services) -> None:
    services.dropbox._access_token = ""
    request = ImportRequest(gallery_id="g1", selection=[{"isDir": True, "id": "id:f"}])
    with pytest.raises(ConfigurationError):
        await run_import(services, request)


@pytest.mark.asyncio
async def test_import_folder_stores_all_and_attaches(services, fake_dropbox, session_factory) -> None:
    """Bulk folder import stores every file and attaches it to the gallery."""
    async with session_factory() as session:
        session.add(Gallery(id="g1", gallery_name="Smith Wedding", client_id="acme"))
    for name in ("a.jpg", "b.jpg", "c.jpg"):
        fake_dropbox.add_file("/Shoots/Smith", name, name.encode())

    outcome = await run_import(services, ImportRequest(gallery_id="g1", folder_path="/Shoots/Smith"))

    assert isinstance(outcome, ImportSuccess)
    assert outcome.counts.imported == 3
    async with session_factory() as session:
        rows = (await session.execute(select(GalleryAsset.client_id, GalleryAsset.gallery_id))).all()
    assert rows and all(r == ("acme", "g1") for r in rows)


@pytest.mark.asyncio
async def test_import_isolates_failing_item(services, fake_dropbox, session_factory) -> None:
    """Item 2 of 3 fails to download; items 1 and 3 are stored and the outcome is partial."""
    entries = [fake_dropbox.add_file("/Shoots", f"{n}.jpg", f"body-{n}".encode()) for n in (1, 2, 3)]
    fake_dropbox.failing_downloads.add(entries[1]["id"])

    outcome = await run_import(services, ImportRequest(gallery_id="g1", client_id="acme", folder_path="/Shoots"))

    assert isinstance(outcome, ImportPartialFailure)
    assert outcome.failed_ids == [entries[1]["id"]]
    assert outcome.counts.model_dump() == {"imported": 2, "skipped": 1, "duplicates": 0, "failed": 1}
    assert await _asset_count(session_factory) == 2


@pytest.mark.asyncio
async def test_reimport_is_all_duplicates(services, fake_dropbox, session_factory, stored_objects) -> None:
    """Running the same import twice adds no rows and no objects."""
    for name in ("a.jpg", "b.jpg"):
        fake_dropbox.add_file("/Shoots", name, name.encode())
    request = ImportRequest(gallery_id="g1", client_id="acme", project_code="p1", folder_path="/Shoots")

    await run_import(services, request)
    second = await run_import(services, request)

    assert second.counts.model_dump() == {"imported": 0, "skipped": 2, "duplicates": 2, "failed": 0}
    assert await _asset_count(session_factory) == 2
    assert len(stored_objects()) == 2


@pytest.mark.asyncio
async def test_total_failure_from_provider(services, fake_dropbox) -> None:
    entry = fake_dropbox.add_file("/Shoots", "a.jpg", b"a")
    fake_dropbox.failing_downloads.add(entry["id"])
    outcome = await run_import(services, ImportRequest(gallery_id="g1", folder_path="/Shoots"))
    assert isinstance(outcome, ImportTotalFailure)
    assert outcome.provider_only


@pytest.mark.asyncio
async def test_build_import_notification(services, fake_dropbox) -> None:
    fake_dropbox.add_file("/Shoots", "a.jpg", b"a")
    request = ImportRequest(gallery_id="g1", gallery_name="Smith", folder_path="/Shoots")
    outcome = await run_import(services, request)
    payload = build_import_notification(request, 0, outcome)
    assert payload["event"] == "gallery.imported"
    assert payload["galleryId"] == "g1"
    assert payload["imported"] == 1
    assert payload["assets"][0]["fileName"] == "a.jpg"


@pytest.mark.asyncio
async def test_ingest_webhook_files(services, fake_dropbox, session_factory) -> None:
    """Webhook files are downloaded by URL; per-file scope wins; bad files are errors."""
    services.settings.import_concurrency = 1
    fake_dropbox.urls["https://files.test/a.jpg"] = b"aaa"
    fake_dropbox.urls["https://files.test/b.jpg"] = b"aaa"
    payload = {
        "clientId": "acme",
        "projectCode": "p1",
        "files": [
            {"id": "id:a", "name": "a.jpg", "downloadUrl": "https://files.test/a.jpg", "rev": "r1"},
            {"name": "b.jpg", "downloadUrl": "https://files.test/b.jpg"},
            {"name": "c.jpg"},
            {"name": "d.jpg", "downloadUrl": "https://files.test/missing.jpg"},
            {"name": "e.jpg", "downloadUrl": "https://files.test/a.jpg", "projectCode": "p2"},
        ],
    }

    results = await ingest_webhook_files(services, payload)

    assert [(r.id, r.status) for r in results] == [
        ("id:a", "stored"),
        ("b.jpg", "duplicate"),
        ("c.jpg", "error"),
        ("d.jpg", "error"),
        ("e.jpg", "stored"),
    ]
    assert "downloadUrl" in results[2].error
    assert await _asset_count(session_factory) == 2


@pytest.mark.asyncio
async def test_ingest_webhook_invalid_entry_is_isolated(services, fake_dropbox, session_factory) -> None:
    """A file entry that fails validation becomes an error; the valid sibling is stored."""
    fake_dropbox.urls["https://files.test/a.jpg"] = b"aaa"
    payload = {
        "files": [
            {"id": "id:a", "name": "a.jpg", "downloadUrl": "https://files.test/a.jpg"},
            {"id": "id:b", "downloadUrl": "https://files.test/a.jpg", "size": "big"},
            {"name": "c.jpg", "downloadUrl": "https://files.test/a.jpg", "clientId": ["acme"]},
            "not-a-file",
        ],
    }

    results = await ingest_webhook_files(services, payload)

    assert [(r.id, r.status) for r in results] == [
        ("id:a", "stored"),
        ("id:b", "error"),
        ("c.jpg", "error"),
        ("file-4", "error"),
    ]
    assert await _asset_count(session_factory) == 1


@pytest.mark.asyncio
async def test_import_survives_attach_failure(services, fake_dropbox, session_factory, monkeypatch) -> None:
    """Files are committed before the attach step; its failure keeps the computed outcome."""
    fake_dropbox.add_file("/Shoots", "a.jpg", b"a")

    async def broken_attach(*args, **kwargs):
        raise RuntimeError("catalog unavailable")

    monkeypatch.setattr("aperture.galleries.importer.mark_attached", broken_attach)

    outcome = await run_import(services, ImportRequest(gallery_id="g1", folder_path="/Shoots"))

    assert isinstance(outcome, ImportSuccess)
    assert outcome.counts.imported == 1
    assert await _asset_count(session_factory) == 1


@pytest.mark.asyncio
async def test_ingest_webhook_without_files(services) -> None:
    assert await ingest_webhook_files(services, {"event": "ping"}) == []
