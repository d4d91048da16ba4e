"""Bucket-style blob storage: local directories or S3. Uploads never overwrite."""

import asyncio
import logging
import re
import unicodedata
from pathlib import Path
from typing import Optional, Protocol, Set
from urllib.parse import quote

import boto3
from botocore.exceptions import ClientError

from aperture.config import Settings
from aperture.errors import BlobExistsError, ConfigurationError, StorageError

log = logging.getLogger(__name__)

# Safe path segment: letters, numbers, common punctuation. No / \ (traversal).
_SAFE_SEGMENT_ASCII = re.compile(r"^[a-zA-Z0-9_. \-()+~#!&',;=\[\]@]+$")
_SAFE_BUCKET = re.compile(r"^[a-z0-9][a-z0-9.\-_]{1,62}$")


def _is_safe_path_char(c: str) -> bool:
    """True if char is allowed in a path segment (no traversal, no control chars)."""
    if c in "/\\%" or ord(c) < 32:
        return False
    cat = unicodedata.category(c)
    return cat.startswith("L") or cat.startswith("N") or cat.startswith("P") or c in " +~=$"


def _sanitize_segment(segment: str) -> Optional[str]:
    """Return segment if safe, else None. Rejects empty, '..', '.', and invalid chars."""
    if not segment or segment != segment.strip() or segment in (".", ".."):
        return None
    if _SAFE_SEGMENT_ASCII.match(segment):
        return segment
    if not all(_is_safe_path_char(c) for c in segment):
        return None
    return segment


def validate_bucket_name(name: str) -> str:
    """Return name if usable as a bucket (lowercase, no separators), else raise ValueError."""
    if not _SAFE_BUCKET.match(name or ""):
        raise ValueError(f"Invalid bucket name: {name!r}")
    return name


def validate_object_path(path: str) -> str:
    """Return the object path with forward slashes; raise ValueError on traversal or unsafe segments."""
    parts = path.replace("\\", "/").strip("/").split("/")
    if not parts or parts == [""]:
        raise ValueError("Object path is empty")
    for part in parts:
        if not _sanitize_segment(part):
            raise ValueError(f"Unsafe path segment: {part!r}")
    return "/".join(parts)


class BlobStore(Protocol):
    """Gateway to an object store with bucket semantics."""

    async def ensure_container(self, name: str) -> None: ...

    async def upload(self, container: str, path: str, body: bytes, content_type: str) -> None: ...

    async def public_url(self, container: str, path: str) -> str: ...

    async def discard(self, container: str, path: str) -> None: ...


def _public_url(base_url: str, container: str, path: str) -> str:
    if not base_url or not path:
        return ""
    return f"{base_url.rstrip('/')}/{quote(container)}/{quote(path)}"


class LocalBlobStore:
    """Buckets are directories under base_path; objects are files below them."""

    def __init__(self, base_path: Path, public_base_url: str = "") -> None:
        self.base_path = base_path
        self.public_base_url = public_base_url
        self._known: Set[str] = set()

    def _object_path(self, container: str, path: str) -> Path:
        return self.base_path / validate_bucket_name(container) / validate_object_path(path)

    def _mkdir(self, target: Path) -> None:
        try:
            target.mkdir(parents=True)
        except FileExistsError:
            # Created already, possibly by a concurrent caller
            if not target.is_dir():
                raise StorageError(f"Bucket path exists and is not a directory: {target}")

    async def ensure_container(self, name: str) -> None:
        """Create the bucket directory if missing. Idempotent."""
        if name in self._known:
            return
        target = self.base_path / validate_bucket_name(name)
        await asyncio.to_thread(self._mkdir, target)
        self._known.add(name)
        log.debug("ensure_container bucket=%s path=%s", name, target)

    def _write_new(self, target: Path, body: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(target, "xb") as fh:
                fh.write(body)
        except FileExistsError:
            raise BlobExistsError(f"Object already exists: {target.name}") from None

    async def upload(self, container: str, path: str, body: bytes, content_type: str) -> None:
        """Write body to a new object. Raises BlobExistsError if the path is taken."""
        target = self._object_path(container, path)
        await asyncio.to_thread(self._write_new, target, body)
        log.info("upload bucket=%s path=%s size=%d type=%s", container, path, len(body), content_type)

    async def public_url(self, container: str, path: str) -> str:
        """Public URL from storage_public_base_url, or empty when none is configured."""
        return _public_url(self.public_base_url, container, path)

    async def discard(self, container: str, path: str) -> None:
        """Remove an object written by this process (orphan cleanup). Missing objects are ignored."""
        target = self._object_path(container, path)
        await asyncio.to_thread(target.unlink, missing_ok=True)
        log.info("discard bucket=%s path=%s", container, path)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3BlobStore:
    """S3 (or S3-compatible) bucket store via boto3. Calls run in a worker thread."""

    def __init__(self, client, public_base_url: str = "", region: Optional[str] = None) -> None:
        self._client = client
        self.public_base_url = public_base_url
        self.region = region
        self._known: Set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3BlobStore":
        session = boto3.session.Session(region_name=settings.s3_region or None)
        client = session.client("s3", endpoint_url=settings.s3_endpoint_url or None)
        return cls(client, settings.storage_public_base_url, settings.s3_region or None)

    def _ensure(self, name: str) -> None:
        try:
            self._client.head_bucket(Bucket=name)
            return
        except ClientError as exc:
            if _error_code(exc) not in {"404", "NoSuchBucket", "NotFound"}:
                raise
        kwargs = {"Bucket": name}
        if self.region and self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            self._client.create_bucket(**kwargs)
            log.info("Created bucket %s", name)
        except ClientError as exc:
            if _error_code(exc) not in {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}:
                raise

    async def ensure_container(self, name: str) -> None:
        """head_bucket, create on 404; a racing 'already exists' counts as success."""
        if name in self._known:
            return
        await asyncio.to_thread(self._ensure, validate_bucket_name(name))
        self._known.add(name)

    def _put(self, container: str, key: str, body: bytes, content_type: str) -> None:
        try:
            self._client.put_object(
                Bucket=container, Key=key, Body=body, ContentType=content_type, IfNoneMatch="*"
            )
        except ClientError as exc:
            if _error_code(exc) in {"PreconditionFailed", "412", "ConditionalRequestConflict"}:
                raise BlobExistsError(f"Object already exists: {key}") from exc
            raise StorageError(f"Upload failed for {key}: {exc}") from exc

    async def upload(self, container: str, path: str, body: bytes, content_type: str) -> None:
        """Put a new object; existing keys are a hard error (IfNoneMatch)."""
        key = validate_object_path(path)
        await asyncio.to_thread(self._put, container, key, body, content_type)
        log.info("upload bucket=%s key=%s size=%d type=%s", container, key, len(body), content_type)

    async def public_url(self, container: str, path: str) -> str:
        return _public_url(self.public_base_url, container, path)

    async def discard(self, container: str, path: str) -> None:
        key = validate_object_path(path)
        await asyncio.to_thread(self._client.delete_object, Bucket=container, Key=key)
        log.info("discard bucket=%s key=%s", container, key)


def build_blob_store(settings: Settings) -> BlobStore:
    """Blob store selected by storage_backend."""
    backend = (settings.storage_backend or "").strip().lower()
    if backend == "local":
        return LocalBlobStore(settings.storage_base_path, settings.storage_public_base_url)
    if backend == "s3":
        return S3BlobStore.from_settings(settings)
    raise ConfigurationError(
        f"Unknown storage backend {settings.storage_backend!r} (APERTURE_STORAGE_BACKEND: local or s3)"
    )
