"""Resolve loosely specified Dropbox references against the live folder listing.

References are grouped by folder and every distinct folder is listed once.
Within a listing, each reference is matched by id, then case-insensitive path,
then exact file name; the first criterion that matches decides.
"""

import logging
from typing import Dict, List, Optional

from pydantic import BaseModel

from aperture.dropbox.client import DropboxClient, RemoteFile
from aperture.galleries.models import CamelModel

log = logging.getLogger(__name__)


class RemoteReference(CamelModel):
    """Client-supplied pointer to a Dropbox file. Any combination of the three fields may be set."""

    dropbox_file_id: Optional[str] = None
    dropbox_path: Optional[str] = None
    file_name: Optional[str] = None

    def key(self) -> Optional[str]:
        """Identity used to collapse repeated references (id, then path, then name)."""
        return self.dropbox_file_id or self.dropbox_path or self.file_name


class ResolvedRemoteFile(BaseModel):
    """Canonical descriptor for one resolved Dropbox file."""

    dropbox_file_id: str
    dropbox_path: str
    folder_path: Optional[str] = None
    file_name: str
    size_in_bytes: int = 0
    client_modified: Optional[str] = None
    server_modified: Optional[str] = None
    content_hash: Optional[str] = None
    rev: Optional[str] = None


def _clean(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def normalize_reference(ref: RemoteReference) -> Optional[RemoteReference]:
    """Trim fields; None when nothing identifying is left."""
    cleaned = RemoteReference(
        dropbox_file_id=_clean(ref.dropbox_file_id),
        dropbox_path=_clean(ref.dropbox_path),
        file_name=_clean(ref.file_name),
    )
    return cleaned if cleaned.key() else None


def normalize_folder_path(path: Optional[str]) -> Optional[str]:
    """Trim whitespace and trailing slashes; '/' stays root, empty becomes None."""
    trimmed = _clean(path)
    if trimmed is None:
        return None
    if trimmed == "/":
        return "/"
    return trimmed.rstrip("/") or "/"


def folder_of(path: Optional[str]) -> Optional[str]:
    """Parent folder of a Dropbox path, or None for a bare name."""
    trimmed = _clean(path)
    if trimmed is None:
        return None
    slash = trimmed.rfind("/")
    if slash == -1:
        return None
    if slash == 0:
        return "/"
    return normalize_folder_path(trimmed[:slash])


def build_path(folder: Optional[str], file_name: str) -> str:
    normalized = normalize_folder_path(folder)
    if not normalized or normalized == "/":
        return f"/{file_name}"
    return f"{normalized}/{file_name}"


def to_list_path(folder: Optional[str]) -> str:
    """Dropbox expects '' for the root folder."""
    if not folder or folder == "/":
        return ""
    return folder


def _lower(value: Optional[str]) -> Optional[str]:
    cleaned = _clean(value)
    return cleaned.lower() if cleaned else None


def match_entry(ref: RemoteReference, entries: List[RemoteFile]) -> Optional[RemoteFile]:
    """Strict priority: id, then path (either provider form, case-insensitive), then file name."""
    if ref.dropbox_file_id:
        for entry in entries:
            if entry.id == ref.dropbox_file_id:
                return entry
    wanted_path = _lower(ref.dropbox_path)
    if wanted_path:
        for entry in entries:
            if wanted_path in (_lower(entry.path_lower), _lower(entry.path_display)):
                return entry
    if ref.file_name:
        for entry in entries:
            if entry.name == ref.file_name:
                return entry
    return None


def to_resolved(entry: RemoteFile, fallback_folder: Optional[str]) -> ResolvedRemoteFile:
    """Descriptor whose folder comes from its own canonical path; the hint is only a fallback."""
    fallback = normalize_folder_path(fallback_folder)
    canonical = entry.path_display or entry.path_lower or build_path(fallback, entry.name)
    return ResolvedRemoteFile(
        dropbox_file_id=entry.id,
        dropbox_path=canonical,
        folder_path=folder_of(canonical) or fallback,
        file_name=entry.name,
        size_in_bytes=entry.size or 0,
        client_modified=entry.client_modified,
        server_modified=entry.server_modified,
        content_hash=entry.content_hash,
        rev=entry.rev,
    )


async def resolve_references(
    dropbox: DropboxClient,
    references: List[RemoteReference],
    fallback_folder: Optional[str] = None,
) -> List[ResolvedRemoteFile]:
    """
    Resolve references to canonical descriptors, one listing per distinct folder.
    With no references, every file in fallback_folder is returned. Unresolvable
    references are dropped. Output is unique by Dropbox file id, first seen first.
    """
    fallback = normalize_folder_path(fallback_folder)
    resolved: List[ResolvedRemoteFile] = []

    if not references:
        if not fallback:
            return []
        entries = await dropbox.list_folder(to_list_path(fallback))
        resolved = [to_resolved(entry, fallback) for entry in entries]
    else:
        grouped: Dict[Optional[str], List[RemoteReference]] = {}
        for ref in references:
            folder = folder_of(ref.dropbox_path) or fallback
            grouped.setdefault(folder, []).append(ref)

        for folder, refs in grouped.items():
            entries = await dropbox.list_folder(to_list_path(folder))
            for ref in refs:
                entry = match_entry(ref, entries)
                if entry is None:
                    log.debug("Unresolved reference %s in folder %r", ref.key(), folder)
                    continue
                resolved.append(to_resolved(entry, folder or fallback))

    unique: Dict[str, ResolvedRemoteFile] = {}
    for item in resolved:
        unique.setdefault(item.dropbox_file_id, item)
    log.info(
        "resolve_references requested=%d resolved=%d fallback=%r",
        len(references), len(unique), fallback,
    )
    return list(unique.values())
