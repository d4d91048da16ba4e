"""Expand Dropbox Chooser selections into file references (folders are listed recursively)."""

import logging
from typing import Any, Dict, List, Optional, Tuple

from aperture.dropbox.client import DropboxClient, RemoteFile
from aperture.dropbox.resolver import RemoteReference, normalize_reference
from aperture.errors import ConfigurationError, RemoteProviderError

log = logging.getLogger(__name__)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    return None


def is_folder_selection(item: Dict[str, Any]) -> bool:
    """Chooser marks folders with isDir; list_folder-style entries use .tag."""
    if isinstance(item.get("isDir"), bool):
        return item["isDir"]
    tag = item.get(".tag")
    return isinstance(tag, str) and tag.lower() == "folder"


def _file_reference(item: Dict[str, Any]) -> Optional[RemoteReference]:
    return normalize_reference(
        RemoteReference(
            dropbox_file_id=_text(item.get("id")),
            dropbox_path=_text(item.get("path_display")) or _text(item.get("path_lower")),
            file_name=_text(item.get("name")),
        )
    )


def _entry_reference(entry: RemoteFile) -> Optional[RemoteReference]:
    return normalize_reference(
        RemoteReference(
            dropbox_file_id=entry.id or None,
            dropbox_path=entry.path_display or entry.path_lower,
            file_name=entry.name or None,
        )
    )


def folder_listing_options(item: Dict[str, Any]) -> List[Tuple[str, Optional[str]]]:
    """(path, shared_link) attempts in order: id, path_lower, path_display, shared link."""
    options: List[Tuple[str, Optional[str]]] = []
    for key in ("id", "path_lower", "path_display"):
        value = _text(item.get(key))
        if value and (value, None) not in options:
            options.append((value, None))
    link = _text(item.get("link"))
    if link:
        options.append(("", link))
    return options


async def _list_selected_folder(dropbox: DropboxClient, item: Dict[str, Any]) -> List[RemoteFile]:
    options = folder_listing_options(item)
    if not options:
        log.warning("Dropbox folder selection %r has no id, path or link; skipped", item.get("name"))
        return []
    last_error: Optional[RemoteProviderError] = None
    for path, link in options:
        try:
            return await dropbox.list_folder(path, recursive=True, shared_link_url=link)
        except RemoteProviderError as e:
            log.warning("Listing selected folder via %r failed: %s", link or path, e)
            last_error = e
    raise last_error


async def expand_selection(dropbox: DropboxClient, selection: List[Dict[str, Any]]) -> List[RemoteReference]:
    """
    Turn chooser selections into references. Files pass through; folders are
    expanded to every file below them. Any folder that cannot be listed fails
    the whole expansion, so a selection is never admitted partially.
    """
    items = [item for item in selection if isinstance(item, dict)]
    if items and not dropbox.has_credentials:
        raise ConfigurationError(
            "Importing a Dropbox selection requires APERTURE_DROPBOX_ACCESS_TOKEN in the environment"
        )

    by_key: Dict[str, RemoteReference] = {}
    for item in items:
        if is_folder_selection(item):
            entries = await _list_selected_folder(dropbox, item)
            refs = [_entry_reference(entry) for entry in entries]
        else:
            refs = [_file_reference(item)]
        for ref in refs:
            if ref is not None:
                by_key[ref.key()] = ref
    log.info("expand_selection items=%d references=%d", len(items), len(by_key))
    return list(by_key.values())
