"""Enumeration of import sources.

This module provides:
- SYSTEM_ENTRIES: Names of OS bookkeeping files and folders never imported
- is_hidden_entry: Check for hidden or system entries
- iter_source / scan_source: Walk a source directory into FileEntry objects
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path

from shotmover.client.transfer.types import FileEntry
from shotmover.core.errors import ConfigInvalid
from shotmover.core.paths import is_supported_media
from shotmover.core.types import CancelToken

logger = logging.getLogger(__name__)

SYSTEM_ENTRIES = frozenset({
    "thumbs.db",
    "desktop.ini",
    ".ds_store",
    "system volume information",
    "$recycle.bin",
    ".spotlight-v100",
    ".trashes",
    ".fseventsd",
})


def is_hidden_entry(name: str) -> bool:
    """Check if a file or folder name is hidden or OS bookkeeping."""
    return name.startswith(".") or name.lower() in SYSTEM_ENTRIES


def iter_source(
    root: Path,
    recurse: bool = True,
    include_all: bool = False,
    cancel: CancelToken | None = None,
) -> Iterator[FileEntry]:
    """Walk a source directory.

    Entries are yielded in a stable order (sorted by name per directory).
    Symlinks, hidden and system entries are skipped, as are files that
    are not supported media unless include_all is set. Unreadable files
    are logged and skipped.

    Args:
        root: Source directory.
        recurse: Descend into sub-directories.
        include_all: Accept every regular file, not only media.
        cancel: Stops the walk (raising Cancelled) when set.

    Raises:
        ConfigInvalid: If root is not a directory.
        Cancelled: If cancelled during the walk.
    """
    root = Path(root)
    if not root.is_dir():
        raise ConfigInvalid(f"Source directory does not exist: {root}")

    for root_str, dirs, files in os.walk(root):
        current = Path(root_str)

        if recurse:
            dirs[:] = sorted(
                d for d in dirs
                if not is_hidden_entry(d) and not (current / d).is_symlink()
            )
        else:
            dirs[:] = []

        for filename in sorted(files):
            if cancel is not None:
                cancel.raise_if_cancelled()
            if is_hidden_entry(filename):
                continue
            path = current / filename
            if path.is_symlink():
                continue
            if not include_all and not is_supported_media(path):
                continue
            try:
                yield FileEntry.from_path(path)
            except OSError as e:
                logger.warning(f"Skipping unreadable file {path}: {e}")


def scan_source(
    root: Path,
    recurse: bool = True,
    include_all: bool = False,
    cancel: CancelToken | None = None,
) -> list[FileEntry]:
    """Collect every importable file below root (see iter_source)."""
    entries = list(iter_source(root, recurse=recurse, include_all=include_all, cancel=cancel))
    logger.info(f"Found {len(entries)} files in {root}")
    return entries
