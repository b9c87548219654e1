"""Filesystem sink for the LOCAL and BACKUP destinations."""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from shotmover.client.sinks.base import CHUNK_SIZE, PutResult, Sink, file_size, open_source
from shotmover.core.errors import ConfigInvalid, IOFailure
from shotmover.core.paths import unique_path
from shotmover.core.types import CancelToken

if TYPE_CHECKING:
    from shotmover.client.transfer.types import ProgressCallback
    from shotmover.core.destinations import LocalDestination

logger = logging.getLogger(__name__)


class FilesystemSink(Sink):
    """Copies files below a root directory.

    Keys map to paths relative to the root. An existing file is never
    overwritten: the copy gets a " (n)" suffix instead. Bytes go to a
    temporary file next to the target and are renamed into place once
    complete, so a cancelled copy leaves nothing behind.
    """

    def __init__(self, destination: LocalDestination) -> None:
        super().__init__(destination)
        self._root = Path(destination.root)

    @property
    def root(self) -> Path:
        return self._root

    def target_path(self, key: str) -> Path:
        """Path a key maps to.

        Raises:
            ConfigInvalid: If the key would leave the root.
        """
        parts = [p for p in key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise ConfigInvalid(f"Invalid key: {key!r}")
        return self._root.joinpath(*parts)

    def has_duplicate(self, key: str) -> bool:
        """Check if a regular file already exists at the key's path."""
        return self.target_path(key).is_file()

    def _check_connection(self) -> str | None:
        if not self._root.is_dir():
            raise IOFailure(f"Directory does not exist: {self._root}")
        try:
            with tempfile.TemporaryFile(dir=self._root):
                pass
        except OSError as e:
            raise IOFailure(f"Directory is not writable: {self._root}: {e}") from e
        return str(self._root)

    def put(
        self,
        local_path: Path,
        key: str,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
        mime_type: str | None = None,
    ) -> PutResult:
        cancel = cancel or CancelToken()
        target = self.target_path(key)
        total = file_size(local_path)

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=target.parent, prefix=f".{target.name}.", suffix=".part"
            )
        except OSError as e:
            raise IOFailure(f"Cannot write to {target.parent}: {e}") from e

        tmp_path = Path(tmp_name)
        try:
            copied = 0
            with os.fdopen(fd, "wb") as dst, open_source(local_path) as src:
                while True:
                    cancel.raise_if_cancelled()
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    dst.write(chunk)
                    copied += len(chunk)
                    if progress:
                        progress(copied, total)
            cancel.raise_if_cancelled()

            final = unique_path(target)
            os.replace(tmp_path, final)
            shutil.copystat(local_path, final)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise IOFailure(f"Cannot copy {local_path} to {target}: {e}") from e
        except BaseException:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise

        logger.debug(f"Copied {local_path} -> {final}")
        return PutResult(remote_ref=str(final), bytes_sent=copied)
