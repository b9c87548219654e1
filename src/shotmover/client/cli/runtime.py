"""Shared plumbing of the CLI commands.

This module provides:
- ExitCode: Process exit codes
- exit_code_for: Map an exception to an exit code
- handle_errors: Context manager turning errors into messages and exit codes
- Runtime: Settings, event bus, state store, relay client and token adapter,
  plus the pools and the sync poller built from them
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from enum import IntEnum
from typing import Any, NoReturn

import click

from shotmover.client.api import RelayClient
from shotmover.client.auth import TokenAdapter
from shotmover.client.cli.config import get_state_file, load_config, save_config
from shotmover.client.events import EventBus
from shotmover.client.sinks import SinkContext, sink_factory
from shotmover.client.state import SettingsStore
from shotmover.client.sync import SyncPoller
from shotmover.client.transfer import DownloadPool, FileDownloader, UploadPool
from shotmover.core.config import EngineSettings
from shotmover.core.errors import Cancelled, ConfigInvalid, MoverError, Unauthenticated

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Process exit codes of the CLI."""

    OK = 0
    ERROR = 1
    CONFIG_INVALID = 2
    AUTH_FAILED = 3
    PARTIAL_FAILURE = 4
    CANCELLED = 5


def exit_code_for(error: BaseException) -> ExitCode:
    """Map an exception to the exit code reported for it."""
    if isinstance(error, ConfigInvalid):
        return ExitCode.CONFIG_INVALID
    if isinstance(error, Unauthenticated):
        return ExitCode.AUTH_FAILED
    if isinstance(error, Cancelled | KeyboardInterrupt):
        return ExitCode.CANCELLED
    return ExitCode.ERROR


def fail(message: str, code: ExitCode = ExitCode.ERROR) -> NoReturn:
    """Print an error and exit."""
    click.echo(f"Error: {message}", err=True)
    sys.exit(int(code))


@contextmanager
def handle_errors() -> Iterator[None]:
    """Report errors raised by a command and exit with the matching code."""
    try:
        yield
    except KeyboardInterrupt:
        click.echo("\nCancelled.", err=True)
        sys.exit(int(ExitCode.CANCELLED))
    except MoverError as e:
        fail(str(e), exit_code_for(e))


class Runtime:
    """Services assembled from the configuration for one command.

    Usage:
        with Runtime.load() as rt:
            pool = rt.upload_pool()
            ...
    """

    def __init__(self, config: dict[str, Any], settings: EngineSettings) -> None:
        self.config = config
        self.settings = settings
        self.bus = EventBus()
        self.client = RelayClient(settings.relay)
        self.tokens = TokenAdapter(
            config.get("auth_token") or None,
            refresher=self.client.login_refresh,
            bus=self.bus,
            on_token_changed=self._save_token,
        )
        self._store: SettingsStore | None = None

    @classmethod
    def load(cls) -> Runtime:
        """Build the runtime from ~/.shotmover/config.json.

        Raises:
            ConfigInvalid: If the configuration is invalid.
        """
        config = load_config()
        return cls(config, EngineSettings.from_config(config))

    @property
    def store(self) -> SettingsStore:
        """State store, opened on first use."""
        if self._store is None:
            self._store = SettingsStore(get_state_file())
        return self._store

    def require_login(self) -> None:
        """Raise Unauthenticated unless a token is configured."""
        if not self.tokens.is_valid:
            raise Unauthenticated("Not logged in. Run 'shotmover login' first.")

    def upload_pool(self) -> UploadPool:
        """Create an upload pool wired to this runtime's relay client and tokens."""
        context = SinkContext(relay_client=self.client, tokens=self.tokens)
        return UploadPool(
            sink_factory(context),
            bus=self.bus,
            max_workers=self.settings.upload_workers,
            max_file_size=self.settings.max_file_size,
        )

    def sync_poller(self, downloader: FileDownloader) -> SyncPoller:
        """Create the sync poller, which owns the HWM, with its download pool.

        The pool is started by SyncPoller.prepare()/start(). The caller
        closes the downloader.
        """
        pool = DownloadPool(
            bus=self.bus,
            max_workers=self.settings.download_workers,
            downloader=downloader,
        )
        return SyncPoller(
            self.client,
            pool,
            store=self.store,
            bus=self.bus,
            poll_interval=self.settings.poll_interval,
        )

    def _save_token(self, token: str) -> None:
        current = load_config()
        current["auth_token"] = token
        save_config(current)

    def close(self) -> None:
        self.tokens.stop()
        self.client.close()
        self.bus.close()
        if self._store is not None:
            self._store.close()

    def __enter__(self) -> Runtime:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def configure_logging(verbosity: int) -> None:
    """Send shotmover logs to stderr at a level picked by -v flags."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("shotmover")
    root.handlers[:] = [handler]
    root.setLevel(level)
