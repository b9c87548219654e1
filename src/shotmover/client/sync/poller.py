"""Sync poller: pulls new relay artifacts into a local directory.

This module provides:
- PollResult: Outcome of one listing call
- SyncPoller: Periodic listing of /api/sync feeding the download pool

Architecture:
    SyncPoller ─GET /api/sync?since=HWM─► DownloadPool ─DONE─► HWM

The high-water mark (HWM) is the creation instant of the newest artifact
downloaded so far. It only moves forward, and only when a download
finishes DONE; it is persisted immediately.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from shotmover.client.api import Artifact
from shotmover.client.events import AUTH_INVALID, DOWNLOAD_HWM, DOWNLOAD_QUEUE
from shotmover.client.transfer.pool import PoolState
from shotmover.client.transfer.types import DownloadJob
from shotmover.core.clock import format_instant, parse_instant
from shotmover.core.config import DEFAULT_HWM, DEFAULT_POLL_INTERVAL
from shotmover.core.errors import Rejected, Unauthenticated, Unreachable
from shotmover.core.types import JobStatus

if TYPE_CHECKING:
    from shotmover.client.api import RelayClient
    from shotmover.client.events import BusEvent, EventBus
    from shotmover.client.state import SettingsStore
    from shotmover.client.transfer.download import DownloadPool

logger = logging.getLogger(__name__)

BACKLOG_INTERVAL = 1.0  # seconds between polls while the server reports more items

TokenSupplier = Callable[[], str]


@dataclass
class PollResult:
    """Outcome of one listing call."""

    submitted: int = 0
    listed: int = 0
    more_items: int = 0


class SyncPoller:
    """Periodically lists new artifacts and downloads them.

    Usage:
        poller = SyncPoller(client, download_pool, store=store, bus=bus)
        poller.start(Path("~/Downloads"), token_supplier=adapter.bearer)
        ...
        poller.stop()
    """

    def __init__(
        self,
        client: RelayClient,
        download_pool: DownloadPool,
        store: SettingsStore | None = None,
        bus: EventBus | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        backlog_interval: float = BACKLOG_INTERVAL,
    ) -> None:
        """Initialize the poller.

        Args:
            client: Relay API client.
            download_pool: Pool the downloads are submitted to.
            store: Persists the HWM (None keeps it in memory only).
            bus: Event bus for HWM and error events.
            poll_interval: Seconds between polls.
            backlog_interval: Seconds between polls while a backlog is drained.
        """
        self._client = client
        self._pool = download_pool
        self._store = store
        self._bus = bus
        self._poll_interval = poll_interval
        self._backlog_interval = backlog_interval

        self._hwm_lock = threading.Lock()
        self._hwm = parse_instant((store.get_hwm() if store else None) or DEFAULT_HWM)
        # Submitted artifact id -> created_at; ids older than the HWM are dropped
        self._known_ids: dict[str, datetime] = {}

        self._target_dir: Path | None = None
        self._token_supplier: TokenSupplier | None = None
        self._monitoring = False
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        self._pool.on_terminal(self._on_download_terminal)
        if bus is not None:
            bus.subscribe(AUTH_INVALID, self._on_auth_invalid)

    @property
    def is_monitoring(self) -> bool:
        """Check if the poll loop is running."""
        return self._monitoring

    @property
    def target_dir(self) -> Path | None:
        return self._target_dir

    @property
    def download_pool(self) -> DownloadPool:
        return self._pool

    # === High-water mark ===

    @property
    def hwm(self) -> datetime:
        """Snapshot of the high-water mark."""
        with self._hwm_lock:
            return self._hwm

    def set_hwm(self, value: str | datetime) -> datetime:
        """Move the HWM forward; earlier values are ignored.

        Returns:
            The resulting HWM.
        """
        instant = parse_instant(value) if isinstance(value, str) else value
        return self._advance(instant)

    def reset_hwm(self, value: str | datetime = DEFAULT_HWM) -> datetime:
        """Set the HWM to any instant, including an earlier one.

        Artifacts created after the new HWM are downloaded again.
        """
        instant = parse_instant(value) if isinstance(value, str) else value
        with self._hwm_lock:
            self._hwm = instant
            self._known_ids.clear()
            self._persist_locked()
        logger.info(f"Sync HWM reset to {format_instant(instant)}")
        self._publish_hwm(instant)
        return instant

    def _advance(self, instant: datetime) -> datetime:
        with self._hwm_lock:
            if instant <= self._hwm:
                return self._hwm
            self._hwm = instant
            self._persist_locked()
            # The server never lists these again; ids at the HWM may reappear
            self._known_ids = {
                artifact_id: created
                for artifact_id, created in self._known_ids.items()
                if created >= instant
            }
        logger.debug(f"Sync HWM advanced to {format_instant(instant)}")
        self._publish_hwm(instant)
        return instant

    def _persist_locked(self) -> None:
        if self._store is not None:
            self._store.set_hwm(format_instant(self._hwm))

    def _publish_hwm(self, instant: datetime) -> None:
        if self._bus is not None:
            self._bus.publish(DOWNLOAD_HWM, hwm=format_instant(instant))

    def _on_download_terminal(self, job: DownloadJob) -> None:
        if job.status == JobStatus.DONE:
            self._advance(job.created_at)
        else:
            # Listed again on a later poll while the HWM is still behind it
            with self._hwm_lock:
                self._known_ids.pop(job.artifact_id, None)

    # === Lifecycle ===

    def start(
        self,
        target_dir: Path,
        initial_hwm: str | datetime | None = None,
        token_supplier: TokenSupplier | None = None,
    ) -> None:
        """Start polling into target_dir.

        Args:
            target_dir: Directory downloads are written to.
            initial_hwm: Overrides the persisted HWM (may move it back).
            token_supplier: Returns the bearer token for each poll.
        """
        if self._monitoring:
            logger.warning("SyncPoller already running")
            return

        self.prepare(target_dir, token_supplier)
        if initial_hwm is not None:
            self.reset_hwm(initial_hwm)

        self._monitoring = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="SyncPoller",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"SyncPoller started (target: {self._target_dir}, since {format_instant(self.hwm)})")

    def prepare(self, target_dir: Path, token_supplier: TokenSupplier | None = None) -> None:
        """Set the target and token source and start the pool, without polling.

        Used directly when polls are driven by the caller through poll_once().
        """
        self._target_dir = Path(target_dir)
        self._token_supplier = token_supplier
        if self._pool.state != PoolState.RUNNING:
            self._pool.start()

    def stop(self, drain: bool = True, timeout: float = 30.0) -> int:
        """Stop polling.

        Queued downloads are cancelled. Active downloads are allowed to
        finish when drain is True, cancelled otherwise.

        Returns:
            Number of queued downloads cleared.
        """
        self._monitoring = False
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None

        cleared = self._pool.clear_pending()
        if drain:
            self._pool.wait_idle(timeout)
        else:
            self._pool.cancel_all()
        logger.info(f"SyncPoller stopped ({cleared} queued downloads cleared)")
        return cleared

    def _on_auth_invalid(self, event: BusEvent) -> None:
        if self._monitoring:
            logger.warning("Session invalid: stopping sync polling")
            self._monitoring = False
            self._stop_event.set()

    def _run_loop(self) -> None:
        """Main loop of the poller thread."""
        while self._monitoring:
            delay = self._poll_interval
            try:
                result = self.poll_once()
                if result.more_items > 0:
                    delay = self._backlog_interval
            except Unauthenticated as e:
                logger.error(f"Sync stopped: {e}")
                self._monitoring = False
                if self._bus is not None:
                    self._bus.publish(AUTH_INVALID, reason=str(e))
                break
            except Unreachable as e:
                logger.warning(f"Sync poll failed, will retry: {e}")
            except Rejected as e:
                logger.error(f"Sync poll rejected: {e}")
                if self._bus is not None:
                    self._bus.publish(
                        DOWNLOAD_QUEUE,
                        action="error",
                        error=str(e),
                        status_code=e.status_code,
                    )
            except Exception:
                logger.exception("Unexpected error in sync poll")

            if self._stop_event.wait(delay):
                break
        logger.debug("SyncPoller loop exited")

    # === Polling ===

    def poll_once(self) -> PollResult:
        """List artifacts newer than the HWM and submit unseen ones.

        Returns:
            What was listed and submitted.

        Raises:
            Unauthenticated: If the server refuses the token.
            Unreachable: On network errors.
            Rejected: On other HTTP errors (404 is an empty listing).
        """
        if self._target_dir is None:
            raise RuntimeError("SyncPoller has no target directory")

        token = self._token_supplier() if self._token_supplier else None
        since = format_instant(self.hwm)
        page = self._client.list_sync(since, token=token)

        result = PollResult(listed=len(page.items), more_items=page.more_items)
        for item in page.items:
            try:
                artifact = Artifact.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed artifact {item!r}: {e}")
                continue

            with self._hwm_lock:
                if artifact.id in self._known_ids or artifact.created_at < self._hwm:
                    continue
                self._known_ids[artifact.id] = artifact.created_at

            self._pool.submit(DownloadJob(
                artifact_id=artifact.id,
                name=artifact.name,
                url=artifact.download_url,
                mime_type=artifact.mime_type,
                created_at=artifact.created_at,
                target_dir=self._target_dir,
                thumbnail_url=artifact.thumbnail_url,
                bytes_total=artifact.size,
            ))
            result.submitted += 1

        if result.listed:
            logger.info(
                f"Sync since {since}: {result.listed} listed, {result.submitted} new"
                + (f", {result.more_items} more pending" if result.more_items else "")
            )
        return result

    def stats(self) -> dict[str, Any]:
        """Pool statistics plus poller state."""
        data = self._pool.stats().as_dict()
        data.update(
            is_monitoring=self._monitoring,
            tracked_artifacts=len(self._known_ids),
            hwm=format_instant(self.hwm),
            target_dir=str(self._target_dir) if self._target_dir else None,
        )
        return data
