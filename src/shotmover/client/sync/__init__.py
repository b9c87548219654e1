"""Download side: polling the relay for new artifacts."""

from shotmover.client.sync.poller import BACKLOG_INTERVAL, PollResult, SyncPoller

__all__ = ["BACKLOG_INTERVAL", "PollResult", "SyncPoller"]
