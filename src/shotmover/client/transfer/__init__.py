"""Transfer jobs and the worker pools that run them.

Components:
- **JobQueue**: FIFO of PENDING jobs with a per-worker accept predicate
- **WorkerPool**: Bounded pool of worker threads, job state machine, events
- **UploadPool**: Sends UploadJobs to sinks
- **DownloadPool** / **FileDownloader**: Fetch relay artifacts into a directory
"""

from shotmover.client.transfer.download import DownloadPool, FileDownloader
from shotmover.client.transfer.pool import PoolState, WorkerPool
from shotmover.client.transfer.queue import JobQueue, QueueClosed
from shotmover.client.transfer.types import (
    DownloadJob,
    FileEntry,
    PoolStats,
    ProgressCallback,
    TransferJob,
    UploadJob,
)
from shotmover.client.transfer.upload import UploadPool

__all__ = [
    "DownloadJob",
    "DownloadPool",
    "FileDownloader",
    "FileEntry",
    "JobQueue",
    "PoolState",
    "PoolStats",
    "ProgressCallback",
    "QueueClosed",
    "TransferJob",
    "UploadJob",
    "UploadPool",
    "WorkerPool",
]
