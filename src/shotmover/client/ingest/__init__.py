"""Import of photos and videos from a source (e.g. a memory card)."""

from shotmover.client.ingest.engine import (
    ImportEngine,
    ImportJob,
    ImportProgress,
    ImportRun,
    LogEntry,
)
from shotmover.client.ingest.scanner import SYSTEM_ENTRIES, is_hidden_entry, iter_source, scan_source

__all__ = [
    "SYSTEM_ENTRIES",
    "ImportEngine",
    "ImportJob",
    "ImportProgress",
    "ImportRun",
    "LogEntry",
    "is_hidden_entry",
    "iter_source",
    "scan_source",
]
