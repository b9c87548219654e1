"""Path and key helpers.

This module provides:
- FolderPolicy: Rule mapping a file to a relative folder
- render_date_pattern: Render a date-format token against an instant
- derive_key: Logical key of a file under a folder policy
- sanitize_filename: Make a server-provided name safe for the local disk
- unique_path: Pick "name (1).ext" style names on collision
- is_supported_media, guess_mime_type: Extension based helpers
"""

from __future__ import annotations

import mimetypes
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath

from shotmover.core.errors import ConfigInvalid
from shotmover.core.types import FolderPolicyKind

DEFAULT_FOLDER_NAME = "Imported Files"
DEFAULT_DATE_PATTERN = "YYYY/MM/DD"

MONTH_ABBREVIATIONS = (
    "jan", "feb", "mar", "apr", "may", "jun",
    "jul", "aug", "sep", "oct", "nov", "dec",
)

DATE_PATTERNS = (
    "YYYY",
    "YYYY/MM",
    "YYYY/MM/DD",
    "YYYY-MM-DD",
    "YYYYMMDD",
    "YYYY/MMM",
    "YYYY/MMM/DD",
    "YYYY MMM DD",
    "YYYY/YYYY-MM/YYYY-MM-DD",
    "YYYY/YYYY-MM-DD",
    "YYYY/MMM DD",
)

_DATE_TOKEN = re.compile(r"YYYY|MMM|MM|DD")

IMAGE_EXTENSIONS = frozenset({
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".tif", ".heic",
    ".raw", ".cr2", ".cr3", ".nef", ".arw", ".dng",
})
VIDEO_EXTENSIONS = frozenset({
    ".mp4", ".mov", ".avi", ".mkv", ".wmv", ".flv", ".webm", ".m4v", ".mts",
})
SUPPORTED_EXTENSIONS = IMAGE_EXTENSIONS | VIDEO_EXTENSIONS

# Camera raw formats are unknown to the mimetypes registry
_RAW_MIME_TYPES = {
    ".raw": "image/x-raw",
    ".cr2": "image/x-canon-cr2",
    ".cr3": "image/x-canon-cr3",
    ".nef": "image/x-nikon-nef",
    ".arw": "image/x-sony-arw",
    ".dng": "image/x-adobe-dng",
    ".heic": "image/heic",
    ".mts": "video/mp2t",
}

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class FolderPolicy:
    """Rule that maps a file to a relative destination folder.

    Attributes:
        kind: NONE, CUSTOM or BY_DATE.
        name: Folder name for CUSTOM (may contain "/" separated levels).
        pattern: Date-format token for BY_DATE, one of DATE_PATTERNS.
    """

    kind: FolderPolicyKind = FolderPolicyKind.NONE
    name: str = DEFAULT_FOLDER_NAME
    pattern: str = DEFAULT_DATE_PATTERN

    def __post_init__(self) -> None:
        """Validate the policy parameters."""
        if self.kind == FolderPolicyKind.BY_DATE and self.pattern not in DATE_PATTERNS:
            raise ConfigInvalid(f"Unknown date pattern: {self.pattern!r}")
        if self.kind == FolderPolicyKind.CUSTOM:
            _custom_segments(self.name)

    @classmethod
    def none(cls) -> FolderPolicy:
        """Files land directly in the destination root."""
        return cls(FolderPolicyKind.NONE)

    @classmethod
    def custom(cls, name: str = DEFAULT_FOLDER_NAME) -> FolderPolicy:
        """Files land in a fixed folder."""
        return cls(FolderPolicyKind.CUSTOM, name=name)

    @classmethod
    def by_date(cls, pattern: str = DEFAULT_DATE_PATTERN) -> FolderPolicy:
        """Files land in a folder derived from their modification date."""
        return cls(FolderPolicyKind.BY_DATE, pattern=pattern)

    def folder_segments(self, modified: datetime | None) -> list[str]:
        """Get the relative folder of a file as path segments.

        Args:
            modified: Modification instant of the file (None means now).

        Returns:
            Non-empty segments, possibly an empty list for NONE.
        """
        if self.kind == FolderPolicyKind.CUSTOM:
            return _custom_segments(self.name)
        if self.kind == FolderPolicyKind.BY_DATE:
            return render_date_pattern(self.pattern, modified or datetime.now())
        return []


def _custom_segments(name: str) -> list[str]:
    segments = [s.strip() for s in re.split(r"[/\\]", name)]
    segments = [s for s in segments if s and s != "."]
    if ".." in segments:
        raise ConfigInvalid(f"Folder name may not contain '..': {name!r}")
    if not segments:
        raise ConfigInvalid("Custom folder name is empty")
    return segments


def render_date_pattern(pattern: str, when: datetime) -> list[str]:
    """Render a date-format token into path segments.

    Args:
        pattern: One of DATE_PATTERNS.
        when: Instant to render, in local time.

    Returns:
        Path segments, none of them empty.

    Raises:
        ConfigInvalid: If the pattern is not a known token.
    """
    if pattern not in DATE_PATTERNS:
        raise ConfigInvalid(f"Unknown date pattern: {pattern!r}")

    values = {
        "YYYY": f"{when.year:04d}",
        "MMM": MONTH_ABBREVIATIONS[when.month - 1],
        "MM": f"{when.month:02d}",
        "DD": f"{when.day:02d}",
    }
    rendered = (
        _DATE_TOKEN.sub(lambda m: values[m.group(0)], segment).strip()
        for segment in pattern.split("/")
    )
    return [segment for segment in rendered if segment]


def derive_key(
    policy: FolderPolicy,
    basename: str,
    modified: datetime | None = None,
) -> str:
    """Derive the logical key of a file.

    The key is a pure function of the policy, the basename and the
    modification instant.

    Args:
        policy: Folder policy to apply.
        basename: File name (no directory part).
        modified: Modification instant in local time.

    Returns:
        "/" separated key, e.g. "2025/03/04/a.jpg".
    """
    return str(PurePosixPath(*policy.folder_segments(modified), basename))


def join_key(*parts: str) -> str:
    """Join key fragments, dropping empty segments."""
    segments: list[str] = []
    for part in parts:
        segments.extend(s for s in part.split("/") if s)
    return "/".join(segments)


def sanitize_filename(name: str, fallback: str = "unnamed") -> str:
    """Make a file name safe to create on any desktop filesystem.

    Characters in <>:"/\\|?* (and control characters) become "_",
    whitespace runs collapse to a single space and the result is trimmed.

    Args:
        name: Name as provided by the server.
        fallback: Name used when nothing usable remains.

    Returns:
        A non-empty, safe file name.
    """
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    if cleaned in ("", ".", ".."):
        return fallback
    return cleaned


def unique_path(path: Path) -> Path:
    """Return path, or "stem (n).ext" next to it if path already exists."""
    if not path.exists():
        return path
    counter = 1
    while True:
        candidate = path.with_name(f"{path.stem} ({counter}){path.suffix}")
        if not candidate.exists():
            return candidate
        counter += 1


def is_supported_media(path: Path) -> bool:
    """Check if a file has a photo or video extension."""
    return path.suffix.lower() in SUPPORTED_EXTENSIONS


def guess_mime_type(name: str) -> str:
    """Guess the MIME type of a file from its extension."""
    suffix = PurePosixPath(name).suffix.lower()
    if suffix in _RAW_MIME_TYPES:
        return _RAW_MIME_TYPES[suffix]
    mime, _ = mimetypes.guess_type(name)
    return mime or "application/octet-stream"
