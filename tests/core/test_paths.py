"""Tests for key derivation and file name helpers."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from shotmover.core.errors import ConfigInvalid
from shotmover.core.paths import (
    DATE_PATTERNS,
    FolderPolicy,
    derive_key,
    guess_mime_type,
    is_supported_media,
    join_key,
    render_date_pattern,
    sanitize_filename,
    unique_path,
)

MARCH_4 = datetime(2025, 3, 4, 14, 30)


class TestFolderPolicy:
    """Tests for FolderPolicy."""

    def test_none_puts_file_at_root(self) -> None:
        """A NONE policy yields the bare file name."""
        assert derive_key(FolderPolicy.none(), "a.jpg", MARCH_4) == "a.jpg"

    def test_custom_folder(self) -> None:
        """A CUSTOM policy prefixes the folder name."""
        assert derive_key(FolderPolicy.custom("Trips"), "a.jpg", MARCH_4) == "Trips/a.jpg"

    def test_custom_folder_with_levels(self) -> None:
        """Slashes in a custom name create nested folders, empty levels are dropped."""
        policy = FolderPolicy.custom(" Trips//2025/ ")
        assert derive_key(policy, "a.jpg") == "Trips/2025/a.jpg"

    def test_custom_folder_rejects_parent_reference(self) -> None:
        """A custom name may not escape the destination root."""
        with pytest.raises(ConfigInvalid):
            FolderPolicy.custom("../outside")

    def test_custom_folder_rejects_empty_name(self) -> None:
        """A custom name made only of separators is invalid."""
        with pytest.raises(ConfigInvalid):
            FolderPolicy.custom(" / ")

    def test_unknown_date_pattern(self) -> None:
        """Unknown date patterns are rejected when the policy is built."""
        with pytest.raises(ConfigInvalid):
            FolderPolicy.by_date("DD.MM.YYYY")

    def test_default_pattern(self) -> None:
        """The default date pattern is YYYY/MM/DD."""
        assert derive_key(FolderPolicy.by_date(), "a.jpg", MARCH_4) == "2025/03/04/a.jpg"


class TestRenderDatePattern:
    """Tests for render_date_pattern."""

    @pytest.mark.parametrize(
        ("pattern", "expected"),
        [
            ("YYYY", ["2025"]),
            ("YYYY/MM", ["2025", "03"]),
            ("YYYY/MM/DD", ["2025", "03", "04"]),
            ("YYYY-MM-DD", ["2025-03-04"]),
            ("YYYYMMDD", ["20250304"]),
            ("YYYY/MMM", ["2025", "mar"]),
            ("YYYY/MMM/DD", ["2025", "mar", "04"]),
            ("YYYY MMM DD", ["2025 mar 04"]),
            ("YYYY/YYYY-MM/YYYY-MM-DD", ["2025", "2025-03", "2025-03-04"]),
            ("YYYY/YYYY-MM-DD", ["2025", "2025-03-04"]),
            ("YYYY/MMM DD", ["2025", "mar 04"]),
        ],
    )
    def test_patterns(self, pattern: str, expected: list[str]) -> None:
        """Each known pattern renders to the expected segments."""
        assert render_date_pattern(pattern, MARCH_4) == expected

    def test_month_abbreviations_are_lowercase(self) -> None:
        """Month names use lowercase English abbreviations."""
        assert render_date_pattern("YYYY/MMM", datetime(2024, 12, 31)) == ["2024", "dec"]

    def test_no_empty_segments(self) -> None:
        """No pattern produces an empty path segment."""
        for pattern in DATE_PATTERNS:
            key = derive_key(FolderPolicy.by_date(pattern), "a.jpg", MARCH_4)
            assert all(key.split("/")), key

    def test_key_is_deterministic(self) -> None:
        """The key only depends on policy, name and modification time."""
        policy = FolderPolicy.by_date("YYYY/MMM/DD")
        assert derive_key(policy, "a.jpg", MARCH_4) == derive_key(policy, "a.jpg", MARCH_4)


class TestJoinKey:
    """Tests for join_key."""

    def test_join_with_prefix(self) -> None:
        """Prefix and key are joined with a single slash."""
        assert join_key("backups/", "/2025/a.jpg") == "backups/2025/a.jpg"

    def test_empty_prefix(self) -> None:
        """An empty prefix adds nothing."""
        assert join_key("", "a.jpg") == "a.jpg"


class TestSanitizeFilename:
    """Tests for sanitize_filename."""

    def test_replaces_unsafe_characters(self) -> None:
        """Characters not allowed on desktop filesystems become underscores."""
        assert sanitize_filename('a<b>:c"d|e?f*.jpg') == "a_b__c_d_e_f_.jpg"

    def test_replaces_separators(self) -> None:
        """Path separators cannot smuggle directories into the name."""
        assert sanitize_filename("../etc/passwd") == ".._etc_passwd"
        assert sanitize_filename("a\\b.jpg") == "a_b.jpg"

    def test_collapses_whitespace(self) -> None:
        """Whitespace runs collapse and the name is trimmed."""
        assert sanitize_filename("  my    photo.jpg ") == "my photo.jpg"

    @pytest.mark.parametrize("name", ["", "   ", ".", ".."])
    def test_fallback_for_unusable_names(self, name: str) -> None:
        """Names that cannot be created fall back to a placeholder."""
        assert sanitize_filename(name) == "unnamed"


class TestUniquePath:
    """Tests for unique_path."""

    def test_free_path_is_kept(self, tmp_path: Path) -> None:
        """A path that does not exist is returned unchanged."""
        assert unique_path(tmp_path / "a.jpg") == tmp_path / "a.jpg"

    def test_numbered_suffix(self, tmp_path: Path) -> None:
        """Existing names get " (n)" before the extension."""
        (tmp_path / "a.jpg").write_bytes(b"1")
        assert unique_path(tmp_path / "a.jpg") == tmp_path / "a (1).jpg"
        (tmp_path / "a (1).jpg").write_bytes(b"2")
        assert unique_path(tmp_path / "a.jpg") == tmp_path / "a (2).jpg"


class TestMediaHelpers:
    """Tests for extension based helpers."""

    @pytest.mark.parametrize("name", ["a.jpg", "B.JPEG", "c.CR3", "d.mov", "e.MTS", "f.heic"])
    def test_supported_media(self, name: str) -> None:
        """Photo and video extensions are recognised in any case."""
        assert is_supported_media(Path(name))

    @pytest.mark.parametrize("name", ["notes.txt", "archive.zip", "noext"])
    def test_unsupported_media(self, name: str) -> None:
        """Other files are not media."""
        assert not is_supported_media(Path(name))

    def test_mime_types(self) -> None:
        """Raw formats get specific MIME types, unknown ones a generic type."""
        assert guess_mime_type("a.jpg") == "image/jpeg"
        assert guess_mime_type("a.NEF") == "image/x-nikon-nef"
        assert guess_mime_type("a.unknownext") == "application/octet-stream"
