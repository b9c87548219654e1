"""Tests for the persisted key/value store."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from shotmover.client.state import HWM_KEY, SettingsStore


class TestSettingsStoreCreation:
    """Tests for SettingsStore initialization."""

    def test_creates_database(self, tmp_path: Path) -> None:
        """Should create database file."""
        db_path = tmp_path / "state.db"
        store = SettingsStore(db_path)

        assert db_path.exists()
        assert store.path == db_path
        store.close()

    def test_creates_parent_dirs(self, tmp_path: Path) -> None:
        """Should create parent directories."""
        db_path = tmp_path / "subdir" / "nested" / "state.db"
        with SettingsStore(db_path):
            assert db_path.exists()

    def test_reopens_existing_db(self, tmp_path: Path) -> None:
        """Should reopen existing database with data preserved."""
        db_path = tmp_path / "state.db"

        with SettingsStore(db_path) as store:
            store.set_hwm("2025-03-04T05:06:07.000Z")

        with SettingsStore(db_path) as store:
            assert store.get_hwm() == "2025-03-04T05:06:07.000Z"


class TestValues:
    """Tests for plain values."""

    @pytest.fixture
    def store(self, tmp_path: Path) -> Iterator[SettingsStore]:
        """Create a SettingsStore instance."""
        s = SettingsStore(tmp_path / "state.db")
        yield s
        s.close()

    def test_get_missing(self, store: SettingsStore) -> None:
        """Missing keys return the default."""
        assert store.get("nope") is None
        assert store.get("nope", "fallback") == "fallback"

    def test_set_replaces(self, store: SettingsStore) -> None:
        """Setting a key twice keeps the last value."""
        store.set("k", "one")
        store.set("k", "two")

        assert store.get("k") == "two"

    def test_hwm_uses_dedicated_key(self, store: SettingsStore) -> None:
        """The high-water mark lives under its own key."""
        assert store.get_hwm() is None

        store.set_hwm("2025-01-01T00:00:00.000Z")

        assert store.get(HWM_KEY) == "2025-01-01T00:00:00.000Z"
