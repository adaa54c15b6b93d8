"""Tests for SQLite storage backend."""
import sqlite3
from datetime import datetime, timedelta

import pytest

from config import STORAGE
from config.exceptions import StorageError
from storage.models import ConnectionRecord, ConnectionStatus, NetworkRecord
from storage.sqlite_store import SQLiteStore
from storage.state_store import StateStore
from tests.mocks import make_network


class TestSQLiteStore:
    """Tests for SQLiteStore class."""

    @pytest.fixture
    def store(self, temp_data_dir):
        """Create a SQLiteStore with temporary directory."""
        return SQLiteStore(data_dir=temp_data_dir)

    @pytest.fixture
    def state(self):
        state = StateStore()
        state.upsert_network(make_network("HomeNet", signal=80, security="WPA2", frequency="5GHz",
                                          channel="44"))
        state.upsert_network(make_network("CoffeeShop", signal=40, security="Open"))
        state.set_connected("HomeNet")
        state.open_connection("HomeNet", "DC:A6:32:AA:BB:CC", "192.168.1.30", "Raspberry Pi", "computer")
        state.record_failed_connection("CoffeeShop", "AA:BB:CC:DD:EE:01", "", "laptop",
                                       reason="verification_failed")
        return state

    def test_init_creates_database(self, temp_data_dir):
        """Test that initialization creates the database file."""
        SQLiteStore(data_dir=temp_data_dir)
        assert (temp_data_dir / STORAGE.DATABASE_FILE).exists()

    def test_init_creates_missing_directory(self, temp_data_dir):
        nested = temp_data_dir / "a" / "b"
        SQLiteStore(data_dir=nested)
        assert (nested / STORAGE.DATABASE_FILE).exists()

    def test_uses_wal_mode(self, store):
        conn = sqlite3.connect(store.db_path)
        try:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            conn.close()
        assert mode.lower() == "wal"

    def test_save_snapshot_marks_clean(self, store, state):
        assert state.is_dirty
        assert store.save_snapshot(state) == (2, 2)
        assert not state.is_dirty

    def test_round_trip(self, store, state):
        """Records written by save_snapshot come back through load_into."""
        store.save_snapshot(state)

        restored = StateStore()
        assert store.load_into(restored) == (2, 2)

        home = restored.get_network("HomeNet")
        assert home.channel == "44"
        assert home.frequency == "5GHz"
        assert home.is_secured
        assert not home.is_connected  # association is re-read from the OS

        by_status = {c.status: c for c in restored.get_connections()}
        device = by_status[ConnectionStatus.CONNECTED]
        assert device.device_mac == "DC:A6:32:AA:BB:CC"
        assert device.is_currently_connected
        failed = by_status[ConnectionStatus.FAILED]
        assert failed.disconnection_reason == "verification_failed"
        assert not failed.is_currently_connected

    def test_snapshot_replaces_previous(self, store, state):
        store.save_snapshot(state)
        state.cleanup_old_records(keep_days=1, now=datetime.now() + timedelta(days=30))
        store.save_snapshot(state)
        assert len(store.get_connections()) == 1

    def test_ids_continue_after_reload(self, store, state):
        store.save_snapshot(state)
        restored = StateStore()
        store.load_into(restored)
        new = restored.open_connection("HomeNet", "3C:22:FB:11:22:33", "192.168.1.40")
        assert new.id == 3

    def test_load_from_empty_database(self, store):
        restored = StateStore()
        assert store.load_into(restored) == (0, 0)
        assert restored.get_networks() == []


class TestCleanup:
    """Tests for retention on disk."""

    @pytest.fixture
    def store(self, temp_data_dir):
        return SQLiteStore(data_dir=temp_data_dir)

    def _seed(self, store, age_days):
        state = StateStore()
        old = datetime.now() - timedelta(days=age_days)
        state.load(
            [NetworkRecord(ssid="Gone", is_available=False, first_detected=old, last_seen=old),
             NetworkRecord(ssid="Here")],
            [ConnectionRecord("Gone", "AA:AA:AA:AA:AA:01", "10.0.0.2", id=1, connected_at=old,
                              disconnected_at=old, is_currently_connected=False,
                              status=ConnectionStatus.DISCONNECTED),
             ConnectionRecord("Here", "AA:AA:AA:AA:AA:02", "192.168.1.2", id=2,
                              connected_at=old, status=ConnectionStatus.CONNECTED)],
        )
        store.save_snapshot(state)

    def test_cleanup_removes_old_closed_records(self, store):
        self._seed(store, age_days=STORAGE.RETENTION_DAYS + 5)
        assert store.cleanup_old_data() == 2
        assert [n.ssid for n in store.get_networks()] == ["Here"]
        # open records are kept regardless of age
        assert [c.id for c in store.get_connections()] == [2]

    def test_cleanup_keeps_recent(self, store):
        self._seed(store, age_days=3)
        assert store.cleanup_old_data() == 0

    def test_check_cleanup_runs_once_per_day(self, store):
        self._seed(store, age_days=STORAGE.RETENTION_DAYS + 5)
        assert store.check_cleanup() == 2
        self._seed(store, age_days=STORAGE.RETENTION_DAYS + 5)
        assert store.check_cleanup() == 0


class TestMaintenance:
    """Tests for flush, backup and stats."""

    def test_backup(self, temp_data_dir):
        store = SQLiteStore(data_dir=temp_data_dir)
        path = store.backup()
        assert path.exists()
        assert path.parent == temp_data_dir

    def test_backup_to_bad_path_raises(self, temp_data_dir):
        store = SQLiteStore(data_dir=temp_data_dir)
        with pytest.raises(StorageError):
            store.backup(temp_data_dir / "missing" / "dir" / "copy.db")

    def test_database_stats(self, temp_data_dir):
        store = SQLiteStore(data_dir=temp_data_dir)
        state = StateStore()
        state.open_connection("HomeNet", "AA:AA:AA:AA:AA:01", "192.168.1.2")
        store.save_snapshot(state)
        store.flush()
        stats = store.get_database_stats()
        assert stats["connections_count"] == 1
        assert stats["open_connections"] == 1
        assert stats["networks_count"] == 0
        assert stats["file_size_bytes"] > 0
