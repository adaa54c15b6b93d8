"""SQLite-based persistence for network and connection records.

The in-memory StateStore is authoritative while the process runs; this
module snapshots it to disk on a schedule and loads it back on startup.

Features:
- Full snapshot save inside one transaction
- Reload into a StateStore at startup
- Data cleanup and retention policies
- Backup functionality
"""
import shutil
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from config import STORAGE, get_data_dir, get_logger
from config.exceptions import StorageError
from storage.models import ConnectionRecord, NetworkRecord

logger = get_logger(__name__)


# Schema version for migrations
SCHEMA_VERSION = 1


class SQLiteStore:
    """Handles persistence of state store snapshots to a SQLite database."""

    SCHEMA = """
    -- Wi-Fi networks keyed by SSID
    CREATE TABLE IF NOT EXISTS networks (
        ssid TEXT PRIMARY KEY,
        bssid TEXT,
        signal_strength INTEGER DEFAULT 50,
        frequency TEXT,
        security TEXT,
        is_secured INTEGER DEFAULT 0,
        network_type TEXT,
        channel TEXT,
        vendor TEXT,
        is_connected INTEGER DEFAULT 0,
        is_available INTEGER DEFAULT 1,
        first_detected TEXT NOT NULL,
        last_seen TEXT NOT NULL,
        location TEXT
    );

    -- Device/host presence on a network
    CREATE TABLE IF NOT EXISTS connections (
        id INTEGER PRIMARY KEY,
        network_ssid TEXT NOT NULL,
        device_mac TEXT,
        assigned_ip TEXT,
        device_name TEXT,
        device_type TEXT,
        connected_at TEXT NOT NULL,
        disconnected_at TEXT,
        is_currently_connected INTEGER DEFAULT 0,
        data_usage_bytes INTEGER DEFAULT 0,
        connection_duration_minutes INTEGER DEFAULT 0,
        status TEXT NOT NULL,
        disconnection_reason TEXT
    );

    -- Schema version tracking
    CREATE TABLE IF NOT EXISTS schema_info (
        key TEXT PRIMARY KEY,
        value TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_networks_last_seen ON networks(last_seen);
    CREATE INDEX IF NOT EXISTS idx_connections_network ON connections(network_ssid);
    CREATE INDEX IF NOT EXISTS idx_connections_mac ON connections(device_mac);
    """

    NETWORK_COLUMNS = (
        "ssid", "bssid", "signal_strength", "frequency", "security", "is_secured",
        "network_type", "channel", "vendor", "is_connected", "is_available",
        "first_detected", "last_seen", "location",
    )
    CONNECTION_COLUMNS = (
        "id", "network_ssid", "device_mac", "assigned_ip", "device_name", "device_type",
        "connected_at", "disconnected_at", "is_currently_connected", "data_usage_bytes",
        "connection_duration_minutes", "status", "disconnection_reason",
    )

    def __init__(self, data_dir: Optional[Path] = None):
        """Initialize SQLite store.

        Args:
            data_dir: Directory for database file. Defaults to ~/.netguard/

        Raises:
            StorageError: If the directory or schema cannot be created.
        """
        self.data_dir = Path(data_dir) if data_dir else get_data_dir()
        self.db_path = self.data_dir / STORAGE.DATABASE_FILE
        self._lock = threading.Lock()
        self._last_cleanup_check: Optional[date] = None

        self._ensure_data_dir()
        self._init_db()

        logger.info(f"SQLiteStore initialized at {self.db_path}")

    def _ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create data directory: {e}", {"path": str(self.data_dir)})

    @contextmanager
    def _connection(self):
        """Context manager for database connections.

        Uses WAL mode for better concurrency.
        """
        conn = sqlite3.connect(
            self.db_path,
            timeout=30.0,
            isolation_level=None  # Autocommit mode, we handle transactions manually
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        try:
            with self._connection() as conn:
                conn.executescript(self.SCHEMA)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_info (key, value) VALUES (?, ?)",
                    ("version", str(SCHEMA_VERSION))
                )
            logger.debug("Database schema initialized")
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StorageError(f"Database initialization failed: {e}")

    # === Snapshot Methods ===

    def save_snapshot(self, store) -> Tuple[int, int]:
        """Write the full contents of a StateStore to disk.

        The tables are replaced inside a single transaction so a crash
        mid-save leaves the previous snapshot intact.

        Returns:
            (networks saved, connections saved)
        """
        networks, connections = store.snapshot()
        network_rows = [self._network_row(n) for n in networks]
        connection_rows = [self._connection_row(c) for c in connections if c.id is not None]

        with self._lock:
            try:
                with self._connection() as conn:
                    conn.execute("BEGIN TRANSACTION")
                    try:
                        conn.execute("DELETE FROM networks")
                        conn.execute("DELETE FROM connections")
                        conn.executemany(
                            f"INSERT INTO networks ({', '.join(self.NETWORK_COLUMNS)}) "
                            f"VALUES ({', '.join('?' * len(self.NETWORK_COLUMNS))})",
                            network_rows,
                        )
                        conn.executemany(
                            f"INSERT INTO connections ({', '.join(self.CONNECTION_COLUMNS)}) "
                            f"VALUES ({', '.join('?' * len(self.CONNECTION_COLUMNS))})",
                            connection_rows,
                        )
                        conn.execute("COMMIT")
                    except sqlite3.Error:
                        conn.execute("ROLLBACK")
                        raise
            except sqlite3.Error as e:
                logger.error(f"Snapshot save failed: {e}")
                raise StorageError(f"Failed to save snapshot: {e}")

        store.mark_clean()
        logger.debug(f"Saved {len(network_rows)} networks, {len(connection_rows)} connections")
        return len(network_rows), len(connection_rows)

    def load_into(self, store) -> Tuple[int, int]:
        """Replace the contents of a StateStore with the persisted snapshot.

        Returns:
            (networks loaded, connections loaded)
        """
        networks = self.get_networks()
        connections = self.get_connections()
        store.load(networks, connections)
        return len(networks), len(connections)

    def get_networks(self) -> List[NetworkRecord]:
        try:
            with self._connection() as conn:
                rows = conn.execute("SELECT * FROM networks ORDER BY last_seen DESC").fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to read networks: {e}")
            return []
        return [NetworkRecord.from_dict(dict(row)) for row in rows]

    def get_connections(self) -> List[ConnectionRecord]:
        try:
            with self._connection() as conn:
                rows = conn.execute("SELECT * FROM connections ORDER BY id").fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to read connections: {e}")
            return []
        return [ConnectionRecord.from_dict(dict(row)) for row in rows]

    def _network_row(self, record: NetworkRecord) -> tuple:
        data = record.to_dict()
        data["is_secured"] = int(record.is_secured)
        data["is_connected"] = int(record.is_connected)
        data["is_available"] = int(record.is_available)
        return tuple(data[col] for col in self.NETWORK_COLUMNS)

    def _connection_row(self, record: ConnectionRecord) -> tuple:
        data = record.to_dict()
        data["is_currently_connected"] = int(record.is_currently_connected)
        return tuple(data[col] for col in self.CONNECTION_COLUMNS)

    # === Maintenance Methods ===

    def check_cleanup(self) -> int:
        """Run cleanup at most once per day."""
        today = date.today()
        if self._last_cleanup_check == today:
            return 0
        self._last_cleanup_check = today
        return self.cleanup_old_data()

    def cleanup_old_data(self, keep_days: int = None) -> int:
        """Remove data older than specified days.

        Only unavailable networks and closed connections are eligible.

        Args:
            keep_days: Number of days to retain. Defaults to STORAGE.RETENTION_DAYS

        Returns:
            Number of records deleted
        """
        keep_days = keep_days or STORAGE.RETENTION_DAYS

        with self._lock:
            cutoff = (datetime.now() - timedelta(days=keep_days)).isoformat()

            try:
                with self._connection() as conn:
                    cursor = conn.execute(
                        "DELETE FROM networks WHERE is_available = 0 "
                        "AND is_connected = 0 AND last_seen < ?",
                        (cutoff,)
                    )
                    networks_deleted = cursor.rowcount

                    cursor = conn.execute(
                        "DELETE FROM connections WHERE is_currently_connected = 0 "
                        "AND COALESCE(disconnected_at, connected_at) < ?",
                        (cutoff,)
                    )
                    connections_deleted = cursor.rowcount

                    total_deleted = networks_deleted + connections_deleted

                    if total_deleted > 0:
                        logger.info(
                            f"Cleanup: removed {networks_deleted} networks, "
                            f"{connections_deleted} connections older than {keep_days} days"
                        )
                        conn.execute("VACUUM")

                    return total_deleted
            except sqlite3.Error as e:
                logger.error(f"Cleanup failed: {e}")
                return 0

    def flush(self) -> None:
        """Checkpoint the WAL so the main database file is current."""
        try:
            with self._connection() as conn:
                conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.debug("Database flushed")
        except sqlite3.Error as e:
            logger.error(f"Flush failed: {e}")

    def backup(self, backup_path: Optional[Path] = None) -> Path:
        """Create a backup of the database.

        Args:
            backup_path: Optional custom backup path. If not provided,
                        creates backup in data_dir with timestamp.

        Returns:
            Path to the backup file
        """
        if backup_path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            backup_path = self.data_dir / f"backup_{timestamp}.db"

        backup_path = Path(backup_path)

        try:
            with self._lock:
                with self._connection() as conn:
                    conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                shutil.copy2(self.db_path, backup_path)

            logger.info(f"Database backed up to {backup_path}")
            return backup_path
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Backup failed: {e}")
            raise StorageError(f"Failed to create backup: {e}")

    def get_database_stats(self) -> Dict:
        """Get statistics about the database.

        Returns:
            Dict with record counts and file size
        """
        try:
            with self._connection() as conn:
                networks_count = conn.execute("SELECT COUNT(*) FROM networks").fetchone()[0]
                connections_count = conn.execute("SELECT COUNT(*) FROM connections").fetchone()[0]
                open_count = conn.execute(
                    "SELECT COUNT(*) FROM connections WHERE is_currently_connected = 1"
                ).fetchone()[0]

            file_size = self.db_path.stat().st_size if self.db_path.exists() else 0

            return {
                "networks_count": networks_count,
                "connections_count": connections_count,
                "open_connections": open_count,
                "file_size_bytes": file_size,
                "file_size_mb": round(file_size / (1024 * 1024), 2)
            }
        except sqlite3.Error as e:
            logger.error(f"Failed to get database stats: {e}")
            return {}
