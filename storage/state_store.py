"""In-memory network/connection state store.

The store is the single read surface for everything above the discovery
pipeline. All mutation goes through methods that hold one re-entrant
lock, and every read hands back copies so callers can never mutate
shared state behind the lock.

Invariants kept here:
- NetworkRecords are keyed by SSID; ``first_detected`` never changes.
- At most one NetworkRecord has ``is_connected=True``.
- Per device MAC, at most one ConnectionRecord is currently connected.
- ``session`` changes whenever the connected network changes or every
  record is closed; device upserts tagged with an older session are refused.
"""
import copy
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from config import INTERVALS, STORAGE, get_logger
from storage.models import ConnectionRecord, ConnectionStatus, NetworkRecord, normalize_mac

logger = get_logger(__name__)


class StateStore:
    """Thread-safe holder of NetworkRecord and ConnectionRecord sets."""

    def __init__(self):
        self._lock = threading.RLock()
        self._networks: Dict[str, NetworkRecord] = {}
        self._connections: Dict[int, ConnectionRecord] = {}
        self._next_id = 1
        self._dirty = False
        self._session = 0
        self._close_listeners: List[Callable[[ConnectionRecord], None]] = []

    # ------------------------------------------------------------------
    # Session and close notifications
    # ------------------------------------------------------------------

    @property
    def session(self) -> int:
        """Counter identifying the current association."""
        with self._lock:
            return self._session

    def add_close_listener(self, callback: Callable[[ConnectionRecord], None]) -> None:
        """Call ``callback`` with a copy of every record that gets closed."""
        self._close_listeners.append(callback)

    def _notify_closed(self, records: List[ConnectionRecord]) -> None:
        for record in records:
            for callback in self._close_listeners:
                try:
                    callback(record)
                except Exception as e:
                    logger.error(f"Close listener failed for record {record.id}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    def upsert_network(self, scanned: NetworkRecord, now: Optional[datetime] = None) -> NetworkRecord:
        """Insert a scanned network or refresh the existing record for its SSID.

        Signal, security, channel and frequency come from the new sighting;
        ``first_detected`` and ``is_connected`` are preserved.
        """
        now = now or datetime.now()
        with self._lock:
            existing = self._networks.get(scanned.ssid)
            if existing is None:
                record = copy.copy(scanned)
                record.first_detected = record.first_detected or now
                record.last_seen = now
                record.is_available = True
                record.is_connected = False
                self._networks[record.ssid] = record
                logger.debug(f"New network: {record.ssid} ({record.signal_strength}%)")
            else:
                existing.signal_strength = scanned.signal_strength
                existing.security = scanned.security
                existing.is_secured = scanned.is_secured
                existing.channel = scanned.channel
                existing.frequency = scanned.frequency
                if scanned.bssid != existing.bssid and scanned.bssid:
                    existing.bssid = scanned.bssid
                existing.last_seen = now
                existing.is_available = True
                record = existing
            self._dirty = True
            return copy.copy(record)

    def mark_stale_networks(self, window_seconds: float = INTERVALS.STALE_NETWORK_SECONDS,
                            now: Optional[datetime] = None) -> int:
        """Flag networks not seen within the window as unavailable.

        Returns:
            Number of records newly marked unavailable.
        """
        cutoff = (now or datetime.now()) - timedelta(seconds=window_seconds)
        marked = 0
        with self._lock:
            for record in self._networks.values():
                if record.is_available and record.last_seen < cutoff:
                    record.is_available = False
                    marked += 1
            if marked:
                self._dirty = True
        if marked:
            logger.debug(f"Marked {marked} networks unavailable")
        return marked

    def get_network(self, ssid: str) -> Optional[NetworkRecord]:
        with self._lock:
            record = self._networks.get(ssid)
            return copy.copy(record) if record else None

    def get_networks(self, available_only: bool = False) -> List[NetworkRecord]:
        """Return networks sorted by signal strength, strongest first."""
        with self._lock:
            records = [copy.copy(r) for r in self._networks.values()
                       if r.is_available or not available_only]
        return sorted(records, key=lambda r: r.signal_strength, reverse=True)

    def set_connected(self, ssid: Optional[str]) -> None:
        """Make ``ssid`` the only connected network (None clears all)."""
        with self._lock:
            current = next((r.ssid for r in self._networks.values() if r.is_connected), None)
            if current != ssid:
                self._session += 1
            for record in self._networks.values():
                record.is_connected = ssid is not None and record.ssid == ssid
            self._dirty = True

    def get_connected_network(self) -> Optional[NetworkRecord]:
        with self._lock:
            for record in self._networks.values():
                if record.is_connected:
                    return copy.copy(record)
        return None

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _allocate(self, record: ConnectionRecord) -> ConnectionRecord:
        record.id = self._next_id
        self._next_id += 1
        self._connections[record.id] = record
        self._dirty = True
        return record

    def _find_open(self, mac: Optional[str] = None, ip: Optional[str] = None) -> Optional[ConnectionRecord]:
        if mac:
            mac = normalize_mac(mac)
            for record in self._connections.values():
                if record.is_currently_connected and record.device_mac == mac:
                    return record
        if ip:
            for record in self._connections.values():
                if record.is_currently_connected and record.assigned_ip == ip:
                    return record
        return None

    def find_open_connection(self, mac: Optional[str] = None,
                             ip: Optional[str] = None) -> Optional[ConnectionRecord]:
        """Find the open record for a MAC, falling back to IP."""
        with self._lock:
            record = self._find_open(mac, ip)
            return copy.copy(record) if record else None

    def open_connection(self, network_ssid: str, device_mac: str, assigned_ip: str,
                        device_name: str = "", device_type: str = "unknown",
                        status: ConnectionStatus = ConnectionStatus.CONNECTED) -> ConnectionRecord:
        """Create a new open record, closing any open record for the same MAC."""
        with self._lock:
            superseded = []
            if device_mac:
                previous = self._find_open(mac=device_mac)
                if previous is not None:
                    previous.close("superseded")
                    superseded.append(copy.copy(previous))
            record = self._allocate(ConnectionRecord(
                network_ssid=network_ssid,
                device_mac=device_mac,
                assigned_ip=assigned_ip,
                device_name=device_name,
                device_type=device_type,
                status=status,
            ))
            created = copy.copy(record)
        self._notify_closed(superseded)
        return created

    def record_failed_connection(self, network_ssid: str, device_mac: str, assigned_ip: str,
                                 device_name: str, reason: str) -> ConnectionRecord:
        """Store a closed FAILED record for a connect attempt that did not verify."""
        with self._lock:
            record = ConnectionRecord(
                network_ssid=network_ssid,
                device_mac=device_mac,
                assigned_ip=assigned_ip,
                device_name=device_name,
                is_currently_connected=False,
                status=ConnectionStatus.FAILED,
                disconnection_reason=reason,
                disconnected_at=datetime.now(),
            )
            return copy.copy(self._allocate(record))

    def upsert_device(self, network_ssid: str, device_mac: str, assigned_ip: str,
                      device_name: str, device_type: str,
                      session: Optional[int] = None) -> Tuple[Optional[ConnectionRecord], bool]:
        """Update the open record for a discovered device, or create one.

        Matching is by MAC when known, otherwise by IP. When ``session`` is
        given and no longer current the write is refused.

        Returns:
            (record copy, created) tuple; (None, False) when refused.
        """
        with self._lock:
            if session is not None and session != self._session:
                logger.debug(f"Dropping stale discovery result for {assigned_ip}")
                return None, False
            record = self._find_open(mac=device_mac, ip=assigned_ip)
            if record is not None:
                record.device_name = device_name
                record.device_type = device_type
                record.assigned_ip = assigned_ip
                if device_mac:
                    record.device_mac = normalize_mac(device_mac)
                record.network_ssid = network_ssid
                record.status = ConnectionStatus.CONNECTED
                record.refresh_duration()
                self._dirty = True
                return copy.copy(record), False

            record = self._allocate(ConnectionRecord(
                network_ssid=network_ssid,
                device_mac=device_mac,
                assigned_ip=assigned_ip,
                device_name=device_name,
                device_type=device_type,
                status=ConnectionStatus.CONNECTED,
            ))
            return copy.copy(record), True

    def get_open_connections(self, network_ssid: Optional[str] = None) -> List[ConnectionRecord]:
        with self._lock:
            return [copy.copy(r) for r in self._connections.values()
                    if r.is_currently_connected
                    and (network_ssid is None or r.network_ssid == network_ssid)]

    def get_connections(self) -> List[ConnectionRecord]:
        with self._lock:
            return [copy.copy(r) for r in self._connections.values()]

    def close_connections(self, network_ssid: Optional[str] = None, reason: str = "disconnected",
                          exclude_ssid: Optional[str] = None) -> List[ConnectionRecord]:
        """Close open records, optionally only for one network or all but one.

        Returns:
            Copies of the records that were closed.
        """
        now = datetime.now()
        closed = []
        with self._lock:
            for record in self._connections.values():
                if not record.is_currently_connected:
                    continue
                if network_ssid is not None and record.network_ssid != network_ssid:
                    continue
                if exclude_ssid is not None and record.network_ssid == exclude_ssid:
                    continue
                record.close(reason, when=now)
                closed.append(copy.copy(record))
            if closed:
                self._dirty = True
            if network_ssid is None and exclude_ssid is None:
                self._session += 1
        if closed:
            logger.info(f"Closed {len(closed)} connection(s): {reason}")
            self._notify_closed(closed)
        return closed

    def update_durations(self, now: Optional[datetime] = None) -> int:
        """Refresh duration minutes on every open record."""
        now = now or datetime.now()
        with self._lock:
            open_records = [r for r in self._connections.values() if r.is_currently_connected]
            for record in open_records:
                record.refresh_duration(now)
            if open_records:
                self._dirty = True
            return len(open_records)

    def add_data_usage(self, connection_id: int, byte_count: int) -> None:
        with self._lock:
            record = self._connections.get(connection_id)
            if record is not None:
                record.data_usage_bytes += byte_count
                self._dirty = True

    def count_current_connections(self) -> int:
        with self._lock:
            return sum(1 for r in self._connections.values() if r.is_currently_connected)

    def total_data_usage_since(self, since: datetime) -> int:
        with self._lock:
            return sum(r.data_usage_bytes for r in self._connections.values()
                       if r.connected_at >= since)

    def get_device_history(self, device_mac: str, limit: Optional[int] = None) -> List[ConnectionRecord]:
        """Every record for ``device_mac``, newest connection first."""
        mac = normalize_mac(device_mac)
        with self._lock:
            records = [copy.copy(r) for r in self._connections.values() if r.device_mac == mac]
        records.sort(key=lambda r: r.connected_at, reverse=True)
        return records[:limit] if limit is not None else records

    def minutes_used_today(self, device_mac: str, now: Optional[datetime] = None) -> int:
        """Minutes the device has been online across records that started today.

        Open records count up to ``now`` rather than their last refresh.
        """
        now = now or datetime.now()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        mac = normalize_mac(device_mac)
        total = 0
        with self._lock:
            for record in self._connections.values():
                if record.device_mac != mac or record.connected_at < start_of_day:
                    continue
                if record.is_currently_connected:
                    total += max(0, int((now - record.connected_at).total_seconds() // 60))
                else:
                    total += record.connection_duration_minutes
        return total

    def get_recently_disconnected(self, hours: float = 24.0) -> List[ConnectionRecord]:
        cutoff = datetime.now() - timedelta(hours=hours)
        with self._lock:
            records = [copy.copy(r) for r in self._connections.values()
                       if not r.is_currently_connected
                       and r.disconnected_at is not None
                       and r.disconnected_at >= cutoff]
        return sorted(records, key=lambda r: r.disconnected_at, reverse=True)

    # ------------------------------------------------------------------
    # Retention and snapshots
    # ------------------------------------------------------------------

    def cleanup_old_records(self, keep_days: int = None, now: Optional[datetime] = None) -> int:
        """Drop unavailable networks and closed connections older than ``keep_days``.

        Returns:
            Number of records removed.
        """
        keep_days = keep_days or STORAGE.RETENTION_DAYS
        cutoff = (now or datetime.now()) - timedelta(days=keep_days)
        with self._lock:
            stale_networks = [ssid for ssid, r in self._networks.items()
                              if not r.is_available and not r.is_connected and r.last_seen < cutoff]
            for ssid in stale_networks:
                del self._networks[ssid]

            stale_connections = [cid for cid, r in self._connections.items()
                                 if not r.is_currently_connected
                                 and (r.disconnected_at or r.connected_at) < cutoff]
            for cid in stale_connections:
                del self._connections[cid]

            removed = len(stale_networks) + len(stale_connections)
            if removed:
                self._dirty = True

        if removed:
            logger.info(
                f"Cleanup: removed {len(stale_networks)} networks, "
                f"{len(stale_connections)} connections older than {keep_days} days"
            )
        return removed

    def snapshot(self) -> Tuple[List[NetworkRecord], List[ConnectionRecord]]:
        """Copy of all records, for persistence."""
        with self._lock:
            return ([copy.copy(r) for r in self._networks.values()],
                    [copy.copy(r) for r in self._connections.values()])

    def load(self, networks: Iterable[NetworkRecord], connections: Iterable[ConnectionRecord]) -> None:
        """Replace store contents with persisted records.

        Connected flags are cleared: the association is re-read from the OS
        after a restart.
        """
        with self._lock:
            self._networks = {}
            for record in networks:
                record.is_connected = False
                self._networks[record.ssid] = record
            self._connections = {}
            for record in connections:
                if record.id is None:
                    continue
                self._connections[record.id] = record
            self._next_id = max(self._connections, default=0) + 1
            self._dirty = False
        logger.info(f"Loaded {len(self._networks)} networks, {len(self._connections)} connections")

    @property
    def is_dirty(self) -> bool:
        with self._lock:
            return self._dirty

    def mark_clean(self) -> None:
        with self._lock:
            self._dirty = False
