"""Per-device blocking and daily time limits.

A device is identified by its MAC across every ConnectionRecord the
store holds. Blocking installs firewall drop rules for the device's
current IP through the platform adapter; a daily time limit blocks the
device once its minutes online today reach the limit and lifts that block
again on the first check of a new day.

Block state and limits live in memory only, like the identity cache.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from config import BlockingFailed, DeviceError, DeviceNotFound, get_logger
from storage.models import ConnectionRecord, ConnectionStatus, normalize_mac

logger = get_logger(__name__)

HISTORY_LIMIT = 10
DEFAULT_BLOCK_REASON = "Blocked by administrator"
TIME_LIMIT_REASON = "Daily time limit reached"


class DeviceStatus(Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"
    TIME_LIMITED = "time_limited"


@dataclass
class DeviceActionResult:
    """Outcome of a block, unblock or time-limit request."""
    success: bool
    message: str
    mac: str
    action: str
    device_name: str = "Unknown"
    ip: Optional[str] = None
    reason: Optional[str] = None
    previous_status: Optional[DeviceStatus] = None
    new_status: Optional[DeviceStatus] = None
    error: Optional[str] = None  # Exception class name from config.exceptions
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def failure(cls, action: str, mac: str, exc: DeviceError, device_name: str = "Unknown",
                status: Optional[DeviceStatus] = None) -> 'DeviceActionResult':
        return cls(success=False, message=exc.message, mac=mac, action=action, device_name=device_name,
                   previous_status=status, new_status=status, error=type(exc).__name__)


@dataclass
class ManagedDevice:
    """One MAC folded over all of its connection records."""
    mac: str
    name: str
    device_type: str
    ip: str
    network_ssid: str
    connection_status: ConnectionStatus
    is_connected: bool
    last_activity: datetime
    total_data_usage_bytes: int = 0
    total_minutes: int = 0
    blocked: bool = False
    block_reason: Optional[str] = None
    blocked_at: Optional[datetime] = None
    daily_limit_minutes: Optional[int] = None
    minutes_used_today: int = 0


@dataclass
class DeviceStats:
    total_data_usage_bytes: int = 0
    total_minutes: int = 0
    average_session_minutes: int = 0
    session_count: int = 0
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None


@dataclass
class DeviceDetails:
    device: ManagedDevice
    history: List[ConnectionRecord]
    stats: DeviceStats


@dataclass
class _Block:
    ip: str
    reason: str
    blocked_at: datetime
    by_time_limit: bool = False


def calculate_device_stats(records: List[ConnectionRecord]) -> DeviceStats:
    """Totals over a device's records; the average is whole minutes per session."""
    if not records:
        return DeviceStats()
    total_minutes = sum(r.connection_duration_minutes for r in records)
    started = [r.connected_at for r in records]
    return DeviceStats(
        total_data_usage_bytes=sum(r.data_usage_bytes for r in records),
        total_minutes=total_minutes,
        average_session_minutes=total_minutes // len(records),
        session_count=len(records),
        first_seen=min(started),
        last_seen=max(started),
    )


class DeviceManager:
    """Blocks devices, tracks daily limits and summarizes per-device history."""

    def __init__(self, store, adapter):
        self._store = store
        self._adapter = adapter
        # Held across firewall commands so two requests never race on one rule
        self._lock = threading.RLock()
        self._blocks: Dict[str, _Block] = {}
        self._limits: Dict[str, int] = {}

    # === Queries ===

    def _status(self, mac: str) -> DeviceStatus:
        block = self._blocks.get(mac)
        if block is None:
            return DeviceStatus.ACTIVE
        return DeviceStatus.TIME_LIMITED if block.by_time_limit else DeviceStatus.BLOCKED

    def is_blocked(self, mac: str) -> bool:
        with self._lock:
            return normalize_mac(mac) in self._blocks

    def _summarize(self, mac: str, records: List[ConnectionRecord]) -> ManagedDevice:
        latest = max(records, key=lambda r: r.connected_at)
        with self._lock:
            block = self._blocks.get(mac)
            limit = self._limits.get(mac)
        return ManagedDevice(
            mac=mac,
            name=latest.device_name or "Unknown Device",
            device_type=latest.device_type,
            ip=latest.assigned_ip,
            network_ssid=latest.network_ssid,
            connection_status=latest.status,
            is_connected=any(r.is_currently_connected for r in records),
            last_activity=latest.connected_at,
            total_data_usage_bytes=sum(r.data_usage_bytes for r in records),
            total_minutes=sum(r.connection_duration_minutes for r in records),
            blocked=block is not None,
            block_reason=block.reason if block else None,
            blocked_at=block.blocked_at if block else None,
            daily_limit_minutes=limit,
            minutes_used_today=self._store.minutes_used_today(mac),
        )

    def get_managed_devices(self) -> List[ManagedDevice]:
        """Every device with a known MAC, most recently seen first."""
        grouped: Dict[str, List[ConnectionRecord]] = {}
        for record in self._store.get_connections():
            if record.device_mac:
                grouped.setdefault(record.device_mac, []).append(record)
        devices = [self._summarize(mac, records) for mac, records in grouped.items()]
        return sorted(devices, key=lambda d: d.last_activity, reverse=True)

    def get_device_details(self, mac: str) -> Optional[DeviceDetails]:
        """Summary, the newest connection records and lifetime stats, or None if unknown."""
        mac = normalize_mac(mac)
        records = self._store.get_device_history(mac)
        if not records:
            return None
        return DeviceDetails(
            device=self._summarize(mac, records),
            history=records[:HISTORY_LIMIT],
            stats=calculate_device_stats(records),
        )

    # === Blocking ===

    def block_device(self, mac: str, reason: Optional[str] = None) -> DeviceActionResult:
        """Drop traffic to and from a currently connected device."""
        return self._block(normalize_mac(mac), reason or DEFAULT_BLOCK_REASON, by_time_limit=False)

    def _block(self, mac: str, reason: str, by_time_limit: bool) -> DeviceActionResult:
        record = self._store.find_open_connection(mac=mac)
        if record is None:
            return DeviceActionResult.failure(
                "block", mac, DeviceNotFound("Device not found or not currently connected", {"mac": mac}),
            )

        with self._lock:
            previous = self._status(mac)
            existing = self._blocks.get(mac)
            if existing is not None and existing.ip == record.assigned_ip:
                return DeviceActionResult(
                    success=True, message="Device already blocked", mac=mac, action="block",
                    device_name=record.device_name, previous_status=previous, new_status=previous,
                )
            if existing is not None:
                # The device moved since it was blocked; the old rule is useless
                self._adapter.unblock_device(existing.ip)

            if not self._adapter.block_device(record.assigned_ip):
                exc = BlockingFailed("Failed to apply blocking rules", {"mac": mac, "ip": record.assigned_ip})
                logger.warning(f"Blocking {mac} at {record.assigned_ip} failed")
                return DeviceActionResult.failure("block", mac, exc, record.device_name, previous)

            self._blocks[mac] = _Block(record.assigned_ip, reason, datetime.now(), by_time_limit)
            status = self._status(mac)

        logger.info(f"Blocked {record.device_name or mac} ({mac}) at {record.assigned_ip}: {reason}")
        return DeviceActionResult(
            success=True, message="Device blocked successfully", mac=mac, action="block",
            device_name=record.device_name, ip=record.assigned_ip, reason=reason,
            previous_status=previous, new_status=status,
        )

    def unblock_device(self, mac: str) -> DeviceActionResult:
        """Remove the drop rules installed by block_device or a time limit."""
        mac = normalize_mac(mac)
        with self._lock:
            block = self._blocks.get(mac)
            previous = self._status(mac)
            if block is None:
                return DeviceActionResult.failure(
                    "unblock", mac, DeviceError("Device is not currently blocked", {"mac": mac}),
                    status=DeviceStatus.ACTIVE,
                )

            if not self._adapter.unblock_device(block.ip):
                exc = BlockingFailed("Failed to remove blocking rules", {"mac": mac, "ip": block.ip})
                logger.warning(f"Unblocking {mac} at {block.ip} failed")
                return DeviceActionResult.failure("unblock", mac, exc, status=previous)
            del self._blocks[mac]

        logger.info(f"Unblocked {mac} at {block.ip}")
        return DeviceActionResult(
            success=True, message="Device unblocked successfully", mac=mac, action="unblock",
            ip=block.ip, previous_status=previous, new_status=DeviceStatus.ACTIVE,
        )

    # === Time limits ===

    def set_time_limit(self, mac: str, daily_limit_minutes: Optional[int]) -> DeviceActionResult:
        """Set or clear (None) the device's daily allowance in minutes."""
        mac = normalize_mac(mac)
        if daily_limit_minutes is not None and daily_limit_minutes < 0:
            return DeviceActionResult.failure(
                "set_time_limit", mac,
                DeviceError("Daily limit cannot be negative", {"limit": daily_limit_minutes}),
            )
        with self._lock:
            previous = self._status(mac)
            if daily_limit_minutes is None:
                self._limits.pop(mac, None)
            else:
                self._limits[mac] = daily_limit_minutes
        message = ("Time limit removed" if daily_limit_minutes is None
                   else f"Daily limit: {daily_limit_minutes} minutes")
        logger.info(f"Time limit for {mac}: {daily_limit_minutes}")
        return DeviceActionResult(
            success=True, message=message, mac=mac, action="set_time_limit",
            previous_status=previous, new_status=previous,
        )

    def get_time_limit(self, mac: str) -> Optional[int]:
        with self._lock:
            return self._limits.get(normalize_mac(mac))

    def enforce_time_limits(self, now: Optional[datetime] = None) -> List[DeviceActionResult]:
        """Block devices over their limit and release limit blocks that no longer apply.

        Manual blocks are never lifted here.

        Returns:
            Results of the blocks and unblocks this call performed.
        """
        now = now or datetime.now()
        with self._lock:
            limits = dict(self._limits)
            limit_blocked: Set[str] = {mac for mac, b in self._blocks.items() if b.by_time_limit}
            manually_blocked: Set[str] = {mac for mac, b in self._blocks.items() if not b.by_time_limit}

        results = []
        for mac in limit_blocked:
            limit = limits.get(mac)
            if limit is None or self._store.minutes_used_today(mac, now) < limit:
                results.append(self.unblock_device(mac))

        for mac, limit in limits.items():
            if mac in limit_blocked or mac in manually_blocked:
                continue
            used = self._store.minutes_used_today(mac, now)
            if used >= limit and self._store.find_open_connection(mac=mac) is not None:
                logger.info(f"{mac} used {used} of {limit} minutes today")
                results.append(self._block(mac, TIME_LIMIT_REASON, by_time_limit=True))
        return results

    def unblock_all(self) -> int:
        """Remove every rule this process installed; block state is not persisted."""
        with self._lock:
            macs = list(self._blocks)
        return sum(1 for mac in macs if self.unblock_device(mac).success)
