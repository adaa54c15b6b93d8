"""Records held by the state store.

NetworkRecord is keyed by SSID; ConnectionRecord by an auto-assigned id.
Both serialize to plain dicts for the SQLite snapshot.
"""
import re
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Optional

from config import NETWORK

_IP_RE = re.compile(r'^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$')


def normalize_mac(mac_address: str) -> str:
    """Normalize MAC address to XX:XX:XX:XX:XX:XX format."""
    mac_clean = mac_address.strip().upper().replace("-", ":").replace(".", ":")
    parts = mac_clean.split(":")
    if len(parts) == 6:
        return ":".join(p.zfill(2) for p in parts)
    if len(parts) == 3 and all(len(p) == 4 for p in parts):
        # Cisco style aabb.ccdd.eeff
        flat = "".join(parts)
        return ":".join(flat[i:i + 2] for i in range(0, 12, 2))
    return mac_clean


def is_ip_address(value: str) -> bool:
    """True for a dotted IPv4 string."""
    return bool(value) and bool(_IP_RE.match(value.strip()))


def last_octet(ip: str) -> str:
    """Return the part after the last dot, e.g. '40' for 192.168.1.40."""
    return ip[ip.rfind('.') + 1:]


def _parse_dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class ConnectionStatus(Enum):
    """Lifecycle status of a ConnectionRecord."""
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    FAILED = "FAILED"


@dataclass
class NetworkRecord:
    """A Wi-Fi network seen by a scan."""
    ssid: str
    bssid: str = NETWORK.PLACEHOLDER_BSSID
    signal_strength: int = NETWORK.DEFAULT_SIGNAL
    frequency: str = "2.4GHz"
    security: str = NETWORK.DEFAULT_SECURITY
    is_secured: bool = False
    network_type: str = NETWORK.NETWORK_TYPE
    channel: str = NETWORK.DEFAULT_CHANNEL
    vendor: str = NETWORK.DEFAULT_VENDOR
    is_connected: bool = False
    is_available: bool = True
    first_detected: datetime = field(default_factory=datetime.now)
    last_seen: datetime = field(default_factory=datetime.now)
    location: Optional[str] = None

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["first_detected"] = self.first_detected.isoformat()
        data["last_seen"] = self.last_seen.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'NetworkRecord':
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for key in ("first_detected", "last_seen"):
            if key in kwargs:
                kwargs[key] = _parse_dt(kwargs[key])
        kwargs["is_secured"] = bool(kwargs.get("is_secured", False))
        kwargs["is_connected"] = bool(kwargs.get("is_connected", False))
        kwargs["is_available"] = bool(kwargs.get("is_available", True))
        return cls(**kwargs)


@dataclass
class ConnectionRecord:
    """A device's presence on a network, or the host's own association."""
    network_ssid: str
    device_mac: str
    assigned_ip: str
    device_name: str = ""
    device_type: str = "unknown"
    id: Optional[int] = None
    connected_at: datetime = field(default_factory=datetime.now)
    disconnected_at: Optional[datetime] = None
    is_currently_connected: bool = True
    data_usage_bytes: int = 0
    connection_duration_minutes: int = 0
    status: ConnectionStatus = ConnectionStatus.CONNECTING
    disconnection_reason: Optional[str] = None

    def __post_init__(self):
        if self.device_mac:
            self.device_mac = normalize_mac(self.device_mac)

    def close(self, reason: str, status: ConnectionStatus = ConnectionStatus.DISCONNECTED,
              when: Optional[datetime] = None) -> None:
        """Mark this record as no longer connected."""
        when = when or datetime.now()
        self.is_currently_connected = False
        self.disconnected_at = when
        self.status = status
        self.disconnection_reason = reason
        self.refresh_duration(when)

    def refresh_duration(self, now: Optional[datetime] = None) -> None:
        """Recompute duration in whole minutes since connected_at."""
        end = now or self.disconnected_at or datetime.now()
        self.connection_duration_minutes = max(0, int((end - self.connected_at).total_seconds() // 60))

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["status"] = self.status.value
        data["connected_at"] = self.connected_at.isoformat()
        data["disconnected_at"] = self.disconnected_at.isoformat() if self.disconnected_at else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'ConnectionRecord':
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["status"] = ConnectionStatus(kwargs.get("status", ConnectionStatus.CONNECTING.value))
        kwargs["connected_at"] = _parse_dt(kwargs.get("connected_at")) or datetime.now()
        kwargs["disconnected_at"] = _parse_dt(kwargs.get("disconnected_at"))
        kwargs["is_currently_connected"] = bool(kwargs.get("is_currently_connected", False))
        return cls(**kwargs)
