"""Centralized constants and configuration for NetGuard.

This module contains the timeouts, intervals, probe lists and storage
settings used across the scan adapters, the discovery pipeline and the
state store. Centralizing them makes the code easier to maintain and
configure.

Usage:
    from config.constants import INTERVALS, NETWORK, STORAGE

    # Access values
    refresh = INTERVALS.NETWORK_REFRESH_SECONDS
    ports = NETWORK.PROBE_PORTS
"""
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Tuple

from config.exceptions import ConfigurationError


@dataclass(frozen=True)
class Intervals:
    """Time intervals for various operations (in seconds).

    All interval values are in seconds unless otherwise specified.
    """
    # Scheduler jobs
    NETWORK_REFRESH_SECONDS: float = 30.0    # Wi-Fi rescan + duration refresh
    DISCOVERY_SECONDS: float = 120.0         # LAN device discovery pass
    CLEANUP_SECONDS: float = 21600.0         # 6 hours

    # Data persistence
    SAVE_INTERVAL_SECONDS: float = 30.0

    # Network record staleness window
    STALE_NETWORK_SECONDS: float = 120.0     # 2 minutes

    # Overview triggers a discovery refresh when older than this
    OVERVIEW_STALE_SECONDS: float = 300.0

    # Bounded waits for externally triggered work
    DISCOVERY_WAIT_SECONDS: float = 20.0
    SCAN_WAIT_SECONDS: float = 20.0

    # Connection lifecycle delays
    DISCONNECT_GRACE_SECONDS: float = 2.0
    CONNECT_SETTLE_SECONDS: float = 3.0
    RADIO_TOGGLE_SECONDS: float = 1.0
    NMCLI_RESCAN_SETTLE_SECONDS: float = 2.0

    # Subprocess timeouts
    SUBPROCESS_TIMEOUT_SECONDS: float = 5.0
    SCAN_TIMEOUT_SECONDS: float = 15.0
    CONNECT_TIMEOUT_SECONDS: float = 20.0
    PING_TIMEOUT_SECONDS: float = 1.5

    # Daily time-limit enforcement
    TIME_LIMIT_CHECK_SECONDS: float = 60.0


@dataclass(frozen=True)
class StorageConfig:
    """Storage and file-related configuration."""
    # Directory and file names
    DATA_DIR_NAME: str = ".netguard"
    LOG_FILE: str = "netguard.log"

    # SQLite database
    DATABASE_FILE: str = "netguard.db"

    # Data retention
    RETENTION_DAYS: int = 90

    # Automatic cleanup
    CLEANUP_ON_STARTUP: bool = True

    # Log rotation
    LOG_MAX_BYTES: int = 5_000_000  # 5MB
    LOG_BACKUP_COUNT: int = 3


@dataclass(frozen=True)
class NetworkConfig:
    """Network-related configuration."""
    # Scan record defaults
    DEFAULT_SIGNAL: int = 50
    DEFAULT_SECURITY: str = "Open"
    DEFAULT_CHANNEL: str = "Unknown"
    DEFAULT_VENDOR: str = "Unknown"
    PLACEHOLDER_BSSID: str = "00:00:00:00:00:00"
    NETWORK_TYPE: str = "WiFi"
    FIVE_GHZ_MIN_CHANNEL: int = 36
    NOT_CONNECTED: str = "Not Connected"

    # Connect verification (reads of the OS current network)
    CONNECT_VERIFY_ATTEMPTS: int = 1

    # Fallback Wi-Fi interface names
    MACOS_WIFI_INTERFACE: str = "en0"
    LINUX_WIFI_INTERFACES: Tuple[str, ...] = ("wlan0", "wlp2s0", "wlp3s0", "wifi0")

    # Ping sweep
    PING_SWEEP_WORKERS: int = 64
    PING_SWEEP_RANGES: Tuple[Tuple[int, int], ...] = (
        (1, 1),
        (254, 254),
        (2, 50),
        (100, 200),
        (220, 240),
    )

    # Port probe
    PORT_PROBE_RANGE: Tuple[int, int] = (1, 20)
    PORT_PROBE_TIMEOUT: float = 0.3
    PROBE_PORTS: Tuple[int, ...] = (
        80, 443, 22, 445, 139, 8080, 3389, 53, 23, 21, 25, 110, 143, 161,
    )
    PORT_SERVICE_HINTS: Tuple[Tuple[int, str], ...] = (
        (80, "http"),
        (443, "https"),
        (22, "ssh"),
        (445, "smb"),
        (139, "netbios"),
        (8080, "http-alt"),
        (3389, "rdp"),
        (53, "dns"),
        (23, "telnet"),
        (21, "ftp"),
        (25, "smtp"),
        (110, "pop3"),
        (143, "imap"),
        (161, "snmp"),
    )

    # Neighborhood broadcast
    MULTICAST_ADDRESSES: Tuple[str, ...] = ("224.0.0.251", "224.0.0.1")
    NETBIOS_PORT: int = 137

    # Identity resolution
    HOSTNAME_RESOLVE_TIMEOUT: float = 2.0
    IDENTITY_COMMAND_TIMEOUT: float = 5.0
    BEHAVIOR_PORT_TIMEOUT: float = 1.0
    SNMP_COMMUNITY: str = "public"
    SNMP_OIDS: Tuple[str, ...] = (
        "1.3.6.1.2.1.1.5.0",  # sysName
        "1.3.6.1.2.1.1.1.0",  # sysDescr
        "1.3.6.1.2.1.1.4.0",  # sysContact
    )
    SSDP_ADDRESS: Tuple[str, int] = ("239.255.255.250", 1900)
    SSDP_TIMEOUT: float = 3.0
    BANNER_TIMEOUT: float = 2.0
    DHCP_LEASE_FILES: Tuple[str, ...] = (
        "/var/lib/dhcp/dhcpd.leases",
        "/var/lib/dhcpcd5/dhcpcd.leases",
        "/var/lib/misc/dnsmasq.leases",
        "/tmp/dhcp.leases",
    )


# Global instances - import these
INTERVALS = Intervals()
STORAGE = StorageConfig()
NETWORK = NetworkConfig()


# Allowed commands for subprocess safety
ALLOWED_SUBPROCESS_COMMANDS = frozenset({
    # Wi-Fi scan / association
    'netsh',
    'airport',
    'system_profiler',
    'networksetup',
    'nmcli',
    'iwlist',
    'iwconfig',
    'iwgetid',
    # Neighbor tables and reachability
    'arp',
    'ip',
    'ping',
    # Identity resolution
    'nslookup',
    'host',
    'dig',
    'dns-sd',
    'avahi-resolve',
    'snmpget',
    'nbtstat',
    'nmblookup',
    # Device blocking
    'iptables',
    'pfctl',
})


def get_data_dir() -> Path:
    """Return the data directory, honouring NETGUARD_DATA_DIR."""
    override = os.environ.get("NETGUARD_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / STORAGE.DATA_DIR_NAME


def is_debug_enabled() -> bool:
    """Return True when NETGUARD_DEBUG asks for debug logging.

    Raises:
        ConfigurationError: If the variable holds an unrecognized value.
    """
    value = os.environ.get("NETGUARD_DEBUG", "").strip().lower()
    if value in ("", "0", "false", "no", "off"):
        return False
    if value in ("1", "true", "yes", "on"):
        return True
    raise ConfigurationError("Invalid NETGUARD_DEBUG value", {"value": value})


def load_overrides(env: Dict[str, str] = None) -> Intervals:
    """Build an Intervals instance with NETGUARD_<FIELD> overrides applied.

    Only scheduler and wait intervals may be overridden, e.g.
    ``NETGUARD_DISCOVERY_SECONDS=300``.

    Raises:
        ConfigurationError: If an override is not a positive number.
    """
    env = os.environ if env is None else env
    overrides = {}
    for name in ("NETWORK_REFRESH_SECONDS", "DISCOVERY_SECONDS", "CLEANUP_SECONDS",
                 "SAVE_INTERVAL_SECONDS", "DISCOVERY_WAIT_SECONDS", "SCAN_WAIT_SECONDS",
                 "TIME_LIMIT_CHECK_SECONDS"):
        raw = env.get(f"NETGUARD_{name}")
        if raw is None:
            continue
        try:
            value = float(raw)
        except ValueError:
            raise ConfigurationError(f"Invalid value for {name}", {"value": raw})
        if value <= 0:
            raise ConfigurationError(f"{name} must be positive", {"value": value})
        overrides[name] = value
    return replace(INTERVALS, **overrides) if overrides else INTERVALS
