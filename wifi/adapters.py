"""Platform Wi-Fi adapters.

One adapter is selected at startup from ``sys.platform`` and owns every
OS-specific command: scanning, association, the current SSID, the
neighbor (ARP) table and per-device firewall rules. Scans try a primary
tool, then a secondary one, and finally return an empty list; they never
raise to callers.
"""
import sys
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

import psutil

from config import (
    INTERVALS,
    NETWORK,
    LogContext,
    ScanError,
    ScanTimeout,
    ScanUnavailable,
    SubprocessError,
    ToolChecker,
    get_logger,
    get_subprocess_cache,
    run_command,
    run_with_fallback,
    safe_run,
)
from storage.models import NetworkRecord
from wifi import parsers

logger = get_logger(__name__)

BLOCK_RULE_PREFIX = "NetGuard-Block-"
BLOCK_TABLE = "netguard_blocked"


class PlatformAdapter(ABC):
    """Capability set shared by all OS variants."""

    name = "generic"

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep

    # === Scanning ===

    def scan_networks(self) -> List[NetworkRecord]:
        """Scan for networks with the primary tool, then the secondary one.

        Returns:
            Parsed records, or an empty list when both tools fail.
        """
        with LogContext(logger, f"Wi-Fi scan ({self.name})"):
            for label, scanner in (("primary", self._scan_primary), ("secondary", self._scan_secondary)):
                try:
                    records = scanner()
                except ScanError as e:
                    logger.debug(f"{label} scan failed: {e}")
                    continue
                logger.debug(f"{label} scan found {len(records)} networks")
                return records
        logger.warning(f"No Wi-Fi scan tool succeeded on {self.name}")
        return []

    @abstractmethod
    def _scan_primary(self) -> List[NetworkRecord]:
        ...

    @abstractmethod
    def _scan_secondary(self) -> List[NetworkRecord]:
        ...

    def _run_scan(self, cmd: List[str]) -> str:
        """Run a scan command, translating failures into scan errors."""
        try:
            result = safe_run(cmd, timeout=INTERVALS.SCAN_TIMEOUT_SECONDS)
        except SubprocessError as e:
            if e.timed_out:
                raise ScanTimeout(f"{cmd[0]} timed out", {"command": cmd}) from e
            raise ScanUnavailable(e.message, {"command": cmd}) from e
        if result.returncode != 0:
            raise ScanUnavailable(f"{cmd[0]} exited with {result.returncode}", {"stderr": result.stderr})
        return result.stdout

    # === Association ===

    @abstractmethod
    def current_network(self) -> Optional[str]:
        """Return the associated SSID, or None when not connected."""

    @abstractmethod
    def connect_command(self, ssid: str, password: Optional[str]) -> List[str]:
        ...

    @abstractmethod
    def disconnect_commands(self) -> List[List[str]]:
        ...

    def connect(self, ssid: str, password: Optional[str] = None) -> bool:
        """Issue the OS connect command. True on a zero exit code."""
        cmd = self.connect_command(ssid, password)
        return self._run_action(cmd, INTERVALS.CONNECT_TIMEOUT_SECONDS)

    def disconnect(self) -> bool:
        """Issue the OS disconnect command sequence. True if every step exits zero."""
        commands = self.disconnect_commands()
        for index, cmd in enumerate(commands):
            if index:
                self._sleep(INTERVALS.RADIO_TOGGLE_SECONDS)
            if not self._run_action(cmd, INTERVALS.SUBPROCESS_TIMEOUT_SECONDS):
                return False
        return True

    def _run_action(self, cmd: List[str], timeout: float) -> bool:
        try:
            result = safe_run(cmd, timeout=timeout)
        except SubprocessError as e:
            logger.warning(f"{cmd[0]} failed: {e.message}")
            return False
        if result.returncode != 0:
            # Never log the argv: it may hold a password
            logger.warning(f"{cmd[0]} exited with {result.returncode}: {(result.stderr or '').strip()[:200]}")
            return False
        return True

    # === Device blocking ===

    @abstractmethod
    def block_commands(self, ip: str) -> List[List[str]]:
        """Firewall commands that drop traffic to and from ``ip``."""

    @abstractmethod
    def unblock_commands(self, ip: str) -> List[List[str]]:
        ...

    def block_device(self, ip: str) -> bool:
        """Install the drop rules for ``ip``. True if every command exits zero."""
        return all(self._run_action(cmd, INTERVALS.SUBPROCESS_TIMEOUT_SECONDS)
                   for cmd in self.block_commands(ip))

    def unblock_device(self, ip: str) -> bool:
        """Remove the drop rules for ``ip``."""
        return all(self._run_action(cmd, INTERVALS.SUBPROCESS_TIMEOUT_SECONDS)
                   for cmd in self.unblock_commands(ip))

    # === Neighbor table ===

    @abstractmethod
    def read_arp_table(self) -> List[Tuple[str, str]]:
        """Return (ip, mac) pairs from the OS neighbor table."""

    def arp_lookup(self, ip: str) -> str:
        """Return the MAC for ``ip`` from the neighbor table, or '' if unknown."""
        for entry_ip, mac in self.read_arp_table():
            if entry_ip == ip:
                return mac
        return ""

    # === Reachability ===

    @abstractmethod
    def ping_command(self, ip: str, timeout: float) -> List[str]:
        ...

    def ping(self, ip: str, timeout: float = INTERVALS.PING_TIMEOUT_SECONDS) -> bool:
        """Send one echo request. True if the host answered."""
        try:
            result = safe_run(self.ping_command(ip, timeout), timeout=timeout + 1.0)
        except SubprocessError:
            return False
        return result.returncode == 0


class WindowsAdapter(PlatformAdapter):
    """netsh-based adapter."""

    name = "windows"

    def _scan_primary(self) -> List[NetworkRecord]:
        return parsers.parse_netsh_networks(
            self._run_scan(['netsh', 'wlan', 'show', 'networks', 'mode=bssid'])
        )

    def _scan_secondary(self) -> List[NetworkRecord]:
        raise ScanUnavailable("No secondary scan tool on Windows")

    def current_network(self) -> Optional[str]:
        return parsers.parse_netsh_current(run_command(['netsh', 'wlan', 'show', 'interfaces']))

    def connect_command(self, ssid: str, password: Optional[str]) -> List[str]:
        # netsh joins using a stored profile; the password is not passed on the command line
        return ['netsh', 'wlan', 'connect', f'name={ssid}']

    def disconnect_commands(self) -> List[List[str]]:
        return [['netsh', 'wlan', 'disconnect']]

    def block_commands(self, ip: str) -> List[List[str]]:
        rule = f"name={BLOCK_RULE_PREFIX}{ip}"
        return [
            ['netsh', 'advfirewall', 'firewall', 'add', 'rule', rule, f"dir={direction}",
             'action=block', f"remoteip={ip}"]
            for direction in ("in", "out")
        ]

    def unblock_commands(self, ip: str) -> List[List[str]]:
        # One delete removes the rule for both directions
        return [['netsh', 'advfirewall', 'firewall', 'delete', 'rule', f"name={BLOCK_RULE_PREFIX}{ip}"]]

    def read_arp_table(self) -> List[Tuple[str, str]]:
        return parsers.parse_arp_windows(run_command(['arp', '-a']))

    def ping_command(self, ip: str, timeout: float) -> List[str]:
        return ['ping', '-n', '1', '-w', str(int(timeout * 1000)), ip]


class MacOSAdapter(PlatformAdapter):
    """airport/networksetup-based adapter."""

    name = "macos"

    # Airport command path (removed in newer macOS versions)
    AIRPORT_PATH = '/System/Library/PrivateFrameworks/Apple80211.framework/Versions/Current/Resources/airport'

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        super().__init__(sleep)
        self._wifi_interface: Optional[str] = None

    @property
    def wifi_interface(self) -> str:
        """Wi-Fi device name (usually en0 or en1)."""
        if self._wifi_interface is None:
            interface = None
            try:
                # Hardware ports change very rarely - cache for 60 seconds
                result = get_subprocess_cache().run(['networksetup', '-listallhardwareports'], ttl=60.0)
                interface = parsers.parse_hardware_ports(result.stdout)
            except SubprocessError as e:
                logger.debug(f"Error finding WiFi interface: {e}")
            self._wifi_interface = interface or NETWORK.MACOS_WIFI_INTERFACE
        return self._wifi_interface

    def _scan_primary(self) -> List[NetworkRecord]:
        if not ToolChecker.has_tool(self.AIRPORT_PATH):
            raise ScanUnavailable("airport binary not present")
        return parsers.parse_airport_scan(self._run_scan([self.AIRPORT_PATH, '-s']))

    def _scan_secondary(self) -> List[NetworkRecord]:
        return parsers.parse_system_profiler(self._run_scan(['system_profiler', 'SPAirPortDataType']))

    def current_network(self) -> Optional[str]:
        return parsers.parse_airport_current(
            run_command(['networksetup', '-getairportnetwork', self.wifi_interface])
        )

    def connect_command(self, ssid: str, password: Optional[str]) -> List[str]:
        cmd = ['networksetup', '-setairportnetwork', self.wifi_interface, ssid]
        if password:
            cmd.append(password)
        return cmd

    def disconnect_commands(self) -> List[List[str]]:
        return [
            ['networksetup', '-setairportpower', self.wifi_interface, 'off'],
            ['networksetup', '-setairportpower', self.wifi_interface, 'on'],
        ]

    def block_commands(self, ip: str) -> List[List[str]]:
        # Expects a pf rule blocking the table, e.g. "block drop quick from <netguard_blocked> to any"
        return [['pfctl', '-t', BLOCK_TABLE, '-T', 'add', ip]]

    def unblock_commands(self, ip: str) -> List[List[str]]:
        return [['pfctl', '-t', BLOCK_TABLE, '-T', 'delete', ip]]

    def read_arp_table(self) -> List[Tuple[str, str]]:
        return parsers.parse_arp_unix(run_command(['arp', '-a']))

    def ping_command(self, ip: str, timeout: float) -> List[str]:
        return ['ping', '-c', '1', '-W', str(int(timeout * 1000)), ip]


class LinuxAdapter(PlatformAdapter):
    """nmcli/iwlist-based adapter."""

    name = "linux"

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        super().__init__(sleep)
        self._wifi_interface: Optional[str] = None

    @property
    def wifi_interface(self) -> str:
        """Wireless interface from iwconfig, then psutil ``wl*`` names, then wlan0."""
        if self._wifi_interface is None:
            found = parsers.parse_iwconfig_interfaces(run_command(['iwconfig']))
            if not found:
                try:
                    found = sorted(name for name in psutil.net_if_addrs() if name.startswith('wl'))
                except OSError as e:
                    logger.debug(f"psutil interface listing failed: {e}")
            self._wifi_interface = found[0] if found else NETWORK.LINUX_WIFI_INTERFACES[0]
            logger.debug(f"Using wireless interface {self._wifi_interface}")
        return self._wifi_interface

    def _scan_primary(self) -> List[NetworkRecord]:
        if not ToolChecker.has_tool('nmcli'):
            raise ScanUnavailable("nmcli not installed")
        # A failed rescan still leaves the cached list usable
        run_command(['nmcli', 'dev', 'wifi', 'rescan'], timeout=INTERVALS.SCAN_TIMEOUT_SECONDS)
        self._sleep(INTERVALS.NMCLI_RESCAN_SETTLE_SECONDS)
        return parsers.parse_nmcli(self._run_scan([
            'nmcli', '-t', '-f', 'IN-USE,BSSID,SSID,MODE,CHAN,RATE,SIGNAL,BARS,SECURITY',
            'dev', 'wifi', 'list',
        ]))

    def _scan_secondary(self) -> List[NetworkRecord]:
        return parsers.parse_iwlist(self._run_scan(['iwlist', self.wifi_interface, 'scan']))

    def current_network(self) -> Optional[str]:
        return parsers.parse_iwgetid(run_command(['iwgetid', '-r']))

    def connect_command(self, ssid: str, password: Optional[str]) -> List[str]:
        cmd = ['nmcli', 'dev', 'wifi', 'connect', ssid]
        if password:
            cmd.extend(['password', password])
        return cmd

    def disconnect_commands(self) -> List[List[str]]:
        return [['nmcli', 'dev', 'disconnect', self.wifi_interface]]

    def block_commands(self, ip: str) -> List[List[str]]:
        return [
            ['iptables', '-A', 'INPUT', '-s', ip, '-j', 'DROP'],
            ['iptables', '-A', 'OUTPUT', '-d', ip, '-j', 'DROP'],
        ]

    def unblock_commands(self, ip: str) -> List[List[str]]:
        return [
            ['iptables', '-D', 'INPUT', '-s', ip, '-j', 'DROP'],
            ['iptables', '-D', 'OUTPUT', '-d', ip, '-j', 'DROP'],
        ]

    def read_arp_table(self) -> List[Tuple[str, str]]:
        result = run_with_fallback([['ip', 'neigh', 'show'], ['arp', '-an']])
        return parsers.parse_arp_unix(result.stdout if result else "")

    def ping_command(self, ip: str, timeout: float) -> List[str]:
        return ['ping', '-c', '1', '-W', str(max(1, int(round(timeout)))), ip]


def get_platform_adapter(platform: Optional[str] = None) -> PlatformAdapter:
    """Select the adapter for ``platform`` (defaults to ``sys.platform``).

    Raises:
        ScanUnavailable: If the platform is not supported.
    """
    platform = platform or sys.platform
    if platform.startswith('win'):
        adapter = WindowsAdapter()
    elif platform == 'darwin':
        adapter = MacOSAdapter()
    elif platform.startswith('linux'):
        adapter = LinuxAdapter()
    else:
        raise ScanUnavailable(f"Unsupported platform: {platform}", {"platform": platform})
    logger.info(f"Using {adapter.name} Wi-Fi adapter")
    return adapter
