"""Parsers for platform Wi-Fi and neighbor-table command output.

Every parser takes raw stdout and returns plain records; none of them
raise on garbled input. Lines that cannot be understood are skipped and
missing fields fall back to the NETWORK defaults.
"""
import re
from typing import Dict, List, Optional, Tuple

from config import NETWORK, get_logger
from storage.models import NetworkRecord, normalize_mac

logger = get_logger(__name__)

# Patterns
MAC_PATTERN = re.compile(r'([0-9a-fA-F]{1,2}(?::[0-9a-fA-F]{1,2}){5})')
ARP_WINDOWS_PATTERN = re.compile(r'\s*(\d+\.\d+\.\d+\.\d+)\s+([0-9a-fA-F-]{17})\s+dynamic')
ARP_UNIX_PATTERN = re.compile(r'(\d+\.\d+\.\d+\.\d+).*?([0-9a-fA-F:]{11,17})')
NETSH_SSID_PATTERN = re.compile(r'^SSID\s+\d+\s*:\s*(.*)$')
NETSH_CURRENT_SSID_PATTERN = re.compile(r'^\s*SSID\s*:\s*(.+?)\s*$', re.MULTILINE)
IWLIST_CELL_SPLIT = re.compile(r'Cell\s+\d+\s*-\s*')

AIRPORT_NOT_ASSOCIATED = "You are not associated"
AIRPORT_CURRENT_PREFIX = "Current Wi-Fi Network: "
BROADCAST_MAC = "FF:FF:FF:FF:FF:FF"


def derive_frequency(channel) -> str:
    """Return '5GHz' for channel 36 and above, '2.4GHz' otherwise."""
    try:
        return "5GHz" if int(str(channel).strip()) >= NETWORK.FIVE_GHZ_MIN_CHANNEL else "2.4GHz"
    except (TypeError, ValueError):
        return "2.4GHz"


def is_open_network(security: Optional[str]) -> bool:
    """True when a security string describes an unencrypted network."""
    if not security:
        return True
    lowered = security.strip().lower()
    return not lowered or lowered == "--" or "none" in lowered or "open" in lowered


def is_valid_ssid(ssid: Optional[str]) -> bool:
    return bool(ssid) and ssid != "--" and "\\x00" not in ssid and "\x00" not in ssid


def _parse_signal(raw) -> int:
    try:
        return max(0, min(100, abs(int(str(raw).strip().rstrip('%')))))
    except (TypeError, ValueError):
        return NETWORK.DEFAULT_SIGNAL


def make_record(ssid: str, bssid: Optional[str] = None, signal=None, channel: Optional[str] = None,
                security: Optional[str] = None, frequency: Optional[str] = None) -> NetworkRecord:
    """Build a NetworkRecord applying defaults for missing fields."""
    security = security if security is not None else NETWORK.DEFAULT_SECURITY
    channel = channel or NETWORK.DEFAULT_CHANNEL
    return NetworkRecord(
        ssid=ssid,
        bssid=normalize_mac(bssid) if bssid else NETWORK.PLACEHOLDER_BSSID,
        signal_strength=_parse_signal(signal) if signal is not None else NETWORK.DEFAULT_SIGNAL,
        frequency=frequency or derive_frequency(channel),
        security=security,
        is_secured=not is_open_network(security),
        channel=channel,
    )


# === Windows ===

def parse_netsh_networks(output: str) -> List[NetworkRecord]:
    """Parse ``netsh wlan show networks mode=bssid``.

    An ``SSID n : name`` line starts a new network and flushes the previous
    one. When a network lists several BSSIDs the first BSSID and channel are
    kept and the strongest signal wins.
    """
    records = []
    current: Optional[Dict[str, str]] = None

    def flush():
        if current is not None and is_valid_ssid(current.get("ssid")):
            records.append(make_record(
                current["ssid"],
                bssid=current.get("bssid"),
                signal=current.get("signal"),
                channel=current.get("channel"),
                security=current.get("security"),
            ))

    for raw_line in (output or "").splitlines():
        line = raw_line.strip()
        match = NETSH_SSID_PATTERN.match(line)
        if match:
            flush()
            current = {"ssid": match.group(1).strip()}
            continue
        if current is None or ":" not in line:
            continue

        key, _, value = line.partition(":")
        key = key.strip().lower()
        value = value.strip()

        if key == "authentication":
            current["security"] = value
        elif key.startswith("bssid") and "bssid" not in current:
            current["bssid"] = value
        elif key == "signal":
            if "signal" not in current or _parse_signal(value) > _parse_signal(current["signal"]):
                current["signal"] = value
        elif key == "channel" and "channel" not in current:
            current["channel"] = value

    flush()
    return records


def parse_netsh_current(output: str) -> Optional[str]:
    """Return the SSID from ``netsh wlan show interfaces`` (never the BSSID line)."""
    match = NETSH_CURRENT_SSID_PATTERN.search(output or "")
    if match:
        ssid = match.group(1).strip()
        return ssid if is_valid_ssid(ssid) else None
    return None


# === macOS ===

def parse_airport_scan(output: str) -> List[NetworkRecord]:
    """Parse ``airport -s``.

    Columns are SSID, BSSID, RSSI, CHANNEL, HT, CC, SECURITY. The BSSID is
    located by pattern so SSIDs containing spaces survive.
    """
    records = []
    lines = (output or "").splitlines()
    for line in lines[1:]:
        parts = line.split()
        if len(parts) < 6:
            continue

        match = MAC_PATTERN.search(line)
        if match:
            ssid = line[:match.start()].strip()
            bssid = match.group(1)
            rest = line[match.end():].split()
        else:
            ssid, bssid, rest = parts[0], None, parts[2:]

        if len(rest) < 2 or not is_valid_ssid(ssid):
            continue

        channel = rest[1].split(",")[0]
        security = " ".join(rest[4:]) if len(rest) > 4 else "NONE"
        records.append(make_record(ssid, bssid=bssid, signal=rest[0], channel=channel, security=security))
    return records


def parse_system_profiler(output: str) -> List[NetworkRecord]:
    """Parse ``system_profiler SPAirPortDataType`` "Other Local Wi-Fi Networks" blocks."""
    records = []
    lines = (output or "").splitlines()
    base_indent = None
    entry: Optional[Dict[str, str]] = None
    entry_indent = None

    def flush():
        if entry is not None and is_valid_ssid(entry.get("ssid")):
            channel_field = entry.get("channel", "")
            channel = channel_field.split()[0] if channel_field else None
            frequency = None
            if "5GHz" in channel_field:
                frequency = "5GHz"
            elif "2GHz" in channel_field or "2.4GHz" in channel_field:
                frequency = "2.4GHz"
            signal = None
            signal_match = re.search(r'(-?\d+)\s*dBm', entry.get("signal / noise", ""))
            if signal_match:
                signal = signal_match.group(1)
            records.append(make_record(
                entry["ssid"],
                signal=signal,
                channel=channel,
                security=entry.get("security"),
                frequency=frequency,
            ))

    for line in lines:
        if not line.strip():
            continue
        indent = len(line) - len(line.lstrip())
        stripped = line.strip()

        if stripped.startswith("Other Local Wi-Fi Networks"):
            base_indent = indent
            entry_indent = None
            continue
        if base_indent is None:
            continue
        if indent <= base_indent:
            flush()
            entry = None
            base_indent = None
            continue

        if stripped.endswith(":") and (entry_indent is None or indent <= entry_indent):
            flush()
            entry = {"ssid": stripped[:-1].strip()}
            entry_indent = indent
        elif entry is not None and ":" in stripped:
            key, _, value = stripped.partition(":")
            entry[key.strip().lower()] = value.strip()

    flush()
    return records


def parse_airport_current(output: str) -> Optional[str]:
    """Return the SSID from ``networksetup -getairportnetwork``."""
    text = (output or "").strip()
    if not text or AIRPORT_NOT_ASSOCIATED in text:
        return None
    if text.startswith(AIRPORT_CURRENT_PREFIX):
        text = text[len(AIRPORT_CURRENT_PREFIX):].strip()
    elif ":" in text:
        return None
    return text if is_valid_ssid(text) else None


def parse_hardware_ports(output: str) -> Optional[str]:
    """Find the Wi-Fi device in ``networksetup -listallhardwareports``."""
    lines = (output or "").split('\n')
    for i, line in enumerate(lines):
        if 'Wi-Fi' in line or 'AirPort' in line:
            # Next line should have "Device: enX"
            if i + 1 < len(lines):
                match = re.search(r'Device:\s*(\w+)', lines[i + 1])
                if match:
                    return match.group(1)
    return None


# === Linux ===

def _split_terse(line: str) -> List[str]:
    """Split an nmcli terse line on unescaped colons."""
    return [field.replace('\\:', ':') for field in re.split(r'(?<!\\):', line)]


def parse_nmcli(output: str) -> List[NetworkRecord]:
    """Parse ``nmcli -t -f IN-USE,BSSID,SSID,MODE,CHAN,RATE,SIGNAL,BARS,SECURITY dev wifi list``."""
    records = []
    for line in (output or "").splitlines():
        if not line.strip():
            continue
        fields = _split_terse(line)
        if len(fields) < 9:
            continue
        _in_use, bssid, ssid, _mode, chan, _rate, signal, _bars = fields[:8]
        security = ":".join(fields[8:]).strip() or "--"
        ssid = ssid.strip()
        if not is_valid_ssid(ssid):
            continue
        records.append(make_record(ssid, bssid=bssid, signal=signal, channel=chan.strip(), security=security))
    return records


def parse_iwlist(output: str) -> List[NetworkRecord]:
    """Parse ``iwlist <iface> scan`` cell blocks."""
    records = []
    for cell in IWLIST_CELL_SPLIT.split(output or "")[1:]:
        ssid_match = re.search(r'ESSID:"(.*?)"', cell)
        if not ssid_match:
            continue
        ssid = ssid_match.group(1)
        if not is_valid_ssid(ssid):
            continue

        bssid_match = re.search(r'Address:\s*([0-9A-Fa-f:]{17})', cell)
        signal_match = re.search(r'Signal level[=:]\s*(-?\d+)', cell)
        channel_match = re.search(r'Channel[:\s]+(\d+)', cell)
        encrypted = re.search(r'Encryption key:\s*on', cell) is not None

        records.append(make_record(
            ssid,
            bssid=bssid_match.group(1) if bssid_match else None,
            signal=signal_match.group(1) if signal_match else None,
            channel=channel_match.group(1) if channel_match else None,
            security="WPA/WPA2" if encrypted else "Open",
        ))
    return records


def parse_iwconfig_interfaces(output: str) -> List[str]:
    """Return interfaces whose iwconfig line mentions IEEE 802.11."""
    interfaces = []
    for line in (output or "").splitlines():
        if "IEEE 802.11" in line and line and not line[0].isspace():
            interfaces.append(line.split()[0])
    return interfaces


def parse_iwgetid(output: str) -> Optional[str]:
    ssid = (output or "").strip()
    return ssid if is_valid_ssid(ssid) else None


# === Neighbor tables ===

def is_unicast_entry(ip: str, mac: str) -> bool:
    """Drop broadcast and multicast neighbor entries."""
    if mac == BROADCAST_MAC or mac.startswith("01:00:5E"):
        return False
    if ip.endswith(".255"):
        return False
    try:
        first_octet = int(ip.split(".")[0])
    except ValueError:
        return False
    return not 224 <= first_octet <= 239


def _collect(pattern, output: str) -> List[Tuple[str, str]]:
    entries = []
    seen = set()
    for line in (output or "").splitlines():
        if "incomplete" in line.lower():
            continue
        match = pattern.search(line)
        if not match:
            continue
        ip = match.group(1)
        mac = normalize_mac(match.group(2))
        if len(mac.split(":")) != 6 or not is_unicast_entry(ip, mac):
            continue
        if ip in seen:
            continue
        seen.add(ip)
        entries.append((ip, mac))
    return entries


def parse_arp_windows(output: str) -> List[Tuple[str, str]]:
    """Parse ``arp -a`` on Windows into (ip, mac) pairs (dynamic entries only)."""
    return _collect(ARP_WINDOWS_PATTERN, output)


def parse_arp_unix(output: str) -> List[Tuple[str, str]]:
    """Parse ``arp -a``/``arp -an``/``ip neigh show`` into (ip, mac) pairs."""
    return _collect(ARP_UNIX_PATTERN, output)
