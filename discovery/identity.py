"""Device identity resolution.

An ordered chain of strategies turns (mac, ip) into a display name. Each
strategy answers ``try_resolve(mac, ip) -> (name, ok)`` and the resolver
stops at the first ``ok``. When every strategy fails a name is
synthesized from the vendor and the last IP octet, so resolution always
produces something to show.

Results are cached per (mac, ip) in an IdentityCache owned by the
discovery orchestrator.
"""
import re
import socket
import sys
import threading
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from config import NETWORK, NetGuardError, SubprocessError, get_logger, run_command, safe_run
from discovery.vendors import (
    BUILTIN_VENDORS,
    OUIDatabase,
    detailed_vendor,
    format_vendor_name,
    is_mobile_oui,
    oui_of,
)
from storage.models import is_ip_address, last_octet, normalize_mac

logger = get_logger(__name__)

IS_WINDOWS = sys.platform.startswith('win')

OS_WORDS = ("android", "iphone", "ipad", "windows", "linux", "macos")
SSH_OS_TOKENS = ("ubuntu", "debian", "raspbian", "fedora", "centos", "freebsd", "openbsd", "alpine")

# Patterns
NSLOOKUP_PATTERN = re.compile(r'name\s*=\s*(\S+)')
HOST_PATTERN = re.compile(r'domain name pointer\s+(\S+)')
PING_A_PATTERN = re.compile(r'Pinging\s+([^\s\[]+)\s*\[')
DNS_SD_PTR_PATTERN = re.compile(r'PTR\s+IN\s+(\S+)')
SNMP_STRING_PATTERN = re.compile(r'STRING:\s*"?([^"\r\n]+)"?')
NODE_STATUS_PATTERN = re.compile(r'^\s*([A-Za-z0-9\-_.$]{1,15})\s+<00>\s+(.*)$')
FRIENDLY_NAME_PATTERN = re.compile(r'<friendlyName>\s*(.*?)\s*</friendlyName>', re.IGNORECASE | re.DOTALL)
ISC_LEASE_PATTERN = re.compile(r'lease\s+(\d+\.\d+\.\d+\.\d+)\s*\{(.*?)\}', re.DOTALL)
SSH_BANNER_PATTERN = re.compile(r'SSH-\d+\.\d+-(\S+)(?:\s+(.*))?')
NUMERIC_NAME_PATTERN = re.compile(r"[\d\s._-]+")


def is_valid_device_name(name: Optional[str]) -> bool:
    """Reject empty, IP-shaped, numeric, one-character and 'unknown' names."""
    if not name:
        return False
    name = name.strip()
    if len(name) < 2 or is_ip_address(name) or NUMERIC_NAME_PATTERN.fullmatch(name):
        return False
    return "unknown" not in name.lower()


def clean_device_name(name: Optional[str]) -> Optional[str]:
    """Normalize a raw hostname into a display name.

    'johns-iphone.local' -> 'Johns', 'living_room_tv.lan' -> 'Living Room Tv'
    """
    if not name:
        return name
    first = name.strip().rstrip('.').split('.')[0]
    words = first.replace('_', ' ').replace('-', ' ').split()

    while words and words[0].lower() in OS_WORDS:
        words.pop(0)
    while words and words[-1].lower() in OS_WORDS:
        words.pop()

    if not words:
        return first
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


def fallback_name(mac: str, ip: str) -> str:
    """Synthesized name used when every strategy fails."""
    octet = last_octet(ip)
    vendor = detailed_vendor(mac)
    if vendor:
        return f"{vendor} ({octet})"
    if octet in ("1", "254"):
        return f"Router/Gateway ({octet})"
    return f"Network Device ({octet})"


def reverse_pointer(ip: str) -> str:
    return ".".join(reversed(ip.split("."))) + ".in-addr.arpa"


# ============================================================================
# Strategies
# ============================================================================

class IdentityStrategy(ABC):
    """One way of naming a device.

    Subclasses yield raw candidate names; the first one that is valid after
    cleaning wins.
    """

    name = "strategy"
    clean_names = True

    @abstractmethod
    def candidates(self, mac: str, ip: str) -> Iterator[Optional[str]]:
        ...

    def try_resolve(self, mac: str, ip: str) -> Tuple[Optional[str], bool]:
        for raw in self.candidates(mac, ip):
            if not raw:
                continue
            name = clean_device_name(raw) if self.clean_names else raw.strip()
            if is_valid_device_name(name):
                logger.debug(f"{self.name} resolved {ip} -> {name}")
                return name, True
        return None, False


class HostnameStrategy(IdentityStrategy):
    """Reverse DNS via nslookup, host, dig, ping -a, then the system resolver."""

    name = "hostname"

    _resolver_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="gethostbyaddr")

    def __init__(self, windows: bool = IS_WINDOWS, timeout: float = NETWORK.IDENTITY_COMMAND_TIMEOUT):
        self.windows = windows
        self.timeout = timeout

    def candidates(self, mac: str, ip: str) -> Iterator[Optional[str]]:
        output = run_command(['nslookup', ip], timeout=self.timeout)
        if output:
            match = NSLOOKUP_PATTERN.search(output)
            yield match.group(1).rstrip('.') if match else None

        output = run_command(['host', ip], timeout=self.timeout)
        if output:
            match = HOST_PATTERN.search(output)
            yield match.group(1).rstrip('.') if match else None

        output = run_command(['dig', '-x', ip, '+short'], timeout=self.timeout)
        if output and output.strip():
            yield output.strip().splitlines()[0].rstrip('.')

        if self.windows:
            output = run_command(['ping', '-a', '-n', '1', ip], timeout=self.timeout)
            if output:
                match = PING_A_PATTERN.search(output)
                yield match.group(1) if match else None

        yield self._gethostbyaddr(ip)

    def _gethostbyaddr(self, ip: str) -> Optional[str]:
        future = self._resolver_pool.submit(socket.gethostbyaddr, ip)
        try:
            hostname, _, _ = future.result(timeout=NETWORK.HOSTNAME_RESOLVE_TIMEOUT)
            return hostname
        except FutureTimeout:
            logger.debug(f"gethostbyaddr timed out for {ip}")
        except OSError:
            pass
        return None


class MDNSStrategy(IdentityStrategy):
    """Multicast DNS via dns-sd, avahi-resolve, then dig against 224.0.0.251."""

    name = "mdns"

    def __init__(self, timeout: float = NETWORK.IDENTITY_COMMAND_TIMEOUT, dns_sd_read: float = 2.0):
        self.timeout = timeout
        self.dns_sd_read = dns_sd_read

    def _dns_sd(self, ip: str) -> Optional[str]:
        # dns-sd never exits on its own; read what arrived before the timeout
        try:
            result = safe_run(['dns-sd', '-q', reverse_pointer(ip), 'PTR'], timeout=self.dns_sd_read)
            output = result.stdout
        except SubprocessError as e:
            output = e.stdout
        if not output:
            return None
        match = DNS_SD_PTR_PATTERN.search(output)
        return match.group(1).rstrip('.') if match else None

    def candidates(self, mac: str, ip: str) -> Iterator[Optional[str]]:
        yield self._dns_sd(ip)

        output = run_command(['avahi-resolve', '-a', ip], timeout=self.timeout)
        if output:
            parts = output.split()
            yield parts[1] if len(parts) >= 2 else None

        output = run_command(['dig', '-x', ip, '@224.0.0.251', '-p', '5353', '+short'], timeout=self.timeout)
        if output and output.strip():
            yield output.strip().splitlines()[0].rstrip('.')


class SNMPStrategy(IdentityStrategy):
    """sysName, then sysDescr, then sysContact."""

    name = "snmp"

    def __init__(self, community: str = NETWORK.SNMP_COMMUNITY, oids=NETWORK.SNMP_OIDS,
                 timeout: float = NETWORK.IDENTITY_COMMAND_TIMEOUT):
        self.community = community
        self.oids = oids
        self.timeout = timeout

    def candidates(self, mac: str, ip: str) -> Iterator[Optional[str]]:
        for oid in self.oids:
            output = run_command(
                ['snmpget', '-v2c', '-c', self.community, '-t', '1', ip, oid], timeout=self.timeout
            )
            if output:
                match = SNMP_STRING_PATTERN.search(output)
                yield match.group(1).strip() if match else None


class UPnPStrategy(IdentityStrategy):
    """SSDP M-SEARCH; friendlyName from the description XML or the SERVER product."""

    name = "upnp"

    def __init__(self, address: Tuple[str, int] = NETWORK.SSDP_ADDRESS, timeout: float = NETWORK.SSDP_TIMEOUT):
        self.address = address
        self.timeout = timeout

    def _message(self) -> bytes:
        host, port = self.address
        return (
            "M-SEARCH * HTTP/1.1\r\n"
            f"HOST: {host}:{port}\r\n"
            'MAN: "ssdp:discover"\r\n'
            "MX: 2\r\n"
            "ST: upnp:rootdevice\r\n"
            "\r\n"
        ).encode()

    def search(self, ip: str) -> Optional[Dict[str, str]]:
        """Return the SSDP response headers sent by ``ip``, if any."""
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP) as sock:
            sock.settimeout(self.timeout)
            sock.sendto(self._message(), self.address)
            while True:
                try:
                    data, (sender, _) = sock.recvfrom(4096)
                except socket.timeout:
                    return None
                if sender == ip:
                    return parse_ssdp_headers(data.decode("utf-8", errors="replace"))

    def fetch_friendly_name(self, location: str) -> Optional[str]:
        if not location.lower().startswith("http"):
            return None
        try:
            with urllib.request.urlopen(location, timeout=NETWORK.BANNER_TIMEOUT) as response:  # nosec B310
                body = response.read(65536).decode("utf-8", errors="replace")
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.debug(f"UPnP description fetch failed: {e}")
            return None
        match = FRIENDLY_NAME_PATTERN.search(body)
        return match.group(1) if match else None

    def candidates(self, mac: str, ip: str) -> Iterator[Optional[str]]:
        try:
            headers = self.search(ip)
        except OSError as e:
            logger.debug(f"SSDP search failed: {e}")
            return
        if not headers:
            return
        if headers.get("location"):
            yield self.fetch_friendly_name(headers["location"])
        yield server_product(headers.get("server", ""))


def parse_ssdp_headers(payload: str) -> Dict[str, str]:
    headers = {}
    for line in payload.splitlines()[1:]:
        key, sep, value = line.partition(":")
        if sep:
            headers[key.strip().lower()] = value.strip()
    return headers


def server_product(server: str) -> Optional[str]:
    """Product token of a SERVER header, skipping the OS and UPnP tokens.

    'Linux/3.14 UPnP/1.0 MiniUPnPd/1.9' -> 'MiniUPnPd'
    """
    tokens = [t.split("/")[0] for t in server.replace(",", " ").split()]
    products = [t for t in tokens if t and t.lower() not in ("upnp", "linux", "windows", "unix")]
    return products[-1] if products else None


class DHCPLeaseStrategy(IdentityStrategy):
    """Client hostnames from local DHCP server lease files."""

    name = "dhcp"

    def __init__(self, lease_files=NETWORK.DHCP_LEASE_FILES):
        self.lease_files = [Path(p) for p in lease_files]

    def candidates(self, mac: str, ip: str) -> Iterator[Optional[str]]:
        mac = normalize_mac(mac) if mac else ""
        for path in self.lease_files:
            if not path.exists():
                continue
            try:
                content = path.read_text(errors="replace")
            except OSError as e:
                logger.debug(f"Cannot read {path}: {e}")
                continue
            for lease_mac, lease_ip, hostname in parse_leases(content):
                if (mac and lease_mac == mac) or lease_ip == ip:
                    yield hostname


def parse_leases(content: str) -> List[Tuple[str, str, str]]:
    """Parse ISC dhcpd or dnsmasq lease content into (mac, ip, hostname)."""
    leases = []
    for match in ISC_LEASE_PATTERN.finditer(content):
        body = match.group(2)
        hw = re.search(r'hardware ethernet\s+([0-9a-fA-F:]+);', body)
        hostname = re.search(r'client-hostname\s+"([^"]+)"', body)
        if hostname:
            leases.append((normalize_mac(hw.group(1)) if hw else "", match.group(1), hostname.group(1)))
    if leases:
        return leases

    for line in content.splitlines():
        parts = line.split()
        # <expiry> <mac> <ip> <hostname> <client-id>
        if len(parts) >= 4 and parts[0].isdigit() and is_ip_address(parts[2]):
            if parts[3] != "*":
                leases.append((normalize_mac(parts[1]), parts[2], parts[3]))
    return leases


class VendorBehaviorStrategy(IdentityStrategy):
    """OUI vendor plus a guess from open ports and mobile OUIs.

    Names here are synthesized, so they bypass cleaning.
    """

    name = "vendor"
    clean_names = False

    def __init__(self, oui_db: Optional[OUIDatabase] = None, timeout: float = NETWORK.BEHAVIOR_PORT_TIMEOUT):
        self.oui_db = oui_db or OUIDatabase()
        self.timeout = timeout

    def port_open(self, ip: str, port: int) -> bool:
        try:
            with socket.create_connection((ip, port), timeout=self.timeout):
                return True
        except OSError:
            return False

    def guess_behavior(self, mac: str, ip: str) -> Optional[str]:
        if self.port_open(ip, 80):
            return "Router/Gateway" if last_octet(ip) in ("1", "254") else "Web Device"
        if self.port_open(ip, 22):
            return "Linux Device"
        if self.port_open(ip, 445):
            return "Windows Device"
        if is_mobile_oui(mac):
            return "Mobile Device"
        return None

    def candidates(self, mac: str, ip: str) -> Iterator[Optional[str]]:
        octet = last_octet(ip)
        vendor = self.oui_db.lookup(mac)
        if vendor and oui_of(mac) in BUILTIN_VENDORS:
            yield format_vendor_name(vendor, ip)
            return

        behavior = self.guess_behavior(mac, ip)
        if vendor:
            short_vendor = vendor.split()[0].rstrip(",")
            yield f"{short_vendor} {behavior} ({octet})" if behavior else format_vendor_name(short_vendor, ip)
        elif behavior:
            yield f"{behavior} ({octet})"
        elif octet in ("1", "254"):
            yield f"Router/Gateway ({octet})"


class NetBIOSStrategy(IdentityStrategy):
    """NetBIOS node status table: nbtstat on Windows, nmblookup elsewhere."""

    name = "netbios"

    def __init__(self, windows: bool = IS_WINDOWS, timeout: float = NETWORK.IDENTITY_COMMAND_TIMEOUT):
        self.windows = windows
        self.timeout = timeout

    def candidates(self, mac: str, ip: str) -> Iterator[Optional[str]]:
        cmd = ['nbtstat', '-A', ip] if self.windows else ['nmblookup', '-A', ip]
        output = run_command(cmd, timeout=self.timeout)
        if output:
            yield parse_node_status(output)


def parse_node_status(output: str) -> Optional[str]:
    """First unique <00> name from nbtstat or nmblookup output.

    nbtstat marks group names GROUP, nmblookup marks them <GROUP>.
    """
    for line in output.splitlines():
        match = NODE_STATUS_PATTERN.match(line)
        if match and "GROUP" not in match.group(2).upper():
            return match.group(1)
    return None


class BannerStrategy(IdentityStrategy):
    """SSH banner on port 22, then the HTTP Server header on port 80."""

    name = "banner"
    clean_names = False

    def __init__(self, timeout: float = NETWORK.BANNER_TIMEOUT):
        self.timeout = timeout

    def read_ssh_banner(self, ip: str) -> Optional[str]:
        try:
            with socket.create_connection((ip, 22), timeout=self.timeout) as sock:
                sock.settimeout(self.timeout)
                return sock.recv(256).decode("utf-8", errors="replace").strip()
        except OSError:
            return None

    def read_http_server(self, ip: str) -> Optional[str]:
        request = urllib.request.Request(f"http://{ip}/", method="HEAD")
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:  # nosec B310
                return response.headers.get("Server")
        except urllib.error.HTTPError as e:
            return e.headers.get("Server") if e.headers else None
        except (urllib.error.URLError, OSError, ValueError):
            return None

    def candidates(self, mac: str, ip: str) -> Iterator[Optional[str]]:
        banner = self.read_ssh_banner(ip)
        if banner:
            yield name_from_ssh_banner(banner)
        server = self.read_http_server(ip)
        if server:
            product = server.split("/")[0].split()[0] if server.strip() else None
            yield f"{product} HTTP Host" if product else None


def name_from_ssh_banner(banner: str) -> Optional[str]:
    """'SSH-2.0-OpenSSH_8.9p1 Ubuntu-3' -> 'Ubuntu SSH Host'."""
    match = SSH_BANNER_PATTERN.search(banner)
    if not match:
        return None
    product, comment = match.group(1), (match.group(2) or "")
    text = f"{product} {comment}".lower()
    for token in SSH_OS_TOKENS:
        if token in text:
            return f"{token.capitalize()} SSH Host"
    product_name = re.split(r'[_\-]', product)[0]
    return f"{product_name.capitalize()} SSH Host" if product_name else None


def default_strategies(oui_db: Optional[OUIDatabase] = None) -> List[IdentityStrategy]:
    """The resolution chain, in priority order."""
    return [
        HostnameStrategy(),
        MDNSStrategy(),
        SNMPStrategy(),
        UPnPStrategy(),
        DHCPLeaseStrategy(),
        VendorBehaviorStrategy(oui_db),
        NetBIOSStrategy(),
        BannerStrategy(),
    ]


# ============================================================================
# Cache and resolver
# ============================================================================

class IdentityCache:
    """Thread-safe (mac, ip) -> name map."""

    def __init__(self):
        self._lock = threading.Lock()
        self._names: Dict[Tuple[str, str], str] = {}

    def get(self, mac: str, ip: str) -> Optional[str]:
        with self._lock:
            return self._names.get((mac or "", ip))

    def put(self, mac: str, ip: str, name: str) -> None:
        with self._lock:
            self._names[(mac or "", ip)] = name

    def discard(self, mac: str, ip: str) -> None:
        with self._lock:
            self._names.pop((mac or "", ip), None)

    def forget_record(self, record) -> None:
        """Drop the name cached for a ConnectionRecord that was just closed."""
        self.discard(record.device_mac, record.assigned_ip)

    def clear(self) -> None:
        with self._lock:
            count = len(self._names)
            self._names.clear()
        if count:
            logger.debug(f"Identity cache cleared ({count} entries)")

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)


class IdentityResolver:
    """Walks the strategy chain with caching and a synthesized fallback."""

    def __init__(self, strategies: Optional[List[IdentityStrategy]] = None,
                 cache: Optional[IdentityCache] = None):
        self.strategies = strategies if strategies is not None else default_strategies()
        self.cache = cache if cache is not None else IdentityCache()

    def resolve_with_source(self, mac: str, ip: str) -> Tuple[str, str]:
        """Return (name, source) where source is a strategy name, 'cache' or 'fallback'."""
        cached = self.cache.get(mac, ip)
        if cached:
            return cached, "cache"

        for strategy in self.strategies:
            try:
                name, ok = strategy.try_resolve(mac, ip)
            except (NetGuardError, OSError) as e:
                logger.debug(f"{strategy.name} failed for {ip}: {e}")
                continue
            if ok and name:
                self.cache.put(mac, ip, name)
                return name, strategy.name

        name = fallback_name(mac, ip)
        self.cache.put(mac, ip, name)
        return name, "fallback"

    def resolve(self, mac: str, ip: str) -> str:
        return self.resolve_with_source(mac, ip)[0]
