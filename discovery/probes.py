"""LAN probe strategies.

Four independent probes enumerate (ip, mac) candidates on the local /24:
the OS neighbor table, a ping sweep, a TCP port probe and a broadcast
nudge. ``LANProbeSet`` runs them together and merges by IP.
"""
import ipaddress
import random
import socket
import struct
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple

import psutil

from config import (
    INTERVALS,
    NETWORK,
    LogContext,
    ProbeFailed,
    SubprocessError,
    get_logger,
)
from storage.models import normalize_mac

logger = get_logger(__name__)

NULL_MAC = "00:00:00:00:00:00"


class ProbeResult(NamedTuple):
    """One candidate device seen by a probe."""
    ip: str
    mac: str = ""
    service_hint: str = ""
    source: str = ""


class LocalInterface(NamedTuple):
    """The host's active IPv4 interface."""
    name: str
    ip: str
    mac: str
    netmask: Optional[str] = None


def _is_link_family(family) -> bool:
    return family == psutil.AF_LINK


def get_own_macs() -> Set[str]:
    """Get MAC addresses of our own interfaces."""
    own_macs = set()
    try:
        for addrs in psutil.net_if_addrs().values():
            for addr in addrs:
                if _is_link_family(addr.family) and addr.address:
                    mac = normalize_mac(addr.address)
                    if mac and mac != NULL_MAC:
                        own_macs.add(mac)
    except OSError as e:
        logger.debug(f"Could not list own MAC addresses: {e}")
    return own_macs


def get_local_interface() -> Optional[LocalInterface]:
    """Return the first up, non-loopback interface with an IPv4 address.

    Wireless-looking names (wl*, en0, Wi-Fi) are preferred.
    """
    try:
        addresses = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
    except OSError as e:
        logger.debug(f"psutil interface query failed: {e}")
        return None

    candidates = []
    for name, addrs in addresses.items():
        if name in stats and not stats[name].isup:
            continue
        ipv4 = next((a for a in addrs if a.family == socket.AF_INET
                     and a.address and not a.address.startswith("127.")), None)
        if ipv4 is None:
            continue
        link = next((a for a in addrs if _is_link_family(a.family) and a.address), None)
        mac = normalize_mac(link.address) if link else ""
        preferred = name.startswith(("wl", "en0", "Wi-Fi", "Wireless"))
        candidates.append((not preferred, name, LocalInterface(name, ipv4.address, mac, ipv4.netmask)))

    if not candidates:
        return None
    candidates.sort(key=lambda c: (c[0], c[1]))
    return candidates[0][2]


@dataclass
class ProbeContext:
    """Where and how to probe."""
    local_ip: str
    base: str  # e.g. "192.168.1"
    broadcast: str
    adapter: object
    own_macs: Set[str] = field(default_factory=set)

    @classmethod
    def from_interface(cls, interface: LocalInterface, adapter,
                       own_macs: Optional[Set[str]] = None) -> 'ProbeContext':
        base = interface.ip.rsplit(".", 1)[0]
        broadcast = f"{base}.255"
        if interface.netmask:
            try:
                network = ipaddress.IPv4Network(f"{interface.ip}/{interface.netmask}", strict=False)
                broadcast = str(network.broadcast_address)
            except ValueError:
                pass
        macs = set(own_macs) if own_macs is not None else get_own_macs()
        if interface.mac:
            macs.add(interface.mac)
        return cls(local_ip=interface.ip, base=base, broadcast=broadcast, adapter=adapter, own_macs=macs)


def build_netbios_query(name: bytes = b"*") -> bytes:
    """Build a broadcast NetBIOS name-service query for ``name`` (wildcard by default)."""
    padded = name.ljust(16, b"\x00")[:16]
    encoded = bytes(
        c for b in padded for c in (ord("A") + (b >> 4), ord("A") + (b & 0x0F))
    )
    # RD + broadcast
    header = struct.pack(">HHHHHH", random.randint(0, 0xFFFF), 0x0110, 1, 0, 0, 0)
    return header + b"\x20" + encoded + b"\x00" + struct.pack(">HH", 0x0020, 0x0001)


class LANProbe(ABC):
    """A single device-enumeration strategy."""

    name = "probe"

    @abstractmethod
    def probe(self, context: ProbeContext) -> List[ProbeResult]:
        ...

    def run(self, context: ProbeContext) -> List[ProbeResult]:
        """Run the probe, surfacing tool and socket errors as ProbeFailed."""
        try:
            return self.probe(context)
        except (SubprocessError, OSError) as e:
            raise ProbeFailed(f"{self.name} probe failed: {e}", probe=self.name) from e


class ArpTableProbe(LANProbe):
    """Read the OS neighbor table."""

    name = "arp"

    def probe(self, context: ProbeContext) -> List[ProbeResult]:
        return [ProbeResult(ip, mac, "", self.name) for ip, mac in context.adapter.read_arp_table()]


def sweep_candidates(base: str, ranges: Sequence[Tuple[int, int]] = NETWORK.PING_SWEEP_RANGES) -> List[str]:
    """Candidate host addresses in range order, without duplicates."""
    seen = set()
    hosts = []
    for start, end in ranges:
        for octet in range(start, end + 1):
            if octet not in seen:
                seen.add(octet)
                hosts.append(f"{base}.{octet}")
    return hosts


class PingSweepProbe(LANProbe):
    """Ping a curated subset of the /24 in parallel."""

    name = "ping"

    def __init__(self, ranges: Sequence[Tuple[int, int]] = NETWORK.PING_SWEEP_RANGES,
                 workers: int = NETWORK.PING_SWEEP_WORKERS,
                 timeout: float = INTERVALS.PING_TIMEOUT_SECONDS):
        self.ranges = ranges
        self.workers = workers
        self.timeout = timeout

    def probe(self, context: ProbeContext) -> List[ProbeResult]:
        adapter = context.adapter
        hosts = [h for h in sweep_candidates(context.base, self.ranges) if h != context.local_ip]

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="ping-sweep") as pool:
            replies = list(pool.map(lambda ip: adapter.ping(ip, self.timeout), hosts))

        alive = [ip for ip, ok in zip(hosts, replies) if ok]
        logger.debug(f"Ping sweep: {len(alive)}/{len(hosts)} hosts answered")
        return [ProbeResult(ip, adapter.arp_lookup(ip) or "", "", self.name) for ip in alive]


class PortProbe(LANProbe):
    """TCP connect to well-known ports on the low host range."""

    name = "port"

    def __init__(self, host_range: Tuple[int, int] = NETWORK.PORT_PROBE_RANGE,
                 ports: Sequence[int] = NETWORK.PROBE_PORTS,
                 timeout: float = NETWORK.PORT_PROBE_TIMEOUT,
                 workers: int = 20):
        self.host_range = host_range
        self.ports = ports
        self.timeout = timeout
        self.workers = workers
        self._hints = dict(NETWORK.PORT_SERVICE_HINTS)

    def first_open_port(self, ip: str) -> Optional[int]:
        for port in self.ports:
            try:
                with socket.create_connection((ip, port), timeout=self.timeout):
                    return port
            except OSError:
                continue
        return None

    def probe(self, context: ProbeContext) -> List[ProbeResult]:
        start, end = self.host_range
        hosts = [f"{context.base}.{n}" for n in range(start, end + 1)
                 if f"{context.base}.{n}" != context.local_ip]

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="port-probe") as pool:
            open_ports = list(pool.map(self.first_open_port, hosts))

        results = []
        for ip, port in zip(hosts, open_ports):
            if port is None:
                continue
            hint = self._hints.get(port, str(port))
            results.append(ProbeResult(ip, context.adapter.arp_lookup(ip) or "", hint, self.name))
        return results


class BroadcastProbe(LANProbe):
    """Nudge hosts into the ARP table with broadcast and multicast traffic."""

    name = "broadcast"

    def __init__(self, multicast: Iterable[str] = NETWORK.MULTICAST_ADDRESSES,
                 timeout: float = INTERVALS.PING_TIMEOUT_SECONDS):
        self.multicast = tuple(multicast)
        self.timeout = timeout

    def _send_netbios_query(self, broadcast: str) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.settimeout(self.timeout)
            sock.sendto(build_netbios_query(), (broadcast, NETWORK.NETBIOS_PORT))

    def probe(self, context: ProbeContext) -> List[ProbeResult]:
        adapter = context.adapter
        for target in (context.broadcast,) + self.multicast:
            adapter.ping(target, self.timeout)
        try:
            self._send_netbios_query(context.broadcast)
        except OSError as e:
            logger.debug(f"NetBIOS broadcast failed: {e}")
        return [ProbeResult(ip, mac, "", self.name) for ip, mac in adapter.read_arp_table()]


def _ip_sort_key(ip: str):
    try:
        return tuple(int(p) for p in ip.split("."))
    except ValueError:
        return (999,)


def merge_results(batches: Iterable[List[ProbeResult]], local_ip: str = "",
                  own_macs: Optional[Set[str]] = None) -> List[ProbeResult]:
    """Deduplicate by IP; later results win, but never blank out a known MAC or hint."""
    own_macs = own_macs or set()
    merged: Dict[str, ProbeResult] = {}
    for batch in batches:
        for result in batch:
            mac = normalize_mac(result.mac) if result.mac else ""
            if result.ip == local_ip or (mac and mac in own_macs):
                continue
            existing = merged.get(result.ip)
            if existing is None:
                merged[result.ip] = result._replace(mac=mac)
                continue
            merged[result.ip] = ProbeResult(
                ip=result.ip,
                mac=mac or existing.mac,
                service_hint=result.service_hint or existing.service_hint,
                source=result.source or existing.source,
            )
    return [merged[ip] for ip in sorted(merged, key=_ip_sort_key)]


class LANProbeSet:
    """Runs every probe and unions the results."""

    def __init__(self, probes: Optional[List[LANProbe]] = None):
        self.probes = probes if probes is not None else [
            ArpTableProbe(), PingSweepProbe(), PortProbe(), BroadcastProbe(),
        ]

    def _run_one(self, probe: LANProbe, context: ProbeContext) -> List[ProbeResult]:
        try:
            with LogContext(logger, f"{probe.name} probe"):
                results = probe.run(context)
        except ProbeFailed as e:
            logger.warning(f"{e.message}; continuing with remaining probes")
            return []
        except Exception as e:
            logger.warning(f"{probe.name} probe error: {e}", exc_info=True)
            return []
        logger.debug(f"{probe.name} probe found {len(results)} hosts")
        return results

    def run_all(self, context: ProbeContext, parallel: bool = True) -> List[ProbeResult]:
        if parallel and len(self.probes) > 1:
            with ThreadPoolExecutor(max_workers=len(self.probes), thread_name_prefix="lan-probe") as pool:
                futures = [pool.submit(self._run_one, probe, context) for probe in self.probes]
                batches = [future.result() for future in futures]
        else:
            batches = [self._run_one(probe, context) for probe in self.probes]

        merged = merge_results(batches, context.local_ip, context.own_macs)
        logger.info(f"LAN probes found {len(merged)} unique hosts")
        return merged
