"""Single-flight LAN discovery pass.

A pass probes the active network, names every host and writes one open
ConnectionRecord per device into the state store. Overlapping calls do
not queue: the second caller gets a skipped report straight away. A pass
that outlives the association it started on is abandoned without writing.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from config import DiscoveryInProgress, LogContext, get_logger
from discovery.identity import IdentityResolver
from discovery.probes import LANProbeSet, ProbeContext, get_local_interface, get_own_macs
from discovery.vendors import classify_device_type
from storage.models import ConnectionRecord

logger = get_logger(__name__)


@dataclass
class DiscoveryReport:
    """Outcome of one discovery pass."""
    network: Optional[str] = None
    devices: List[ConnectionRecord] = field(default_factory=list)
    new_devices: List[ConnectionRecord] = field(default_factory=list)
    duration_ms: float = 0.0
    skipped: bool = False
    reason: Optional[str] = None
    finished_at: datetime = field(default_factory=datetime.now)


class DiscoveryOrchestrator:
    """Runs probes, resolves identities and upserts device records."""

    def __init__(self, store, adapter, probe_set: Optional[LANProbeSet] = None,
                 resolver: Optional[IdentityResolver] = None,
                 interface_provider: Callable = get_local_interface,
                 own_macs_provider: Callable = get_own_macs):
        self._store = store
        self._adapter = adapter
        self._probe_set = probe_set or LANProbeSet()
        self._resolver = resolver or IdentityResolver()
        self._interface_provider = interface_provider
        self._own_macs_provider = own_macs_provider
        self._flight = threading.Lock()
        self._last_report: Optional[DiscoveryReport] = None

    @property
    def identity_cache(self):
        return self._resolver.cache

    @property
    def last_report(self) -> Optional[DiscoveryReport]:
        return self._last_report

    @property
    def in_progress(self) -> bool:
        return self._flight.locked()

    def seconds_since_last_pass(self) -> Optional[float]:
        if self._last_report is None:
            return None
        return (datetime.now() - self._last_report.finished_at).total_seconds()

    def discover(self, network_ssid: Optional[str] = None) -> DiscoveryReport:
        """Run a pass unless one is already running."""
        if not self._flight.acquire(blocking=False):
            exc = DiscoveryInProgress("Discovery already running")
            logger.debug(f"Skipping discovery: {exc}")
            return DiscoveryReport(network=network_ssid, skipped=True, reason="in_progress")
        try:
            report = self._discover(network_ssid)
        finally:
            self._flight.release()
        if not report.skipped:
            self._last_report = report
        return report

    def _resolve_network(self, network_ssid: Optional[str]) -> Optional[str]:
        if network_ssid:
            return network_ssid
        connected = self._store.get_connected_network()
        if connected is not None:
            return connected.ssid
        return self._adapter.current_network()

    def _discover(self, network_ssid: Optional[str]) -> DiscoveryReport:
        session = self._store.session
        network = self._resolve_network(network_ssid)
        if not network:
            logger.info("Skipping discovery: not connected")
            return DiscoveryReport(skipped=True, reason="not_connected")

        interface = self._interface_provider()
        if interface is None:
            logger.info("Skipping discovery: no IPv4 interface")
            return DiscoveryReport(network=network, skipped=True, reason="no_interface")

        context = ProbeContext.from_interface(interface, self._adapter, self._own_macs_provider())
        report = DiscoveryReport(network=network)

        with LogContext(logger, "Device discovery") as ctx:
            for result in self._probe_set.run_all(context):
                if result.ip == context.local_ip:
                    continue
                if self._store.session != session:
                    report.skipped = True
                    break
                name, source = self._resolver.resolve_with_source(result.mac, result.ip)
                device_type = classify_device_type(name)
                record, created = self._store.upsert_device(
                    network, result.mac, result.ip, name, device_type, session=session,
                )
                if record is None:
                    # association ended while this host was being named
                    self._resolver.cache.discard(result.mac, result.ip)
                    report.skipped = True
                    break
                report.devices.append(record)
                if created:
                    report.new_devices.append(record)
                    logger.debug(f"New device {result.ip} ({result.mac or 'no MAC'}): {name} via {source}")

        report.duration_ms = ctx.duration_ms
        report.finished_at = datetime.now()
        if report.skipped:
            report.reason = "network_changed"
            logger.info(f"Discovery on {network} abandoned: network changed mid-pass")
            return report
        logger.info(
            f"Discovery on {network}: {len(report.devices)} devices, "
            f"{len(report.new_devices)} new in {report.duration_ms:.0f}ms"
        )
        return report

    def on_network_changed(self, old_ssid: Optional[str], new_ssid: Optional[str]) -> int:
        """Close the previous network's records and forget cached identities."""
        closed = []
        if old_ssid and old_ssid != new_ssid:
            closed = self._store.close_connections(network_ssid=old_ssid, reason="network_switch")
        self._resolver.cache.clear()
        logger.info(f"Network changed {old_ssid} -> {new_ssid}; closed {len(closed)} records")
        return len(closed)
