"""Application controller for NetGuard.

Exposes the operations an outer layer (HTTP API, CLI) calls: scan,
overview, connect, disconnect, on-demand discovery and per-device
blocking and time limits. Also owns the scheduled jobs and publishes
events for state changes.

Usage:
    from app.controller import NetGuardController
    from app.dependencies import create_dependencies

    deps = create_dependencies()
    controller = NetGuardController(deps)
    controller.start()
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from app.devices import DeviceActionResult, DeviceDetails, ManagedDevice
from app.dependencies import AppDependencies
from app.events import EventBus, EventType, get_event_bus
from app.scheduler import Scheduler
from config import INTERVALS, NETWORK, STORAGE, Intervals, StorageError, get_logger
from discovery.orchestrator import DiscoveryReport
from storage.models import ConnectionRecord, NetworkRecord
from wifi.connection import ConnectionResult

logger = get_logger(__name__)

BYTES_PER_GB = 1024.0 ** 3


@dataclass
class NetworkStats:
    """Aggregate figures shown alongside the overview."""
    total_connected_devices: int = 0
    average_signal_strength: float = 0.0
    primary_frequency: str = "2.4GHz"
    secured_networks_count: int = 0
    open_networks_count: int = 0
    total_data_usage_gb: float = 0.0


@dataclass
class NetworkOverview:
    """Snapshot of the current network, nearby networks and devices."""
    current_network: str = NETWORK.NOT_CONNECTED
    available_networks: List[NetworkRecord] = field(default_factory=list)
    connected_devices: List[ConnectionRecord] = field(default_factory=list)
    stats: NetworkStats = field(default_factory=NetworkStats)
    total_time_used: str = "0.0h"
    active_devices: int = 0
    total_devices: int = 0


def format_time_used(total_minutes: int) -> str:
    """Format minutes as ``"<hours>.<minutes>h"``, e.g. 125 -> "2.5h"."""
    hours, minutes = divmod(max(0, int(total_minutes)), 60)
    return "%d.%dh" % (hours, minutes)


def calculate_network_stats(networks: List[NetworkRecord], devices: List[ConnectionRecord],
                            data_usage_bytes: int = 0) -> NetworkStats:
    """Build NetworkStats from the available networks and open connections."""
    available = [n for n in networks if n.is_available]
    average = (sum(n.signal_strength for n in available) / len(available)) if available else 0.0
    five_ghz = sum(1 for n in networks if n.frequency == "5GHz")
    secured = sum(1 for n in networks if n.is_secured)
    return NetworkStats(
        total_connected_devices=len(devices),
        average_signal_strength=average,
        primary_frequency="5GHz" if five_ghz > len(networks) - five_ghz else "2.4GHz",
        secured_networks_count=secured,
        open_networks_count=len(networks) - secured,
        total_data_usage_gb=data_usage_bytes / BYTES_PER_GB,
    )


class NetGuardController:
    """Central controller that orchestrates application logic.

    The controller:
    - Runs scans and discovery with bounded caller-facing waits
    - Turns connect/disconnect outcomes into ConnectionResults
    - Keeps the state store in step with the OS on a schedule
    - Publishes events for state changes

    Attributes:
        deps: The dependency container with all components.
        event_bus: Event bus for publishing state changes.
    """

    def __init__(self, deps: AppDependencies, event_bus: Optional[EventBus] = None,
                 intervals: Intervals = INTERVALS):
        """Initialize the controller with dependencies.

        Args:
            deps: AppDependencies container with all required components.
            event_bus: Optional event bus (uses global if not provided).
            intervals: Scheduler and wait intervals, e.g. from load_overrides().
        """
        self.deps = deps
        self.event_bus = event_bus or deps.event_bus or get_event_bus()
        self.intervals = intervals
        self.scheduler = Scheduler()

        self._running = False
        self._save_lock = threading.Lock()
        self._scan_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="wifi-scan")
        self._discovery_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="discovery")
        self._discovery_lock = threading.Lock()
        self._discovery_future: Optional[Future] = None

        logger.info("NetGuardController initialized")

    # === Lifecycle ===

    def start(self) -> None:
        """Load persisted state, start scheduled jobs and announce startup."""
        logger.info("Starting NetGuardController...")
        try:
            networks, connections = self.deps.store.load_into(self.deps.state_store)
            logger.info(f"Loaded {networks} networks and {connections} connections")
        except StorageError as e:
            logger.error(f"Could not load saved state: {e}")

        if STORAGE.CLEANUP_ON_STARTUP:
            self.cleanup()

        self.scheduler.add_job("refresh", self.refresh_network_data,
                               self.intervals.NETWORK_REFRESH_SECONDS, run_immediately=True)
        self.scheduler.add_job("discovery", self._scheduled_discovery, self.intervals.DISCOVERY_SECONDS)
        self.scheduler.add_job("save", self.save, self.intervals.SAVE_INTERVAL_SECONDS)
        self.scheduler.add_job("cleanup", self.cleanup, self.intervals.CLEANUP_SECONDS)
        self.scheduler.add_job("time_limits", self.enforce_time_limits, self.intervals.TIME_LIMIT_CHECK_SECONDS)
        self.scheduler.start()

        self._running = True
        self.event_bus.publish(EventType.APP_STARTING)
        logger.info("NetGuardController started")

    def stop(self) -> None:
        """Stop scheduled jobs, persist state and announce shutdown."""
        logger.info("Stopping NetGuardController...")
        self._running = False
        self.scheduler.stop()
        released = self.deps.device_manager.unblock_all()
        if released:
            logger.info(f"Removed blocking rules for {released} device(s)")
        self.save(force=True)
        self.deps.store.flush()
        self._scan_executor.shutdown(wait=False)
        self._discovery_executor.shutdown(wait=False)
        self.event_bus.publish(EventType.APP_STOPPING)
        logger.info("NetGuardController stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # === Scanning ===

    def _scan_and_store(self) -> List[NetworkRecord]:
        scanned = self.deps.adapter.scan_networks()
        state_store = self.deps.state_store
        state_store.mark_stale_networks(self.intervals.STALE_NETWORK_SECONDS)
        stored = [state_store.upsert_network(record) for record in scanned]
        self.event_bus.publish(EventType.NETWORKS_SCANNED, {
            'count': len(stored),
            'ssids': [n.ssid for n in stored],
        })
        return stored

    def scan_networks(self) -> List[NetworkRecord]:
        """Scan for Wi-Fi networks and merge the results into the store.

        Waits at most SCAN_WAIT_SECONDS; on expiry the currently stored
        available networks are returned and the scan finishes in the background.
        """
        future = self._scan_executor.submit(self._scan_and_store)
        try:
            return future.result(timeout=self.intervals.SCAN_WAIT_SECONDS)
        except FutureTimeout:
            logger.warning(f"Wi-Fi scan still running after {self.intervals.SCAN_WAIT_SECONDS}s")
            return self.deps.state_store.get_networks(available_only=True)

    # === Overview ===

    def _current_ssid(self) -> Optional[str]:
        connected = self.deps.state_store.get_connected_network()
        if connected is not None:
            return connected.ssid
        return self.deps.adapter.current_network()

    def _discovery_is_stale(self) -> bool:
        age = self.deps.orchestrator.seconds_since_last_pass()
        return age is None or age > self.intervals.OVERVIEW_STALE_SECONDS

    def get_overview(self) -> NetworkOverview:
        """Current network, nearby networks, open device records and stats."""
        current = self._current_ssid()
        if current and self._discovery_is_stale():
            self.discover_devices_now(current)

        state_store = self.deps.state_store
        networks = state_store.get_networks(available_only=True)
        for network in networks:
            network.is_connected = network.ssid == current

        devices = state_store.get_open_connections()
        now = datetime.now()
        for device in devices:
            device.refresh_duration(now)
        usage = state_store.total_data_usage_since(now - timedelta(days=1))

        return NetworkOverview(
            current_network=current or NETWORK.NOT_CONNECTED,
            available_networks=networks,
            connected_devices=devices,
            stats=calculate_network_stats(networks, devices, usage),
            total_time_used=format_time_used(sum(d.connection_duration_minutes for d in devices)),
            active_devices=len(devices),
            total_devices=state_store.count_current_connections(),
        )

    # === Connection lifecycle ===

    def connect(self, ssid: str, password: Optional[str] = None,
                device_name: Optional[str] = None) -> ConnectionResult:
        """Join a scanned network. Failures come back in the result."""
        # Only the store here: the OS is not asked before the SSID is validated
        connected = self.deps.state_store.get_connected_network()
        previous = connected.ssid if connected else None
        result = self.deps.connection_manager.connect(ssid, password, device_name)
        if result.success:
            if previous != ssid:
                self.deps.orchestrator.on_network_changed(previous, ssid)
            self.event_bus.publish(EventType.NETWORK_CONNECTED, {
                'ssid': ssid,
                'previous': previous,
                'assigned_ip': result.assigned_ip,
            })
        return result

    def disconnect(self, device_mac: Optional[str] = None) -> ConnectionResult:
        """Leave the current network and close every open record."""
        result = self.deps.connection_manager.disconnect(device_mac)
        if result.success:
            self.event_bus.publish(EventType.NETWORK_DISCONNECTED, {'ssid': result.ssid})
        return result

    # === Discovery ===

    def _publish_report(self, report: DiscoveryReport) -> None:
        if report.skipped:
            return
        for device in report.new_devices:
            self.event_bus.publish(EventType.DEVICE_DISCOVERED, {
                'network': report.network,
                'mac': device.device_mac,
                'ip': device.assigned_ip,
                'name': device.device_name,
                'type': device.device_type,
            })
        self.event_bus.publish(EventType.DEVICES_DISCOVERED, {
            'network': report.network,
            'count': len(report.devices),
            'new': len(report.new_devices),
            'duration_ms': report.duration_ms,
        })

    def _run_discovery(self, network: Optional[str]) -> DiscoveryReport:
        report = self.deps.orchestrator.discover(network)
        self._publish_report(report)
        return report

    def discover_devices_now(self, network: Optional[str] = None) -> DiscoveryReport:
        """Run a discovery pass, waiting at most DISCOVERY_WAIT_SECONDS.

        When a pass is already queued or running no second one is queued;
        a skipped report with reason ``in_progress`` comes back at once. On
        expiry a skipped report with reason ``timeout`` is returned; the
        pass keeps running and its results still land in the store.
        """
        with self._discovery_lock:
            pending = self._discovery_future
            if (pending is not None and not pending.done()) or self.deps.orchestrator.in_progress:
                logger.debug("Discovery already pending; not queueing another pass")
                return DiscoveryReport(network=network, skipped=True, reason="in_progress")
            future = self._discovery_executor.submit(self._run_discovery, network)
            self._discovery_future = future
        try:
            return future.result(timeout=self.intervals.DISCOVERY_WAIT_SECONDS)
        except FutureTimeout:
            logger.warning(f"Discovery still running after {self.intervals.DISCOVERY_WAIT_SECONDS}s")
            return DiscoveryReport(network=network, skipped=True, reason="timeout")

    def _scheduled_discovery(self) -> None:
        if self._current_ssid() is None:
            logger.debug("Scheduled discovery skipped: not connected")
            return
        self._run_discovery(None)

    # === Device management ===

    def get_managed_devices(self) -> List[ManagedDevice]:
        return self.deps.device_manager.get_managed_devices()

    def get_device_details(self, mac: str) -> Optional[DeviceDetails]:
        return self.deps.device_manager.get_device_details(mac)

    def _publish_device_action(self, result: DeviceActionResult) -> None:
        if not result.success or result.previous_status == result.new_status:
            return
        if result.action == "block":
            self.event_bus.publish(EventType.DEVICE_BLOCKED, {
                'mac': result.mac,
                'ip': result.ip,
                'reason': result.reason,
            })
        elif result.action == "unblock":
            self.event_bus.publish(EventType.DEVICE_UNBLOCKED, {'mac': result.mac, 'ip': result.ip})

    def block_device(self, mac: str, reason: Optional[str] = None) -> DeviceActionResult:
        """Drop a connected device's traffic. Failures come back in the result."""
        result = self.deps.device_manager.block_device(mac, reason)
        self._publish_device_action(result)
        return result

    def unblock_device(self, mac: str) -> DeviceActionResult:
        result = self.deps.device_manager.unblock_device(mac)
        self._publish_device_action(result)
        return result

    def set_time_limit(self, mac: str, daily_limit_minutes: Optional[int]) -> DeviceActionResult:
        """Set or clear a daily allowance; it is applied on the next enforcement tick."""
        return self.deps.device_manager.set_time_limit(mac, daily_limit_minutes)

    def enforce_time_limits(self) -> List[DeviceActionResult]:
        results = self.deps.device_manager.enforce_time_limits()
        for result in results:
            if result.success and result.action == "block":
                self.event_bus.publish(EventType.TIME_LIMIT_EXCEEDED, {
                    'mac': result.mac,
                    'limit_minutes': self.deps.device_manager.get_time_limit(result.mac),
                    'used_minutes': self.deps.state_store.minutes_used_today(result.mac),
                })
            self._publish_device_action(result)
        return results

    # === Scheduled jobs ===

    def refresh_network_data(self) -> None:
        """Rescan, refresh open durations and reconcile with the OS network."""
        self._scan_and_store()
        self.deps.state_store.update_durations()
        change = self.deps.connection_manager.sync_with_os()
        if change is not None:
            old, new = change
            self.deps.orchestrator.on_network_changed(old, new)
            self.event_bus.publish(EventType.CONNECTION_CHANGED, {'old': old, 'new': new})

    def save(self, force: bool = False) -> bool:
        """Persist the state store if it changed since the last save."""
        with self._save_lock:
            if not force and not self.deps.state_store.is_dirty:
                return False
            try:
                self.deps.store.save_snapshot(self.deps.state_store)
            except StorageError as e:
                logger.error(f"Saving state failed: {e}")
                return False
        return True

    def cleanup(self) -> int:
        """Apply the retention window in memory and on disk."""
        removed = self.deps.state_store.cleanup_old_records(STORAGE.RETENTION_DAYS)
        removed += self.deps.store.check_cleanup()
        if removed:
            self.save(force=True)
        return removed
