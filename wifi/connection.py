"""Connect/disconnect state machine for the host's Wi-Fi association.

States move NOT_CONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTING ->
NOT_CONNECTED. Failures roll back to the prior stable state and come back
as a ConnectionResult; nothing is raised to callers.
"""
import socket
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Tuple

from config import (
    INTERVALS,
    NETWORK,
    MissingCredentials,
    NetworkNotFound,
    VerificationFailed,
    WifiConnectionError,
    get_logger,
)
from discovery.probes import get_local_interface
from discovery.vendors import classify_device_type
from storage.models import NetworkRecord

logger = get_logger(__name__)


class ConnectionState(Enum):
    NOT_CONNECTED = "not_connected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


@dataclass
class ConnectionResult:
    """Outcome of a connect or disconnect request."""
    success: bool
    message: str
    error: Optional[str] = None  # Exception class name from config.exceptions
    ssid: Optional[str] = None
    assigned_ip: Optional[str] = None
    signal_strength: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def failure(cls, exc: WifiConnectionError, ssid: Optional[str] = None) -> 'ConnectionResult':
        return cls(success=False, message=exc.message, error=type(exc).__name__, ssid=ssid)


class ConnectionManager:
    """Drives the adapter through connect/disconnect and keeps the store in step."""

    def __init__(self, adapter, store, identity_cache=None,
                 sleep: Callable[[float], None] = time.sleep,
                 interface_provider: Callable = get_local_interface):
        self._adapter = adapter
        self._store = store
        self._identity_cache = identity_cache
        self._sleep = sleep
        self._interface_provider = interface_provider
        self._lock = threading.Lock()
        self._state = ConnectionState.NOT_CONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug(f"Connection state {self._state.value} -> {state.value}")
            self._state = state

    def _clear_identities(self) -> None:
        if self._identity_cache is not None:
            self._identity_cache.clear()

    # === Connect ===

    def connect(self, ssid: str, password: Optional[str] = None,
                device_name: Optional[str] = None) -> ConnectionResult:
        """Join ``ssid``; always disconnects from the current network first."""
        with self._lock:
            try:
                return self._connect(ssid, password, device_name or socket.gethostname())
            except WifiConnectionError as e:
                logger.warning(f"Connect to {ssid} failed: {e.message}")
                return ConnectionResult.failure(e, ssid)

    def _connect(self, ssid: str, password: Optional[str], device_name: str) -> ConnectionResult:
        network = self._store.get_network(ssid)
        if network is None or not network.is_available:
            raise NetworkNotFound(f"Network '{ssid}' not found in scan results", {"ssid": ssid})
        if network.is_secured and not (password and password.strip()):
            raise MissingCredentials(f"Password required for secured network '{ssid}'", {"ssid": ssid})

        previous = self._store.get_connected_network()
        previous_ssid = previous.ssid if previous else self._adapter.current_network()
        prior_state = self._state
        self._set_state(ConnectionState.CONNECTING)

        logger.info(f"Connecting to {ssid} (previous: {previous_ssid or 'none'})")
        if not self._adapter.disconnect():
            logger.debug("Pre-connect disconnect reported failure, continuing")
        self._sleep(INTERVALS.DISCONNECT_GRACE_SECONDS)

        if not self._adapter.connect(ssid, password):
            self._roll_back(previous_ssid, prior_state)
            raise WifiConnectionError(f"Failed to connect to '{ssid}'", {"ssid": ssid})

        self._sleep(INTERVALS.CONNECT_SETTLE_SECONDS)
        reported = self._verify(ssid)

        local = self._interface_provider()
        if reported != ssid:
            self._roll_back(previous_ssid, prior_state)
            self._store.record_failed_connection(
                ssid, local.mac if local else "", local.ip if local else "", device_name,
                reason=f"verification_failed: OS reports {reported or NETWORK.NOT_CONNECTED}",
            )
            raise VerificationFailed(
                f"Connected network mismatch: expected '{ssid}', got '{reported or NETWORK.NOT_CONNECTED}'",
                {"expected": ssid, "reported": reported},
            )

        self._set_state(ConnectionState.CONNECTED)
        self._mark_connected(ssid, previous_ssid, local, device_name)
        logger.info(f"Connected to {ssid}")
        return ConnectionResult(
            success=True,
            message=f"Successfully connected to {ssid}",
            ssid=ssid,
            assigned_ip=local.ip if local else None,
            signal_strength=network.signal_strength,
        )

    def _roll_back(self, previous_ssid: Optional[str], prior_state: ConnectionState) -> None:
        """Return to NOT_CONNECTED after the forced disconnect dropped the old association."""
        self._set_state(ConnectionState.NOT_CONNECTED)
        if previous_ssid or prior_state == ConnectionState.CONNECTED:
            self._store.close_connections(reason="network_switch")
            self._store.set_connected(None)
            self._clear_identities()

    def _verify(self, ssid: str) -> Optional[str]:
        reported = None
        for attempt in range(max(1, NETWORK.CONNECT_VERIFY_ATTEMPTS)):
            if attempt:
                self._sleep(INTERVALS.CONNECT_SETTLE_SECONDS)
            reported = self._adapter.current_network()
            if reported == ssid:
                break
        return reported

    def _mark_connected(self, ssid: str, previous_ssid: Optional[str], local, device_name: str) -> None:
        self._store.set_connected(ssid)
        self._store.close_connections(reason="network_switch", exclude_ssid=ssid)
        if previous_ssid and previous_ssid != ssid:
            self._clear_identities()
        if local is not None:
            self._store.open_connection(
                ssid, local.mac, local.ip, device_name, classify_device_type(device_name),
            )

    # === Disconnect ===

    def disconnect(self, device_mac: Optional[str] = None) -> ConnectionResult:
        """Leave the current network and close every open connection record."""
        if device_mac:
            logger.info(f"Disconnect requested for device {device_mac}; disconnecting host")
        with self._lock:
            connected = self._store.get_connected_network()
            ssid = connected.ssid if connected else self._adapter.current_network()
            if self._state == ConnectionState.NOT_CONNECTED and ssid is None:
                return ConnectionResult(success=False, message="No network connection found to disconnect")

            prior_state = self._state
            self._set_state(ConnectionState.DISCONNECTING)
            if not self._adapter.disconnect():
                self._set_state(prior_state)
                return ConnectionResult.failure(
                    WifiConnectionError(f"Failed to disconnect from '{ssid}'"), ssid
                )

            self._store.close_connections(reason="user_disconnect")
            self._store.set_connected(None)
            self._clear_identities()
            self._set_state(ConnectionState.NOT_CONNECTED)

        logger.info(f"Disconnected from {ssid}")
        return ConnectionResult(success=True, message=f"Disconnected from {ssid}", ssid=ssid)

    # === Reconciliation ===

    def sync_with_os(self) -> Optional[Tuple[Optional[str], Optional[str]]]:
        """Reconcile with the network the OS reports.

        Skipped while a connect or disconnect is in flight.

        Returns:
            (old_ssid, new_ssid) when the association changed, else None.
        """
        if not self._lock.acquire(blocking=False):
            return None
        try:
            reported = self._adapter.current_network()
            connected = self._store.get_connected_network()
            known = connected.ssid if connected else None

            if reported is None:
                if known is None and self._state == ConnectionState.NOT_CONNECTED:
                    return None
                self._store.close_connections(reason="network_lost")
                self._store.set_connected(None)
                self._clear_identities()
                self._set_state(ConnectionState.NOT_CONNECTED)
                logger.info(f"Network lost: {known}")
                return known, None

            if reported == known and self._state == ConnectionState.CONNECTED:
                return None

            if self._store.get_network(reported) is None:
                self._store.upsert_network(NetworkRecord(ssid=reported))
            local = self._interface_provider()
            self._set_state(ConnectionState.CONNECTED)
            self._mark_connected(reported, known, None, "")
            if local is not None and self._store.find_open_connection(mac=local.mac) is None:
                name = socket.gethostname()
                self._store.open_connection(reported, local.mac, local.ip, name, classify_device_type(name))
            logger.info(f"OS reports association with {reported}")
            return (known, reported) if known != reported else None
        finally:
            self._lock.release()
