"""Custom exception hierarchy for NetGuard.

Provides specific exceptions for scan, connection, discovery and storage
failures, enabling callers to turn them into explicit results.
"""

from typing import Optional


class NetGuardError(Exception):
    """Base exception for all NetGuard errors.

    All custom exceptions in this application should inherit from this class.
    This allows catching all application-specific errors with a single except clause.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional error context.
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


# =============================================================================
# Wi-Fi scanning
# =============================================================================


class ScanError(NetGuardError):
    """Wi-Fi scan errors.

    Raised by platform adapters when the native scan tool cannot produce
    output. Callers above the adapter treat it as an empty scan.
    """

    pass


class ScanUnavailable(ScanError):
    """No usable scan tool exists for this OS.

    Examples:
        >>> raise ScanUnavailable("No Wi-Fi scan tool found", {"platform": "linux"})
    """

    pass


class ScanTimeout(ScanError):
    """The scan tool did not finish within its timeout."""

    pass


# =============================================================================
# Connection lifecycle
# =============================================================================


class WifiConnectionError(NetGuardError):
    """Network connection related errors.

    Raised when there are issues with:
    - Associating with a Wi-Fi network
    - Dropping the current association
    - Reading the currently associated network

    Examples:
        >>> raise WifiConnectionError("Failed to connect", {"ssid": "Home5G"})
    """

    pass


class NetworkNotFound(WifiConnectionError):
    """Connect was requested for an SSID absent from the last scan."""

    pass


class MissingCredentials(WifiConnectionError):
    """The network is secured and no password was supplied."""

    pass


class VerificationFailed(WifiConnectionError):
    """The connect command ran but the OS reports a different or no network."""

    pass


# =============================================================================
# LAN discovery
# =============================================================================


class DiscoveryError(NetGuardError):
    """Device discovery errors."""

    pass


class DiscoveryInProgress(DiscoveryError):
    """A discovery pass is already running.

    This is a no-op signal rather than a failure.
    """

    pass


class ProbeFailed(DiscoveryError):
    """One LAN probe strategy failed.

    Attributes:
        probe: Name of the probe that failed.

    Examples:
        >>> raise ProbeFailed("ARP table unreadable", probe="arp")
    """

    def __init__(self, message: str, probe: Optional[str] = None, details: Optional[dict] = None):
        details = details or {}
        if probe:
            details["probe"] = probe
        super().__init__(message, details)
        self.probe = probe


# =============================================================================
# Device management
# =============================================================================


class DeviceError(NetGuardError):
    """Device block and time-limit errors.

    Examples:
        >>> raise DeviceError("Daily limit cannot be negative", {"mac": "DC:A6:32:AA:BB:CC"})
    """

    pass


class DeviceNotFound(DeviceError):
    """No currently connected record exists for the MAC."""

    pass


class BlockingFailed(DeviceError):
    """The firewall command for a block or unblock did not succeed."""

    pass


# =============================================================================
# Infrastructure
# =============================================================================


class StorageError(NetGuardError):
    """Data persistence errors.

    Raised when there are issues with:
    - Database operations
    - File permissions
    - Data corruption

    Examples:
        >>> raise StorageError("Failed to save snapshot", {"path": "/path/to/db"})
    """

    pass


class ConfigurationError(NetGuardError):
    """Settings and configuration errors.

    Raised when there are issues with:
    - Invalid configuration values
    - Environment overrides that cannot be parsed

    Examples:
        >>> raise ConfigurationError("Invalid interval", {"value": -10})
    """

    pass


class SubprocessError(NetGuardError):
    """Subprocess execution errors.

    Raised when there are issues with:
    - Command execution failures
    - Timeouts
    - Permission denied
    - Command not found

    Attributes:
        command: The command that failed.
        returncode: Exit code if available.
        stdout: Standard output if available.
        stderr: Standard error if available.

    Examples:
        >>> raise SubprocessError(
        ...     "Command failed",
        ...     details={"command": ["ping", "-c", "1", "192.168.1.1"], "returncode": 1}
        ... )
    """

    def __init__(
        self,
        message: str,
        command: Optional[list] = None,
        returncode: Optional[int] = None,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        details = details or {}
        if command:
            details["command"] = command
        if returncode is not None:
            details["returncode"] = returncode
        if stdout:
            details["stdout"] = stdout[:500]  # Truncate long output
        if stderr:
            details["stderr"] = stderr[:500]

        super().__init__(message, details)
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def timed_out(self) -> bool:
        """True when the failure was a timeout."""
        return "timeout" in self.details
