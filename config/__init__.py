"""Configuration module for NetGuard.

Provides centralized configuration, logging, exceptions, and the
command runner.
"""
from config.constants import (
    ALLOWED_SUBPROCESS_COMMANDS,
    INTERVALS,
    NETWORK,
    STORAGE,
    Intervals,
    NetworkConfig,
    StorageConfig,
    get_data_dir,
    is_debug_enabled,
    load_overrides,
)
from config.exceptions import (
    BlockingFailed,
    ConfigurationError,
    DeviceError,
    DeviceNotFound,
    DiscoveryError,
    DiscoveryInProgress,
    MissingCredentials,
    NetGuardError,
    NetworkNotFound,
    ProbeFailed,
    ScanError,
    ScanTimeout,
    ScanUnavailable,
    StorageError,
    SubprocessError,
    VerificationFailed,
    WifiConnectionError,
)
from config.logging_config import LogContext, get_logger, setup_logging
from config.subprocess_cache import (
    SubprocessCache,
    ToolChecker,
    get_subprocess_cache,
    run_command,
    run_with_fallback,
    safe_run,
)

__all__ = [
    # Constants
    "INTERVALS",
    "STORAGE",
    "NETWORK",
    "Intervals",
    "StorageConfig",
    "NetworkConfig",
    "ALLOWED_SUBPROCESS_COMMANDS",
    "get_data_dir",
    "is_debug_enabled",
    "load_overrides",
    # Exceptions
    "NetGuardError",
    "ScanError",
    "ScanUnavailable",
    "ScanTimeout",
    "WifiConnectionError",
    "NetworkNotFound",
    "MissingCredentials",
    "VerificationFailed",
    "DiscoveryError",
    "DiscoveryInProgress",
    "ProbeFailed",
    "DeviceError",
    "DeviceNotFound",
    "BlockingFailed",
    "StorageError",
    "ConfigurationError",
    "SubprocessError",
    # Logging
    "setup_logging",
    "get_logger",
    "LogContext",
    # Subprocess
    "SubprocessCache",
    "ToolChecker",
    "safe_run",
    "run_command",
    "run_with_fallback",
    "get_subprocess_cache",
]
