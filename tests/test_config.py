"""Tests for the config module."""
import logging
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from config.constants import (
    ALLOWED_SUBPROCESS_COMMANDS,
    INTERVALS,
    NETWORK,
    STORAGE,
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
from config.logging_config import LogContext, get_logger, log_command_result, setup_logging
from config.subprocess_cache import (
    SubprocessCache,
    ToolChecker,
    run_command,
    run_with_fallback,
    safe_run,
)


class TestConstants:
    """Tests for constants module."""

    def test_intervals_are_positive(self):
        """All scheduler intervals should be positive."""
        assert INTERVALS.NETWORK_REFRESH_SECONDS > 0
        assert INTERVALS.DISCOVERY_SECONDS > 0
        assert INTERVALS.SAVE_INTERVAL_SECONDS > 0
        assert INTERVALS.CLEANUP_SECONDS > 0

    def test_default_schedule(self):
        """Refresh every 30s, discovery every 2 minutes, cleanup every 6 hours."""
        assert INTERVALS.NETWORK_REFRESH_SECONDS == 30.0
        assert INTERVALS.DISCOVERY_SECONDS == 120.0
        assert INTERVALS.CLEANUP_SECONDS == 6 * 3600
        assert INTERVALS.STALE_NETWORK_SECONDS == 120.0

    def test_ping_sweep_starts_with_gateways(self):
        """The sweep probes .1 and .254 before the bulk ranges."""
        assert NETWORK.PING_SWEEP_RANGES[0] == (1, 1)
        assert NETWORK.PING_SWEEP_RANGES[1] == (254, 254)

    def test_every_probe_port_has_a_hint(self):
        hints = dict(NETWORK.PORT_SERVICE_HINTS)
        assert all(port in hints for port in NETWORK.PROBE_PORTS)

    def test_storage_config_has_required_fields(self):
        """Storage config should have all required fields."""
        assert STORAGE.DATA_DIR_NAME
        assert STORAGE.DATABASE_FILE
        assert STORAGE.LOG_FILE
        assert STORAGE.RETENTION_DAYS > 0

    def test_constants_are_frozen(self):
        with pytest.raises(Exception):
            INTERVALS.DISCOVERY_SECONDS = 1.0


class TestEnvironmentOverrides:
    """Tests for environment-driven configuration."""

    def test_data_dir_override(self, monkeypatch, temp_data_dir):
        monkeypatch.setenv("NETGUARD_DATA_DIR", str(temp_data_dir))
        assert get_data_dir() == temp_data_dir

    def test_data_dir_default(self, monkeypatch):
        monkeypatch.delenv("NETGUARD_DATA_DIR", raising=False)
        assert get_data_dir().name == STORAGE.DATA_DIR_NAME

    @pytest.mark.parametrize("value,expected", [
        ("", False), ("0", False), ("off", False), ("1", True), ("TRUE", True), ("yes", True),
    ])
    def test_debug_flag(self, monkeypatch, value, expected):
        monkeypatch.setenv("NETGUARD_DEBUG", value)
        assert is_debug_enabled() is expected

    def test_invalid_debug_flag_raises(self, monkeypatch):
        monkeypatch.setenv("NETGUARD_DEBUG", "sometimes")
        with pytest.raises(ConfigurationError):
            is_debug_enabled()

    def test_interval_override(self):
        intervals = load_overrides({"NETGUARD_DISCOVERY_SECONDS": "300"})
        assert intervals.DISCOVERY_SECONDS == 300.0
        assert intervals.NETWORK_REFRESH_SECONDS == INTERVALS.NETWORK_REFRESH_SECONDS

    def test_no_overrides_returns_defaults(self):
        assert load_overrides({}) is INTERVALS

    @pytest.mark.parametrize("raw", ["soon", "0", "-5"])
    def test_invalid_interval_override(self, raw):
        with pytest.raises(ConfigurationError):
            load_overrides({"NETGUARD_SAVE_INTERVAL_SECONDS": raw})


class TestExceptions:
    """Tests for custom exceptions."""

    def test_base_exception(self):
        """NetGuardError should work with message and details."""
        err = NetGuardError("Test error", {"key": "value"})
        assert err.message == "Test error"
        assert err.details == {"key": "value"}
        assert "Test error" in str(err)
        assert "key" in str(err)

    def test_base_exception_without_details(self):
        err = NetGuardError("Plain")
        assert str(err) == "Plain"
        assert err.details == {}

    @pytest.mark.parametrize("exc_class,parent", [
        (ScanUnavailable, ScanError),
        (ScanTimeout, ScanError),
        (NetworkNotFound, WifiConnectionError),
        (MissingCredentials, WifiConnectionError),
        (VerificationFailed, WifiConnectionError),
        (DiscoveryInProgress, DiscoveryError),
        (ProbeFailed, DiscoveryError),
        (DeviceNotFound, DeviceError),
        (BlockingFailed, DeviceError),
        (StorageError, NetGuardError),
        (ConfigurationError, NetGuardError),
        (SubprocessError, NetGuardError),
    ])
    def test_hierarchy(self, exc_class, parent):
        assert issubclass(exc_class, parent)
        assert issubclass(exc_class, NetGuardError)

    def test_connection_error_does_not_shadow_builtin_hierarchy(self):
        """The taxonomy WifiConnectionError is not the builtin one."""
        assert not issubclass(WifiConnectionError, OSError)

    def test_probe_failed_records_probe(self):
        err = ProbeFailed("ARP unreadable", probe="arp")
        assert err.probe == "arp"
        assert err.details["probe"] == "arp"

    def test_subprocess_error_fields(self):
        err = SubprocessError("failed", command=["arp", "-a"], returncode=1, stderr="boom")
        assert err.command == ["arp", "-a"]
        assert err.returncode == 1
        assert err.details["stderr"] == "boom"
        assert not err.timed_out

    def test_subprocess_error_timed_out(self):
        err = SubprocessError("slow", command=["dns-sd"], details={"timeout": 2.0})
        assert err.timed_out


class TestLogging:
    """Tests for logging configuration."""

    def test_get_logger_is_child_of_root(self):
        logger = get_logger("discovery.identity")
        assert logger.name == "netguard.discovery.identity"

    def test_get_logger_is_cached(self):
        assert get_logger("wifi.adapters") is get_logger("wifi.adapters")

    def test_setup_logging_creates_log_file(self, temp_data_dir):
        logger = setup_logging(data_dir=temp_data_dir, debug=True, console_output=False)
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()
        assert (temp_data_dir / STORAGE.LOG_FILE).exists()
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

    def test_log_context_measures_duration(self):
        logger = MagicMock()
        with LogContext(logger, "Wi-Fi scan") as ctx:
            pass
        assert ctx.duration_ms >= 0
        assert logger.log.call_count == 2

    def test_log_context_does_not_suppress(self):
        logger = MagicMock()
        with pytest.raises(ValueError):
            with LogContext(logger, "Device discovery"):
                raise ValueError("boom")
        logger.error.assert_called_once()

    def test_command_result_omits_arguments(self):
        logger = MagicMock()
        log_command_result(logger, ["nmcli", "dev", "wifi", "connect", "HomeNet", "password", "s3cret"], 0, 12.0)
        level, message = logger.log.call_args[0]
        assert level == logging.DEBUG
        assert "nmcli" in message
        assert "s3cret" not in message

    def test_command_failure_logged_at_info(self):
        logger = MagicMock()
        log_command_result(logger, ["iwgetid", "-r"], 255, 3.0)
        assert logger.log.call_args[0][0] == logging.INFO


class TestSubprocessCache:
    """Tests for SubprocessCache and the command runner helpers."""

    def test_cache_hit(self, mock_subprocess):
        mock_subprocess.return_value = MagicMock(returncode=0, stdout="out", stderr="")
        cache = SubprocessCache(default_ttl=60)
        cache.run(["nmcli", "--version"])
        cache.run(["nmcli", "--version"])
        assert mock_subprocess.call_count == 1
        assert cache.get_stats()["hits"] == 1

    def test_bypass_cache(self, mock_subprocess):
        cache = SubprocessCache(default_ttl=60)
        cache.run(["arp", "-a"], bypass_cache=True)
        cache.run(["arp", "-a"], bypass_cache=True)
        assert mock_subprocess.call_count == 2

    def test_invalidate(self, mock_subprocess):
        cache = SubprocessCache(default_ttl=60)
        cache.run(["arp", "-a"])
        cache.invalidate(["arp", "-a"])
        cache.run(["arp", "-a"])
        assert mock_subprocess.call_count == 2

    def test_timeout_raises_with_partial_output(self, mock_subprocess):
        mock_subprocess.side_effect = subprocess.TimeoutExpired(
            cmd=["dns-sd"], timeout=2.0, output=b"Lookup 40.1.168.192.in-addr.arpa PTR IN tv.local.\n"
        )
        cache = SubprocessCache()
        with pytest.raises(SubprocessError) as exc_info:
            cache.run(["dns-sd", "-Q", "x"], bypass_cache=True, timeout=2.0)
        assert exc_info.value.timed_out
        assert "tv.local." in exc_info.value.stdout

    def test_missing_binary_raises(self, mock_subprocess):
        mock_subprocess.side_effect = FileNotFoundError()
        with pytest.raises(SubprocessError) as exc_info:
            SubprocessCache().run(["iwgetid", "-r"], bypass_cache=True)
        assert "not found" in exc_info.value.message
        assert not exc_info.value.timed_out

    def test_safe_run_rejects_unlisted_command(self, mock_subprocess):
        with pytest.raises(SubprocessError):
            safe_run(["rm", "-rf", "/"])
        mock_subprocess.assert_not_called()

    def test_safe_run_accepts_windows_exe(self, mock_subprocess):
        safe_run(["C:\\Windows\\System32\\netsh.exe", "wlan", "show", "interfaces"])
        mock_subprocess.assert_called_once()

    def test_safe_run_never_uses_shell(self, mock_subprocess):
        safe_run(["nmcli", "dev", "wifi", "connect", "My Net; reboot"])
        _, kwargs = mock_subprocess.call_args
        assert not kwargs.get("shell", False)
        assert mock_subprocess.call_args[0][0][-1] == "My Net; reboot"

    def test_allowlist_covers_platform_tools(self):
        for tool in ("netsh", "nmcli", "iwlist", "airport", "arp", "ping", "nslookup"):
            assert tool in ALLOWED_SUBPROCESS_COMMANDS

    def test_run_command_returns_stdout(self, mock_subprocess):
        mock_subprocess.return_value = MagicMock(returncode=0, stdout="HomeNet\n", stderr="")
        assert run_command(["iwgetid", "-r"]) == "HomeNet\n"

    def test_run_command_none_on_nonzero(self, mock_subprocess):
        mock_subprocess.return_value = MagicMock(returncode=255, stdout="", stderr="")
        assert run_command(["iwgetid", "-r"]) is None

    def test_run_command_none_on_timeout(self, mock_subprocess):
        mock_subprocess.side_effect = subprocess.TimeoutExpired(cmd=["host"], timeout=5)
        assert run_command(["host", "192.168.1.1"]) is None

    def test_run_with_fallback_uses_second(self, mock_subprocess):
        mock_subprocess.side_effect = [
            MagicMock(returncode=1, stdout="", stderr="no ip"),
            MagicMock(returncode=0, stdout="arp output", stderr=""),
        ]
        result = run_with_fallback([["ip", "neigh", "show"], ["arp", "-an"]])
        assert result.stdout == "arp output"

    def test_run_with_fallback_all_fail(self, mock_subprocess):
        mock_subprocess.side_effect = FileNotFoundError()
        assert run_with_fallback([["ip", "neigh"], ["arp", "-an"]]) is None


class TestToolChecker:
    """Tests for ToolChecker."""

    def setup_method(self):
        ToolChecker.reset()

    def test_has_tool_uses_which(self):
        with patch("shutil.which", return_value="/usr/bin/nmcli") as which:
            assert ToolChecker.has_tool("nmcli")
            assert ToolChecker.has_tool("nmcli")
        which.assert_called_once_with("nmcli")

    def test_absolute_path_checks_existence(self, temp_data_dir):
        missing = temp_data_dir / "airport"
        assert not ToolChecker.has_tool(str(missing))
