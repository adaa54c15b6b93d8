"""Tests for the platform Wi-Fi adapters."""
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from config import ScanUnavailable, ToolChecker
from wifi.adapters import LinuxAdapter, MacOSAdapter, WindowsAdapter, get_platform_adapter


def completed(stdout="", returncode=0, stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture(autouse=True)
def reset_tool_checker():
    ToolChecker.reset()
    yield
    ToolChecker.reset()


class TestPlatformSelection:
    """Tests for get_platform_adapter."""

    @pytest.mark.parametrize("platform,adapter_class", [
        ("win32", WindowsAdapter),
        ("darwin", MacOSAdapter),
        ("linux", LinuxAdapter),
    ])
    def test_selects_adapter(self, platform, adapter_class):
        assert isinstance(get_platform_adapter(platform), adapter_class)

    def test_unsupported_platform(self):
        with pytest.raises(ScanUnavailable):
            get_platform_adapter("sunos5")


class TestWindowsAdapter:
    """Tests for the netsh adapter."""

    def test_scan_parses_netsh(self, mock_subprocess, netsh_networks_output):
        mock_subprocess.return_value = completed(netsh_networks_output)
        records = WindowsAdapter().scan_networks()
        assert [r.ssid for r in records] == ["HomeNet", "CoffeeShop"]
        cmd = mock_subprocess.call_args[0][0]
        assert cmd[:3] == ["netsh", "wlan", "show"]

    def test_scan_failure_returns_empty(self, mock_subprocess):
        mock_subprocess.return_value = completed("", returncode=1)
        assert WindowsAdapter().scan_networks() == []

    def test_scan_timeout_returns_empty(self, mock_subprocess):
        mock_subprocess.side_effect = subprocess.TimeoutExpired(cmd=["netsh"], timeout=15)
        assert WindowsAdapter().scan_networks() == []

    def test_connect_command_uses_profile(self):
        cmd = WindowsAdapter().connect_command("HomeNet", "secret")
        assert cmd == ["netsh", "wlan", "connect", "name=HomeNet"]
        assert "secret" not in " ".join(cmd)

    def test_ping_command(self):
        assert WindowsAdapter().ping_command("192.168.1.1", 1.5) == [
            "ping", "-n", "1", "-w", "1500", "192.168.1.1",
        ]

    def test_read_arp_table(self, mock_subprocess, arp_windows_output):
        mock_subprocess.return_value = completed(arp_windows_output)
        adapter = WindowsAdapter()
        assert adapter.arp_lookup("192.168.1.30") == "DC:A6:32:AA:BB:CC"
        assert adapter.arp_lookup("192.168.1.99") == ""


class TestMacOSAdapter:
    """Tests for the airport/system_profiler adapter."""

    def test_falls_back_to_system_profiler(self, mock_subprocess):
        output = (
            "          Other Local Wi-Fi Networks:\n"
            "            Neighbor:\n"
            "              Channel: 6 (2GHz, 20MHz)\n"
            "              Security: WPA2 Personal\n"
        )
        mock_subprocess.return_value = completed(output)
        with patch.object(ToolChecker, "has_tool", return_value=False):
            records = MacOSAdapter().scan_networks()
        assert [r.ssid for r in records] == ["Neighbor"]
        assert mock_subprocess.call_args[0][0] == ["system_profiler", "SPAirPortDataType"]

    def test_connect_command_appends_password(self):
        adapter = MacOSAdapter()
        adapter._wifi_interface = "en0"
        assert adapter.connect_command("Home Net", "pw") == [
            "networksetup", "-setairportnetwork", "en0", "Home Net", "pw",
        ]
        assert adapter.connect_command("Cafe", None)[-1] == "Cafe"

    def test_disconnect_toggles_radio(self, mock_subprocess):
        sleeps = []
        adapter = MacOSAdapter(sleep=sleeps.append)
        adapter._wifi_interface = "en0"
        assert adapter.disconnect()
        commands = [c[0][0] for c in mock_subprocess.call_args_list]
        assert commands[0][-1] == "off"
        assert commands[1][-1] == "on"
        assert len(sleeps) == 1

    def test_disconnect_stops_on_failure(self, mock_subprocess):
        mock_subprocess.return_value = completed(returncode=1)
        adapter = MacOSAdapter(sleep=lambda _: None)
        adapter._wifi_interface = "en0"
        assert not adapter.disconnect()
        assert mock_subprocess.call_count == 1

    def test_current_network(self, mock_subprocess):
        mock_subprocess.return_value = completed("Current Wi-Fi Network: HomeNet\n")
        adapter = MacOSAdapter()
        adapter._wifi_interface = "en0"
        assert adapter.current_network() == "HomeNet"

    def test_wifi_interface_default(self, mock_subprocess):
        mock_subprocess.side_effect = FileNotFoundError()
        with patch("config.subprocess_cache._global_cache", None):
            assert MacOSAdapter().wifi_interface == "en0"


class TestLinuxAdapter:
    """Tests for the nmcli/iwlist adapter."""

    def test_scan_with_nmcli(self, mock_subprocess, nmcli_output):
        sleeps = []
        mock_subprocess.return_value = completed(nmcli_output)
        with patch.object(ToolChecker, "has_tool", return_value=True):
            records = LinuxAdapter(sleep=sleeps.append).scan_networks()
        assert [r.ssid for r in records] == ["HomeNet", "CoffeeShop"]
        first_cmd = mock_subprocess.call_args_list[0][0][0]
        assert first_cmd == ["nmcli", "dev", "wifi", "rescan"]
        assert sleeps == [2.0]

    def test_scan_falls_back_to_iwlist(self, mock_subprocess):
        iwlist = (
            "          Cell 01 - Address: AA:BB:CC:00:00:01\n"
            "                    Channel:6\n"
            "                    Encryption key:off\n"
            "                    ESSID:\"FreeWifi\"\n"
        )
        mock_subprocess.return_value = completed(iwlist)
        adapter = LinuxAdapter()
        adapter._wifi_interface = "wlan0"
        with patch.object(ToolChecker, "has_tool", return_value=False):
            records = adapter.scan_networks()
        assert [r.ssid for r in records] == ["FreeWifi"]
        assert mock_subprocess.call_args[0][0] == ["iwlist", "wlan0", "scan"]

    def test_both_tools_missing(self, mock_subprocess):
        mock_subprocess.side_effect = FileNotFoundError()
        adapter = LinuxAdapter()
        adapter._wifi_interface = "wlan0"
        with patch.object(ToolChecker, "has_tool", return_value=False):
            assert adapter.scan_networks() == []

    def test_connect_passes_ssid_as_single_argument(self, mock_subprocess):
        adapter = LinuxAdapter()
        assert adapter.connect("Home Net", "p@ss word")
        cmd = mock_subprocess.call_args[0][0]
        assert cmd == ["nmcli", "dev", "wifi", "connect", "Home Net", "password", "p@ss word"]

    def test_connect_nonzero_exit(self, mock_subprocess):
        mock_subprocess.return_value = completed(returncode=4, stderr="Secrets were required")
        assert not LinuxAdapter().connect("HomeNet", "bad")

    def test_current_network(self, mock_subprocess):
        mock_subprocess.return_value = completed("HomeNet\n")
        assert LinuxAdapter().current_network() == "HomeNet"

    def test_current_network_not_connected(self, mock_subprocess):
        mock_subprocess.return_value = completed("", returncode=255)
        assert LinuxAdapter().current_network() is None

    def test_arp_falls_back_to_arp_command(self, mock_subprocess, arp_unix_output):
        mock_subprocess.side_effect = [
            completed("", returncode=1),
            completed(arp_unix_output),
        ]
        entries = LinuxAdapter().read_arp_table()
        assert ("192.168.1.30", "DC:A6:32:AA:BB:CC") in entries

    def test_ping(self, mock_subprocess):
        adapter = LinuxAdapter()
        assert adapter.ping("192.168.1.1", 1.5)
        assert mock_subprocess.call_args[0][0] == ["ping", "-c", "1", "-W", "2", "192.168.1.1"]
        mock_subprocess.return_value = completed(returncode=1)
        assert not adapter.ping("192.168.1.2", 1.5)

    def test_wifi_interface_from_iwconfig(self, mock_subprocess):
        mock_subprocess.return_value = completed("wlp2s0    IEEE 802.11  ESSID:off/any\n")
        assert LinuxAdapter().wifi_interface == "wlp2s0"


class TestDeviceBlocking:
    """Tests for the per-device firewall commands."""

    def test_linux_drops_both_directions(self, mock_subprocess):
        assert LinuxAdapter().block_device("192.168.1.30")
        commands = [c[0][0] for c in mock_subprocess.call_args_list]
        assert commands == [
            ["iptables", "-A", "INPUT", "-s", "192.168.1.30", "-j", "DROP"],
            ["iptables", "-A", "OUTPUT", "-d", "192.168.1.30", "-j", "DROP"],
        ]

    def test_linux_unblock_deletes_rules(self, mock_subprocess):
        assert LinuxAdapter().unblock_device("192.168.1.30")
        commands = [c[0][0] for c in mock_subprocess.call_args_list]
        assert [cmd[1] for cmd in commands] == ["-D", "-D"]

    def test_block_stops_on_first_failure(self, mock_subprocess):
        mock_subprocess.return_value = completed(returncode=1, stderr="Permission denied")
        assert not LinuxAdapter().block_device("192.168.1.30")
        assert mock_subprocess.call_count == 1

    def test_windows_firewall_rules(self):
        adapter = WindowsAdapter()
        block = adapter.block_commands("192.168.1.30")
        assert [cmd[6] for cmd in block] == ["dir=in", "dir=out"]
        assert all("remoteip=192.168.1.30" in cmd for cmd in block)
        assert adapter.unblock_commands("192.168.1.30") == [[
            "netsh", "advfirewall", "firewall", "delete", "rule", "name=NetGuard-Block-192.168.1.30",
        ]]

    def test_macos_uses_pf_table(self):
        adapter = MacOSAdapter()
        assert adapter.block_commands("192.168.1.30") == [
            ["pfctl", "-t", "netguard_blocked", "-T", "add", "192.168.1.30"],
        ]
        assert adapter.unblock_commands("192.168.1.30")[0][4] == "delete"
