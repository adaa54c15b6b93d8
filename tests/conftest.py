"""Pytest configuration and shared fixtures.

This module provides:
- Common test fixtures for data directories, sample tool output, and mocks
- Pytest markers for test categorization (unit, integration, slow)
"""
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock, patch

import pytest

from tests.mocks import FakeAdapter, make_network


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: mark test as a unit test (fast, isolated)")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# =============================================================================
# Directory and Path Fixtures
# =============================================================================


@pytest.fixture
def temp_data_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test data."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# =============================================================================
# Sample Tool Output Fixtures
# =============================================================================


@pytest.fixture
def netsh_networks_output() -> str:
    """`netsh wlan show networks mode=bssid` with two networks."""
    return (
        "Interface name : Wi-Fi\n"
        "There are 2 networks currently visible.\n"
        "\n"
        "SSID 1 : HomeNet\n"
        "    Network type            : Infrastructure\n"
        "    Authentication          : WPA2-Personal\n"
        "    Encryption              : CCMP\n"
        "    BSSID 1                 : aa:bb:cc:00:00:01\n"
        "         Signal             : 82%\n"
        "         Radio type         : 802.11ac\n"
        "         Channel            : 44\n"
        "    BSSID 2                 : aa:bb:cc:00:00:02\n"
        "         Signal             : 90%\n"
        "         Channel            : 6\n"
        "\n"
        "SSID 2 : CoffeeShop\n"
        "    Network type            : Infrastructure\n"
        "    Authentication          : Open\n"
        "    Encryption              : None\n"
        "    BSSID 1                 : aa:bb:cc:00:00:03\n"
        "         Signal             : 40%\n"
        "         Channel            : 11\n"
    )


@pytest.fixture
def nmcli_output() -> str:
    """Terse `nmcli dev wifi list` output with escaped BSSID colons."""
    return (
        "*:AA\\:BB\\:CC\\:00\\:00\\:01:HomeNet:Infra:36:540 Mbit/s:78:▂▄▆_:WPA2\n"
        " :AA\\:BB\\:CC\\:00\\:00\\:02:CoffeeShop:Infra:6:130 Mbit/s:45:▂▄__:\n"
        " :AA\\:BB\\:CC\\:00\\:00\\:03:--:Infra:11:54 Mbit/s:20:▂___:WPA1\n"
    )


@pytest.fixture
def arp_unix_output() -> str:
    """`arp -a` output in BSD/macOS form."""
    return (
        "? (192.168.1.1) at a4:2b:b0:1:2:3 on en0 ifscope [ethernet]\n"
        "? (192.168.1.20) at (incomplete) on en0 ifscope [ethernet]\n"
        "? (192.168.1.30) at dc:a6:32:aa:bb:cc on en0 ifscope [ethernet]\n"
        "? (192.168.1.255) at ff:ff:ff:ff:ff:ff on en0 ifscope [ethernet]\n"
    )


@pytest.fixture
def arp_windows_output() -> str:
    """`arp -a` output in Windows form."""
    return (
        "\n"
        "Interface: 192.168.1.50 --- 0x7\n"
        "  Internet Address      Physical Address      Type\n"
        "  192.168.1.1           a4-2b-b0-01-02-03     dynamic\n"
        "  192.168.1.30          dc-a6-32-aa-bb-cc     dynamic\n"
        "  192.168.1.255         ff-ff-ff-ff-ff-ff     static\n"
        "  224.0.0.22            01-00-5e-00-00-16     static\n"
    )


# =============================================================================
# Mock Fixtures
# =============================================================================


@pytest.fixture
def mock_subprocess() -> Generator[MagicMock, None, None]:
    """Mock subprocess for command execution testing."""
    with patch("subprocess.run") as mock_run:
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout="",
            stderr="",
        )
        yield mock_run


@pytest.fixture
def mock_network_interface() -> Generator[MagicMock, None, None]:
    """Mock network interface detection."""
    import socket

    import psutil

    with patch("psutil.net_if_addrs") as mock_addrs, patch("psutil.net_if_stats") as mock_stats:
        mock_addrs.return_value = {
            "wlan0": [
                MagicMock(family=socket.AF_INET, address="192.168.1.50", netmask="255.255.255.0"),
                MagicMock(family=psutil.AF_LINK, address="aa-bb-cc-dd-ee-01", netmask=None),
            ],
            "lo": [
                MagicMock(family=socket.AF_INET, address="127.0.0.1", netmask="255.0.0.0"),
            ],
        }
        mock_stats.return_value = {
            "wlan0": MagicMock(isup=True),
            "lo": MagicMock(isup=True),
        }
        yield mock_addrs


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    """Adapter that sees HomeNet (secured) and CoffeeShop (open)."""
    return FakeAdapter(networks=[
        make_network("HomeNet", signal=80, security="WPA2", frequency="5GHz", channel="44"),
        make_network("CoffeeShop", signal=40, security="Open", channel="11",
                     bssid="11:22:33:44:55:77"),
    ])
