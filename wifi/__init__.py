"""Wi-Fi scanning and association.

Modules:
    parsers: Parsers for netsh, airport, nmcli, iwlist and ARP output
    adapters: Per-platform command sets
    connection: Connect/disconnect state machine
"""
from .adapters import LinuxAdapter, MacOSAdapter, PlatformAdapter, WindowsAdapter, get_platform_adapter
from .connection import ConnectionManager, ConnectionResult, ConnectionState

__all__ = [
    "ConnectionManager",
    "ConnectionResult",
    "ConnectionState",
    "LinuxAdapter",
    "MacOSAdapter",
    "PlatformAdapter",
    "WindowsAdapter",
    "get_platform_adapter",
]
