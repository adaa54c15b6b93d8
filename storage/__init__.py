"""Network/connection state and its persistence."""

from .models import ConnectionRecord, ConnectionStatus, NetworkRecord, normalize_mac
from .sqlite_store import SQLiteStore
from .state_store import StateStore

__all__ = [
    "ConnectionRecord",
    "ConnectionStatus",
    "NetworkRecord",
    "SQLiteStore",
    "StateStore",
    "normalize_mac",
]
