"""Dependency injection container for NetGuard.

Provides a centralized way to create and manage application dependencies,
making components easier to test and swap out.

Usage:
    from app.dependencies import create_dependencies

    # Create all dependencies
    deps = create_dependencies()

    # Access individual components
    deps.adapter.scan_networks()
    deps.state_store.get_networks(available_only=True)
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config import get_data_dir, get_logger

logger = get_logger(__name__)


@dataclass
class AppDependencies:
    """Container for all application dependencies.

    Using a dataclass makes dependencies explicit and easy to mock in tests.
    Each field represents a component that can be injected.
    """

    # Platform access
    adapter: "PlatformAdapter"

    # State and persistence
    state_store: "StateStore"
    store: "SQLiteStore"

    # Discovery pipeline
    identity_cache: "IdentityCache"
    resolver: "IdentityResolver"
    probe_set: "LANProbeSet"
    orchestrator: "DiscoveryOrchestrator"

    # Connection lifecycle
    connection_manager: "ConnectionManager"

    # Blocking and time limits
    device_manager: "DeviceManager"

    # Event bus (optional, can be shared)
    event_bus: Optional["EventBus"] = None

    def __post_init__(self):
        """Log dependency creation."""
        logger.debug("AppDependencies container created")


def create_dependencies(
    data_dir: Optional[Path] = None,
    event_bus: Optional["EventBus"] = None,
    adapter: Optional["PlatformAdapter"] = None,
) -> AppDependencies:
    """Create all application dependencies.

    Factory function that instantiates all required components
    and wires them together. The identity cache is shared between the
    orchestrator (which fills it) and the connection manager (which
    clears it on disconnect); every record the state store closes also
    drops its cached name.

    Args:
        data_dir: Override the default data directory.
        event_bus: Provide an existing event bus, or one will be created.
        adapter: Provide a platform adapter, or one is picked for this OS.

    Returns:
        AppDependencies container with all components.

    Raises:
        ScanUnavailable: If no adapter exists for the running platform.
        StorageError: If the database cannot be initialized.
    """
    # Import here to avoid circular imports
    from app.devices import DeviceManager
    from app.events import get_event_bus
    from discovery.identity import IdentityCache, IdentityResolver, default_strategies
    from discovery.orchestrator import DiscoveryOrchestrator
    from discovery.probes import LANProbeSet
    from discovery.vendors import OUIDatabase
    from storage.sqlite_store import SQLiteStore
    from storage.state_store import StateStore
    from wifi.adapters import get_platform_adapter
    from wifi.connection import ConnectionManager

    logger.info("Creating application dependencies...")

    # Resolve data directory
    if data_dir is None:
        data_dir = get_data_dir()

    # Create storage first (other components depend on it)
    state_store = StateStore()
    store = SQLiteStore(data_dir=data_dir)

    if adapter is None:
        adapter = get_platform_adapter()

    identity_cache = IdentityCache()
    state_store.add_close_listener(identity_cache.forget_record)
    resolver = IdentityResolver(strategies=default_strategies(OUIDatabase()), cache=identity_cache)
    probe_set = LANProbeSet()
    orchestrator = DiscoveryOrchestrator(state_store, adapter, probe_set=probe_set, resolver=resolver)
    connection_manager = ConnectionManager(adapter, state_store, identity_cache=identity_cache)
    device_manager = DeviceManager(state_store, adapter)

    # Use provided event bus or get global one
    if event_bus is None:
        event_bus = get_event_bus()

    deps = AppDependencies(
        adapter=adapter,
        state_store=state_store,
        store=store,
        identity_cache=identity_cache,
        resolver=resolver,
        probe_set=probe_set,
        orchestrator=orchestrator,
        connection_manager=connection_manager,
        device_manager=device_manager,
        event_bus=event_bus,
    )

    logger.info(f"All dependencies created successfully ({type(adapter).__name__})")
    return deps


def create_mock_dependencies() -> AppDependencies:
    """Create mock dependencies for testing.

    Returns an AppDependencies container with fakes that don't require
    system access: a scripted adapter, an in-memory persistence store,
    no identity strategies (every device gets a fallback name) and only
    the neighbor-table probe.

    Returns:
        AppDependencies with mock implementations.
    """
    from app.devices import DeviceManager
    from app.events import EventBus
    from discovery.identity import IdentityCache, IdentityResolver
    from discovery.orchestrator import DiscoveryOrchestrator
    from discovery.probes import ArpTableProbe, LANProbeSet
    from storage.state_store import StateStore
    from tests.mocks import MOCK_INTERFACE, FakeAdapter, MockPersistentStore
    from wifi.connection import ConnectionManager

    logger.debug("Creating mock dependencies for testing")

    adapter = FakeAdapter()
    state_store = StateStore()
    identity_cache = IdentityCache()
    state_store.add_close_listener(identity_cache.forget_record)
    resolver = IdentityResolver(strategies=[], cache=identity_cache)
    probe_set = LANProbeSet(probes=[ArpTableProbe()])

    return AppDependencies(
        adapter=adapter,
        state_store=state_store,
        store=MockPersistentStore(),
        identity_cache=identity_cache,
        resolver=resolver,
        probe_set=probe_set,
        orchestrator=DiscoveryOrchestrator(
            state_store, adapter, probe_set=probe_set, resolver=resolver,
            interface_provider=lambda: MOCK_INTERFACE,
            own_macs_provider=lambda: {MOCK_INTERFACE.mac},
        ),
        connection_manager=ConnectionManager(
            adapter, state_store, identity_cache=identity_cache,
            sleep=lambda _: None,
            interface_provider=lambda: MOCK_INTERFACE,
        ),
        device_manager=DeviceManager(state_store, adapter),
        event_bus=EventBus(async_mode=False),  # Sync mode for testing
    )
