"""LAN device discovery components.

Modules:
    probes: ARP, ping sweep, port and broadcast probes
    identity: Device naming strategy chain and cache
    vendors: OUI vendor lookup and device-type classification
    orchestrator: Single-flight discovery pass
"""
from .identity import IdentityCache, IdentityResolver, default_strategies
from .orchestrator import DiscoveryOrchestrator, DiscoveryReport
from .probes import LANProbeSet, ProbeContext, ProbeResult, get_local_interface
from .vendors import DeviceType, OUIDatabase, classify_device_type

__all__ = [
    "DeviceType",
    "DiscoveryOrchestrator",
    "DiscoveryReport",
    "IdentityCache",
    "IdentityResolver",
    "LANProbeSet",
    "OUIDatabase",
    "ProbeContext",
    "ProbeResult",
    "classify_device_type",
    "default_strategies",
    "get_local_interface",
]
