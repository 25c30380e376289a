from .base import DiscoverySource
from .factory import DiscoveryFactory
from .mdns import MDNSDiscovery
from .runner import DiscoveryRunner
from .static import StaticDiscovery

__all__ = [
    "DiscoveryFactory",
    "DiscoveryRunner",
    "DiscoverySource",
    "MDNSDiscovery",
    "StaticDiscovery",
]
