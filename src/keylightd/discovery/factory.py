from typing import Dict, List, Optional, Type

from .base import DiscoverySource
from .mdns import MDNSDiscovery
from .static import StaticDiscovery
from ..adapters.base import DeviceClient
from ..core.config_manager import DiscoveryConfig
from ..utils.exceptions import ConfigurationError


class DiscoveryFactory:
    """Factory for creating discovery sources by configured name"""
    _source_types: Dict[str, Type[DiscoverySource]] = {
        "mdns": MDNSDiscovery,
        "static": StaticDiscovery,
    }

    @classmethod
    def register_source_type(cls, name: str, source_class: Type[DiscoverySource]) -> None:
        """Register a new discovery source type"""
        cls._source_types[name] = source_class

    @classmethod
    def create(cls, name: str, config: DiscoveryConfig,
               client: Optional[DeviceClient] = None) -> DiscoverySource:
        if name not in cls._source_types:
            raise ConfigurationError(f"Unknown discovery source: {name}")
        return cls._source_types[name].from_config(config, client)

    @classmethod
    def create_all(cls, config: DiscoveryConfig,
                   client: Optional[DeviceClient] = None) -> List[DiscoverySource]:
        return [cls.create(name, config, client) for name in config.sources]
