import asyncio
from typing import AsyncIterator, List, Optional

from .base import DiscoverySource
from ..adapters.base import DeviceClient
from ..core.config_manager import DiscoveryConfig, StaticDeviceConfig
from ..models.device import DeviceAddress, Observation


class StaticDiscovery(DiscoverySource):
    """Re-announces a fixed list of devices every cycle, for networks without multicast"""
    name = "static"

    def __init__(self, devices: List[StaticDeviceConfig], interval: float = 10.0):
        self.devices = list(devices)
        self.interval = interval

    @classmethod
    def from_config(cls, config: DiscoveryConfig,
                    client: Optional[DeviceClient] = None) -> "StaticDiscovery":
        return cls(config.static_devices, config.scan_interval)

    async def scan(self) -> AsyncIterator[Observation]:
        while True:
            for device in self.devices:
                yield Observation(
                    id=device.id,
                    address=DeviceAddress(host=device.host, port=device.port),
                    name=device.name,
                    source=self.name,
                )
            await asyncio.sleep(self.interval)
