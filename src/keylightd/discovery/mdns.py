from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional

from zeroconf import ServiceBrowser, ServiceInfo, ServiceListener, Zeroconf

from .base import DiscoverySource
from ..adapters.base import DeviceClient
from ..core.config_manager import DiscoveryConfig
from ..models.device import DeviceAddress, Observation
from ..utils.exceptions import ClientError
from ..utils.helpers import normalize_mac
from ..utils.logging import get_logger
from ..utils.retry import async_retry_with_backoff

logger = get_logger(__name__)

DEFAULT_SERVICE_TYPE = "_elg._tcp.local."


@dataclass(frozen=True)
class AnnouncedService:
    """What an mDNS announcement told us about one service instance"""
    name: str
    host: str
    port: int
    txt: Dict[str, str] = field(default_factory=dict, compare=False)


def decode_txt_properties(properties: Dict[bytes, Optional[bytes]]) -> Dict[str, str]:
    decoded: Dict[str, str] = {}
    for key, value in properties.items():
        key_text = key.decode("utf-8", errors="replace") if isinstance(key, bytes) else str(key)
        if value is None:
            value_text = ""
        elif isinstance(value, bytes):
            value_text = value.decode("utf-8", errors="replace")
        else:
            value_text = str(value)
        decoded[key_text] = value_text
    return decoded


def pick_address(info: ServiceInfo) -> Optional[str]:
    addresses = info.parsed_addresses()
    if not addresses:
        return None
    for address in addresses:
        if ":" not in address:
            return address
    return addresses[0]


def strip_service_suffix(name: str, service_type: str) -> str:
    suffix = f".{service_type}"
    if name.endswith(suffix):
        return name[: -len(suffix)]
    return name.rstrip(".")


def service_from_info(info: ServiceInfo, name: str) -> Optional[AnnouncedService]:
    host = pick_address(info)
    if host is None or not info.port:
        return None
    return AnnouncedService(
        name=name,
        host=host,
        port=info.port,
        txt=decode_txt_properties(info.properties or {}),
    )


class KeyLightListener(ServiceListener):
    """
    Collects announced services. Zeroconf calls this from its own thread,
    so the current set is guarded by a lock and read as a snapshot.
    """

    def __init__(self, info_timeout: float) -> None:
        self._info_timeout_ms = max(int(info_timeout * 1000), 1)
        self._lock = threading.Lock()
        self._found: Dict[str, AnnouncedService] = {}

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        info = zc.get_service_info(type_, name, timeout=self._info_timeout_ms)
        if not info:
            return
        service = service_from_info(info, name)
        if service is None:
            return
        with self._lock:
            self._found[name] = service
        logger.debug(f"mDNS announcement '{name}' at {service.host}:{service.port}")

    def update_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self.add_service(zc, type_, name)

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        with self._lock:
            self._found.pop(name, None)
        logger.debug(f"mDNS service '{name}' went away")

    def services(self) -> List[AnnouncedService]:
        with self._lock:
            return list(self._found.values())


class MDNSDiscovery(DiscoverySource):
    """
    Browses for announced lights over mDNS.

    Device ids come from the hardware address in the TXT ``id`` record. When
    a device announces none, the accessory-info endpoint is asked for its
    serial number or MAC, and only as a last resort the service instance name
    is used. Resolved ids are cached per service instance until the
    service stops being announced.
    """
    name = "mdns"

    def __init__(self, service_type: str = DEFAULT_SERVICE_TYPE, interval: float = 10.0,
                 info_timeout: float = 3.0, client: Optional[DeviceClient] = None):
        self.service_type = service_type
        self.interval = interval
        self.info_timeout = info_timeout
        self.client = client
        self._identity_cache: Dict[str, str] = {}

    @classmethod
    def from_config(cls, config: DiscoveryConfig,
                    client: Optional[DeviceClient] = None) -> "MDNSDiscovery":
        return cls(
            service_type=config.service_type,
            interval=config.scan_interval,
            info_timeout=config.scan_timeout,
            client=client,
        )

    async def scan(self) -> AsyncIterator[Observation]:
        zeroconf = Zeroconf()
        listener = KeyLightListener(self.info_timeout)
        browser = ServiceBrowser(zeroconf, self.service_type, listener)
        logger.debug(f"Browsing for {self.service_type}")
        try:
            # First answers need a moment to arrive
            await asyncio.sleep(self.info_timeout)
            while True:
                services = listener.services()
                self.forget_missing(service.name for service in services)
                for service in services:
                    observation = await self.observe(service)
                    if observation is not None:
                        yield observation
                await asyncio.sleep(self.interval)
        finally:
            browser.cancel()
            await asyncio.to_thread(zeroconf.close)

    def forget_missing(self, announced: Iterable[str]) -> None:
        """Drop cached ids of services that are no longer announced"""
        current = set(announced)
        for name in list(self._identity_cache):
            if name not in current:
                del self._identity_cache[name]

    async def observe(self, service: AnnouncedService) -> Optional[Observation]:
        address = DeviceAddress(host=service.host, port=service.port)
        device_id = await self.resolve_id(service, address)
        if not device_id:
            return None
        instance = strip_service_suffix(service.name, self.service_type)
        return Observation(
            id=device_id,
            address=address,
            name=instance or service.txt.get("md") or None,
            source=self.name,
        )

    async def resolve_id(self, service: AnnouncedService, address: DeviceAddress) -> str:
        announced = normalize_mac(service.txt.get("id", ""))
        if announced:
            return announced

        if service.name in self._identity_cache:
            return self._identity_cache[service.name]

        device_id = ""
        if self.client is not None:
            try:
                identity = await self._fetch_identity(address)
                device_id = normalize_mac(
                    str(identity.get("macAddress") or identity.get("serialNumber") or "")
                )
            except ClientError as e:
                # Skip this cycle rather than register the device under a second id
                logger.debug(f"Identity lookup for {address} failed: {e}")
                return ""

        device_id = device_id or strip_service_suffix(service.name, self.service_type)
        self._identity_cache[service.name] = device_id
        return device_id

    @async_retry_with_backoff(max_retries=2, base_delay=0.5, max_delay=2.0,
                              exceptions=(ClientError,))
    async def _fetch_identity(self, address: DeviceAddress) -> Dict[str, object]:
        return await self.client.fetch_identity(address)
