# Abstract base class for device transports
# Each wire protocol gets its own module implementing this interface

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..models.device import Command, DeviceAddress, DeviceLimits, DeviceState


class DeviceClient(ABC):
    """
    Talks to one device address at a time.

    ``send`` returns the device state after the command or raises a
    ``ClientError`` subclass: ``DeviceUnreachableError`` for connection
    problems and timeouts, ``ProtocolError`` for malformed responses,
    ``CommandRejectedError`` when the device refuses.
    """

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def send(self, address: DeviceAddress, command: Command,
                   limits: Optional[DeviceLimits] = None) -> DeviceState:
        pass

    async def fetch_identity(self, address: DeviceAddress) -> Dict[str, Any]:
        """Hardware identity of the device at ``address``. Override if supported."""
        return {}
