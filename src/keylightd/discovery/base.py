from abc import ABC, abstractmethod
from typing import AsyncIterator

from ..models.device import Observation


class DiscoverySource(ABC):
    """
    Base class for all discovery transports.

    ``scan`` returns an async generator that yields observations forever,
    pausing between cycles on its own. Calling ``scan`` again starts a fresh
    generator, which is how a failed scan is restarted.
    """
    name: str = "base"

    @abstractmethod
    def scan(self) -> AsyncIterator[Observation]:
        pass
