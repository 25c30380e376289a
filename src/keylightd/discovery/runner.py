import asyncio
import traceback
from typing import Callable, Optional

from .base import DiscoverySource
from ..models.device import Observation
from ..utils.logging import get_logger
from ..utils.retry import compute_backoff

logger = get_logger(__name__)


class DiscoveryRunner:
    """
    Drives one discovery source in its own task.

    A scan that raises is logged and restarted after an exponential backoff;
    nothing a source does ends the loop except cancellation.
    """

    def __init__(self, source: DiscoverySource,
                 on_observation: Callable[[Observation], None],
                 base_delay: float = 1.0, max_delay: float = 30.0):
        self.source = source
        self.on_observation = on_observation
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self.run(), name=f"discovery-{self.source.name}"
            )

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def _deliver(self, observation: Observation) -> None:
        try:
            self.on_observation(observation)
        except Exception:
            logger.error(f"Failed to apply observation {observation.id} "
                         f"from {self.source.name}: {traceback.format_exc()}")

    async def run(self) -> None:
        logger.info(f"Starting discovery source '{self.source.name}'")
        while True:
            try:
                async for observation in self.source.scan():
                    self.failures = 0
                    logger.debug(f"{self.source.name} observed {observation.id} at {observation.address}")
                    self._deliver(observation)
                logger.warning(f"Discovery source '{self.source.name}' stopped yielding, restarting")
                delay = self.base_delay
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures += 1
                delay = compute_backoff(self.failures, self.base_delay, self.max_delay)
                logger.error(
                    f"Discovery source '{self.source.name}' failed ({e!r}), "
                    f"retrying in {delay:.1f}s"
                )
            await asyncio.sleep(delay)
