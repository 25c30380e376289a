# Central event handling system
import asyncio
import traceback
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..utils.logging import get_logger

logger = get_logger(__name__)

EventCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]

ALL_EVENTS = "*"

DEVICE_DISCOVERED = "device.discovered"
DEVICE_ADDRESS_CHANGED = "device.address_changed"
DEVICE_HEALTH = "device.health"
DEVICE_EXPIRED = "device.expired"
COMMAND_RESULT = "command.result"


class EventManager:
    """
    Structured event sink for the engine.

    Producers enqueue and return immediately; ``process_events`` fans every
    event out to the subscribers of its type and to ``"*"`` subscribers.
    """

    def __init__(self):
        self.subscribers: Dict[str, List[EventCallback]] = {}
        self.event_queue: asyncio.Queue = asyncio.Queue()
        self._running = False

    async def publish(self, event_type: str, data: Dict[str, Any]) -> None:
        await self.event_queue.put((event_type, data))

    def publish_nowait(self, event_type: str, data: Dict[str, Any]) -> None:
        self.event_queue.put_nowait((event_type, data))

    async def subscribe(self, event_type: str, callback: EventCallback) -> None:
        self.subscribers.setdefault(event_type, []).append(callback)

    async def _dispatch(self, event_type: str, data: Dict[str, Any]) -> None:
        callbacks = self.subscribers.get(event_type, []) + self.subscribers.get(ALL_EVENTS, [])
        for callback in callbacks:
            try:
                await callback(event_type, data)
            except Exception:
                logger.error(f"Event subscriber failed for {event_type}: {traceback.format_exc()}")

    async def process_events(self) -> None:
        self._running = True
        while self._running:
            event_type, data = await self.event_queue.get()
            try:
                await self._dispatch(event_type, data)
            finally:
                self.event_queue.task_done()

    async def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until everything published so far has been dispatched"""
        await asyncio.wait_for(self.event_queue.join(), timeout)

    def stop(self) -> None:
        self._running = False


class LogEventSink:
    """Writes every event as a single key=value log line"""

    def __init__(self, log=None):
        self.logger = log or get_logger("keylightd.events")

    async def __call__(self, event_type: str, data: Dict[str, Any]) -> None:
        fields = " ".join(f"{key}={value}" for key, value in data.items())
        self.logger.info(f"event={event_type} {fields}")
