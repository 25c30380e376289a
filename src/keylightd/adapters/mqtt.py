import asyncio
import json
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import aiomqtt as mqtt
from aiomqtt import Will

from ..core.config_manager import MQTTSinkConfig
from ..utils.logging import get_logger
from ..utils.retry import compute_backoff

logger = get_logger(__name__)


def encode_event(event_type: str, data: Dict[str, Any]) -> bytes:
    body = {"event": event_type, "timestamp": datetime.now().isoformat(), **data}
    return json.dumps(body, default=str).encode()


class MQTTEventSink:
    """
    Publishes engine events to an MQTT broker.

    Events are queued and published by a single worker that reconnects with
    exponential backoff. A full queue drops the event with a warning rather
    than slowing the engine down.

    Usage::

        sink = MQTTEventSink(MQTTSinkConfig(enabled=True, host="broker.lan"))
        await sink.connect()
        await event_manager.subscribe("*", sink)
        ...
        await sink.disconnect()
    """

    def __init__(self, config: MQTTSinkConfig):
        self.config = config
        self.connected = asyncio.Event()
        self._stop_flag = asyncio.Event()
        self._queue: "asyncio.Queue[Tuple[str, bytes]]" = asyncio.Queue(maxsize=config.queue_size)
        self._publisher_task: Optional[asyncio.Task] = None

    @property
    def status_topic(self) -> str:
        return f"{self.config.topic_prefix}/status"

    def topic_for(self, event_type: str) -> str:
        return f"{self.config.topic_prefix}/{event_type.replace('.', '/')}"

    async def __call__(self, event_type: str, data: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((self.topic_for(event_type), encode_event(event_type, data)))
        except asyncio.QueueFull:
            logger.warning(f"MQTT publish queue full, dropping {event_type} event")

    def _client(self) -> mqtt.Client:
        will = Will(topic=self.status_topic, payload="offline", qos=1, retain=True)
        return mqtt.Client(
            hostname=self.config.host,
            port=self.config.port,
            username=self.config.username,
            password=self.config.password,
            keepalive=self.config.keepalive,
            identifier=self.config.client_id,
            will=will,
        )

    async def _publish_worker(self) -> None:
        attempt = 0
        pending: Optional[Tuple[str, bytes]] = None
        while not self._stop_flag.is_set():
            try:
                async with self._client() as client:
                    attempt = 0
                    self.connected.set()
                    logger.info(f"Connected to MQTT broker {self.config.host}:{self.config.port}")
                    await client.publish(self.status_topic, payload="online", qos=1, retain=True)
                    while True:
                        if pending is None:
                            pending = await self._queue.get()
                        topic, payload = pending
                        await client.publish(topic, payload=payload, qos=self.config.qos)
                        logger.debug(f"Published to {topic}")
                        pending = None
                        self._queue.task_done()
            except mqtt.MqttError as e:
                self.connected.clear()
                attempt += 1
                wait_time = compute_backoff(attempt, self.config.reconnect_interval, 60.0)
                logger.warning(f"MQTT connection lost ({e}), reconnecting in {wait_time:.1f}s")
                await asyncio.sleep(wait_time)

    async def connect(self) -> None:
        """Start the publisher; the broker connection is made in the background"""
        self._stop_flag.clear()
        if self._publisher_task is None or self._publisher_task.done():
            self._publisher_task = asyncio.create_task(self._publish_worker(), name="mqtt-events")

    async def disconnect(self) -> None:
        self._stop_flag.set()
        if self._publisher_task and not self._publisher_task.done():
            self._publisher_task.cancel()
            try:
                await self._publisher_task
            except asyncio.CancelledError:
                pass
        self._publisher_task = None
        self.connected.clear()
        logger.info("MQTT event sink stopped")
