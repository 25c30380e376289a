# Per-device command queues: one command in flight per device, FIFO per device
import asyncio
import itertools
import traceback
from typing import Awaitable, Callable, Dict, Optional, Tuple

from ..models.device import Command, DeviceState
from ..utils.exceptions import (
    BackpressureError,
    DeviceUnreachableError,
    EngineStoppedError,
    KeylightdError,
)
from ..utils.logging import get_logger

logger = get_logger(__name__)

Executor = Callable[[Command], Awaitable[DeviceState]]


class DeviceQueue:
    """Bounded FIFO of commands for one device, drained by a single worker task"""

    def __init__(self, device_id: str, executor: Executor, depth: int, timeout: float):
        self.device_id = device_id
        self._executor = executor
        self._timeout = timeout
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=depth)
        self._seq = itertools.count(1)
        self._worker: Optional[asyncio.Task] = None
        self.in_flight: Optional[Command] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, command: Command) -> Tuple[Command, "asyncio.Future[DeviceState]"]:
        loop = asyncio.get_running_loop()
        if self._queue.full():
            raise BackpressureError(
                f"Command queue for {self.device_id} is full ({self._queue.maxsize} pending)"
            )
        # Deep copy so the queued command shares no parameters with the caller's
        command = command.model_copy(update={"seq": next(self._seq)}, deep=True)
        future = loop.create_future()
        self._queue.put_nowait((command, future))
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(), name=f"serializer-{self.device_id}")
        return command, future

    async def _run(self) -> None:
        while True:
            command, future = await self._queue.get()
            try:
                if future.done():
                    # Caller gave up before we got to it
                    continue
                self.in_flight = command
                await self._execute(command, future)
            finally:
                self.in_flight = None
                self._queue.task_done()

    async def _execute(self, command: Command, future: asyncio.Future) -> None:
        try:
            # wait_for cancels the request on timeout; a late reply never reaches the future
            state = await asyncio.wait_for(self._executor(command), self._timeout)
        except asyncio.TimeoutError:
            error = DeviceUnreachableError(
                f"{command.operation.value} #{command.seq} to {self.device_id} "
                f"timed out after {self._timeout:.1f}s"
            )
            if not future.done():
                future.set_exception(error)
        except asyncio.CancelledError:
            if not future.done():
                future.set_exception(EngineStoppedError(f"Command queue for {self.device_id} stopped"))
            raise
        except KeylightdError as e:
            if not future.done():
                future.set_exception(e)
        except Exception as e:
            logger.error(f"Unexpected error executing {command.operation.value} "
                         f"on {self.device_id}: {traceback.format_exc()}")
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(state)

    async def join(self) -> None:
        await self._queue.join()

    async def close(self, reason: str) -> None:
        """Stop the worker and fail everything still queued"""
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.set_exception(EngineStoppedError(reason))
            self._queue.task_done()


class CommandSerializer:
    """
    Routes commands to per-device queues.

    Exactly one command per device is executing at any instant and commands
    for a device run in submission order; different devices run in parallel.
    Submitting to a full queue fails at once with BackpressureError.
    """

    def __init__(self, executor: Executor, depth: int = 32, timeout: float = 2.0):
        self._executor = executor
        self.depth = depth
        self.timeout = timeout
        self._queues: Dict[str, DeviceQueue] = {}
        self._closed = False

    def submit(self, command: Command) -> Tuple[Command, "asyncio.Future[DeviceState]"]:
        """Queue ``command``; returns the sequenced command and a future for its outcome"""
        if self._closed:
            raise EngineStoppedError("Command serializer is shut down")
        queue = self._queues.get(command.device_id)
        if queue is None:
            queue = DeviceQueue(command.device_id, self._executor, self.depth, self.timeout)
            self._queues[command.device_id] = queue
        return queue.submit(command)

    def pending(self, device_id: str) -> int:
        queue = self._queues.get(device_id)
        return queue.pending if queue else 0

    async def remove(self, device_id: str) -> None:
        queue = self._queues.pop(device_id, None)
        if queue:
            await queue.close(f"Device {device_id} was removed")

    async def drain(self, timeout: float) -> bool:
        """
        Stop accepting work and wait up to ``timeout`` seconds for queued commands.
        Returns True when everything finished in time; leftovers fail with EngineStoppedError.
        """
        self._closed = True
        queues = list(self._queues.values())
        drained = True
        if queues:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(queue.join() for queue in queues)), timeout
                )
            except asyncio.TimeoutError:
                drained = False
                logger.warning(f"Command queues not drained within {timeout:.1f}s")
        for queue in queues:
            await queue.close("Daemon shutting down")
        self._queues.clear()
        return drained
