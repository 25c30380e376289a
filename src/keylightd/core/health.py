# Device health state machine and background probes
import asyncio
import time
import traceback
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional, Tuple

from ..models.device import Command, CommandOrigin, CommandType, DeviceState, Health
from ..utils.exceptions import (
    BackpressureError,
    ClientError,
    DeviceNotFoundError,
    EngineStoppedError,
    ProtocolError,
)
from ..utils.logging import get_logger
from ..utils.retry import compute_backoff

logger = get_logger(__name__)


class HealthMonitor:
    """
    Per-device health transitions, independent of any I/O.

        Unknown     -> Reachable    first successful round-trip
        Reachable   -> Unreachable  ``threshold`` consecutive failures within ``window`` seconds
        Unreachable -> Reachable    any success

    A device that never answered goes Unknown -> Unreachable on the same rule.
    """

    def __init__(self, threshold: int = 3, window: float = 60.0,
                 backoff_base: float = 1.0, backoff_max: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.window = window
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        self._failures: Dict[str, Deque[float]] = {}
        self._unreachable_attempts: Dict[str, int] = {}

    def record_success(self, device_id: str, current: Health) -> Optional[Health]:
        """Returns the new health if this success causes a transition"""
        self._failures.pop(device_id, None)
        self._unreachable_attempts.pop(device_id, None)
        if current != Health.REACHABLE:
            return Health.REACHABLE
        return None

    def record_failure(self, device_id: str, current: Health) -> Optional[Health]:
        """Returns the new health if this failure causes a transition"""
        now = self._clock()
        failures = self._failures.setdefault(device_id, deque())
        failures.append(now)
        while failures and now - failures[0] > self.window:
            failures.popleft()

        if current == Health.UNREACHABLE:
            self._unreachable_attempts[device_id] = self._unreachable_attempts.get(device_id, 0) + 1
            return None
        if len(failures) >= self.threshold:
            self._unreachable_attempts[device_id] = 1
            return Health.UNREACHABLE
        return None

    def failure_count(self, device_id: str) -> int:
        return len(self._failures.get(device_id, ()))

    def next_probe_delay(self, device_id: str, current: Health, interval: float) -> float:
        if current != Health.UNREACHABLE:
            return interval
        attempt = max(1, self._unreachable_attempts.get(device_id, 1))
        return compute_backoff(attempt, self.backoff_base, self.backoff_max)

    def forget(self, device_id: str) -> None:
        self._failures.pop(device_id, None)
        self._unreachable_attempts.pop(device_id, None)


@dataclass(frozen=True)
class ProbeOutcome:
    device_id: str
    state: Optional[DeviceState] = None
    error: Optional[ClientError] = None
    # Resolved by the consumer once the outcome has been applied
    applied: Optional[asyncio.Future] = field(default=None, compare=False, repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None


class HealthProber:
    """
    Background probe loop for one device.

    Probes are ordinary Query commands submitted through the serializer, so
    they queue behind user commands instead of racing them. Outcomes are
    posted to ``results`` for the engine to apply; the prober itself never
    touches the registry.
    """

    def __init__(self, device_id: str,
                 submit: Callable[[Command], Tuple[Command, "asyncio.Future[DeviceState]"]],
                 results: "asyncio.Queue[ProbeOutcome]",
                 next_delay: Callable[[str], float],
                 initial_delay: float = 0.0):
        self.device_id = device_id
        self._submit = submit
        self._results = results
        self._next_delay = next_delay
        self._initial_delay = initial_delay
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self.run(), name=f"probe-{self.device_id}"
            )

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def probe_once(self) -> Optional[ProbeOutcome]:
        command = Command(
            device_id=self.device_id,
            operation=CommandType.QUERY,
            origin=CommandOrigin.PROBE,
        )
        try:
            _, future = self._submit(command)
        except BackpressureError:
            logger.debug(f"Skipping probe of {self.device_id}: queue full")
            return None
        applied = asyncio.get_running_loop().create_future()
        try:
            state = await future
        except ClientError as e:
            return ProbeOutcome(self.device_id, error=e, applied=applied)
        return ProbeOutcome(self.device_id, state=state, applied=applied)

    async def run(self) -> None:
        delay = self._initial_delay
        while True:
            await asyncio.sleep(delay)
            try:
                outcome = await self.probe_once()
            except (EngineStoppedError, DeviceNotFoundError):
                logger.debug(f"Probe loop for {self.device_id} finished")
                return
            except Exception as e:
                # Counted as a failed round-trip; the loop keeps going
                logger.error(f"Probe of {self.device_id} failed unexpectedly: {traceback.format_exc()}")
                outcome = ProbeOutcome(
                    self.device_id,
                    error=ProtocolError(f"Unexpected probe failure: {e!r}"),
                    applied=asyncio.get_running_loop().create_future(),
                )
            if outcome is not None:
                await self._results.put(outcome)
                # The next delay depends on the health this outcome produces
                await outcome.applied
            delay = self._next_delay(self.device_id)
