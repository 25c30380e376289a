# Control engine: discovery -> registry -> serialized device commands
import asyncio
import traceback
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from .config_manager import ControlConfig, DiscoveryConfig
from .event_manager import (
    COMMAND_RESULT,
    DEVICE_ADDRESS_CHANGED,
    DEVICE_DISCOVERED,
    DEVICE_EXPIRED,
    DEVICE_HEALTH,
    EventManager,
)
from .health import HealthMonitor, HealthProber, ProbeOutcome
from .registry import DeviceRegistry
from .serializer import CommandSerializer
from ..adapters.base import DeviceClient
from ..discovery.base import DiscoverySource
from ..discovery.runner import DiscoveryRunner
from ..models.device import (
    Command,
    CommandResult,
    CommandType,
    DeviceRecord,
    DeviceState,
    Health,
    Observation,
)
from ..utils.exceptions import (
    ClientError,
    CommandRejectedError,
    DeviceNotFoundError,
    EngineStoppedError,
)
from ..utils.helpers import fade_steps
from ..utils.logging import get_logger

logger = get_logger(__name__)


class ControlEngine:
    """
    Owns the registry and everything that reads or writes it.

    User commands go straight through the serializer and are attempted once,
    whatever the device's health; their outcome is returned to the caller.
    Background probes retry with backoff and report through a result queue.
    """

    def __init__(self, client: DeviceClient,
                 control: Optional[ControlConfig] = None,
                 discovery: Optional[DiscoveryConfig] = None,
                 sources: Sequence[DiscoverySource] = (),
                 events: Optional[EventManager] = None,
                 registry: Optional[DeviceRegistry] = None,
                 monitor: Optional[HealthMonitor] = None):
        self.control = control or ControlConfig()
        self.discovery = discovery or DiscoveryConfig()
        self.client = client
        self.events = events or EventManager()
        self.registry = registry or DeviceRegistry(self.control.default_limits())
        self.monitor = monitor or HealthMonitor(
            threshold=self.control.failure_threshold,
            window=self.control.failure_window,
            backoff_base=self.control.probe_backoff_base,
            backoff_max=self.control.probe_backoff_max,
        )
        self.serializer = CommandSerializer(
            self._execute,
            depth=self.control.queue_depth,
            timeout=self.control.request_timeout,
        )
        self.runners = [
            DiscoveryRunner(
                source,
                self.handle_observation,
                base_delay=self.discovery.retry_base_delay,
                max_delay=self.discovery.retry_max_delay,
            )
            for source in sources
        ]
        self.probers: Dict[str, HealthProber] = {}
        self.probe_results: "asyncio.Queue[ProbeOutcome]" = asyncio.Queue()
        self._result_task: Optional[asyncio.Task] = None
        self.running = False
        self.stopping = False

    # --- lifecycle ---

    async def start(self) -> None:
        logger.info("Starting control engine")
        await self.client.connect()
        self.running = True
        self._result_task = asyncio.get_running_loop().create_task(
            self._consume_probe_results(), name="probe-results"
        )
        for record in self.registry.list():
            self._start_prober(record.id)
        for runner in self.runners:
            runner.start()

    async def shutdown(self, drain_timeout: Optional[float] = None) -> None:
        """Stop discovery and probes, drain queued commands, close the client"""
        if self.stopping:
            return
        self.stopping = True
        timeout = self.control.drain_timeout if drain_timeout is None else drain_timeout
        logger.info(f"Shutting down control engine (drain timeout {timeout:.1f}s)")

        for runner in self.runners:
            await runner.stop()
        for prober in list(self.probers.values()):
            await prober.stop()
        self.probers.clear()

        drained = await self.serializer.drain(timeout)
        if not drained:
            logger.warning("Abandoned commands still queued at shutdown")

        if self._result_task:
            self._result_task.cancel()
            try:
                await self._result_task
            except asyncio.CancelledError:
                pass
            self._result_task = None

        await self.client.disconnect()
        self.running = False
        logger.info("Control engine stopped")

    # --- discovery ---

    def handle_observation(self, observation: Observation) -> DeviceRecord:
        """Fold one discovery observation into the registry"""
        result = self.registry.upsert(observation)
        record = result.record
        if result.created:
            self._emit(DEVICE_DISCOVERED, {
                "device_id": record.id,
                "address": str(record.address),
                "source": observation.source,
            })
            if self.running and not self.stopping:
                self._start_prober(record.id)
            return record

        if result.address_changed:
            self._emit(DEVICE_ADDRESS_CHANGED, {
                "device_id": record.id,
                "old_address": str(result.previous_address),
                "new_address": str(record.address),
            })
        if result.previous_health != Health.REACHABLE:
            self.monitor.record_success(record.id, result.previous_health)
            self._health_changed(record.id, result.previous_health, Health.REACHABLE, "rediscovered")
        return record

    # --- commands ---

    async def submit(self, device_id: str, operation: CommandType,
                     parameters: Optional[Dict[str, Any]] = None) -> CommandResult:
        """
        Issue a user command and wait for its outcome.

        Raises DeviceNotFoundError before queueing for an unknown device,
        BackpressureError when the device queue is full, and the device's
        ClientError when the round-trip fails. Nothing is retried here: a
        command that was in flight to an old address fails and the caller
        resubmits.

        A set_brightness with a ``transition`` is carried out as a fade.
        """
        if device_id not in self.registry:
            raise DeviceNotFoundError(device_id)
        if self.stopping:
            raise EngineStoppedError("Daemon is shutting down")

        command = Command(device_id=device_id, operation=operation, parameters=parameters or {})
        if operation == CommandType.SET_BRIGHTNESS and command.transition > 0:
            return await self._fade(command)
        return await self._run_command(command)

    async def _fade(self, command: Command) -> CommandResult:
        """
        Walk brightness to the target one percent at a time.

        Every step is its own serialized command, so other commands for the
        device can run between steps. A failed step ends the fade with its
        error; the result of the last step is returned.
        """
        device_id = command.device_id
        target = command.parameters["brightness"]
        state = self.registry.get(device_id).state
        if state is None:
            query = Command(device_id=device_id, operation=CommandType.QUERY)
            state = (await self._run_command(query)).state
        current = state.brightness if state.power else 0
        steps = fade_steps(current, target) or [target]
        delay = command.transition / len(steps)
        logger.debug(f"Fading {device_id} from {current} to {target} "
                     f"in {len(steps)} steps over {command.transition:g}s")

        result = None
        for n, level in enumerate(steps, 1):
            if self.stopping:
                raise EngineStoppedError("Daemon is shutting down")
            step = Command(
                device_id=device_id,
                operation=CommandType.SET_BRIGHTNESS,
                parameters={"brightness": level},
            )
            result = await self._run_command(step)
            if n < len(steps):
                await asyncio.sleep(delay)
        return result

    async def _run_command(self, command: Command) -> CommandResult:
        device_id = command.device_id
        operation = command.operation
        command, future = self.serializer.submit(command)
        try:
            state = await future
        except ClientError as e:
            logger.warning(f"{operation.value} #{command.seq} on {device_id} failed: {e}")
            self._apply_outcome(device_id, error=e)
            self._emit(COMMAND_RESULT, {
                "device_id": device_id,
                "seq": command.seq,
                "operation": operation.value,
                "ok": False,
                "error": type(e).__name__,
            })
            raise

        self._apply_outcome(device_id, state=state)
        self._emit(COMMAND_RESULT, {
            "device_id": device_id,
            "seq": command.seq,
            "operation": operation.value,
            "ok": True,
        })
        return CommandResult(device_id=device_id, seq=command.seq, operation=operation, state=state)

    async def _execute(self, command: Command) -> DeviceState:
        # The address is looked up when the command reaches the front of the queue
        record = self.registry.get(command.device_id)
        return await self.client.send(record.address, command, record.limits)

    # --- health ---

    def _apply_outcome(self, device_id: str, state: Optional[DeviceState] = None,
                       error: Optional[ClientError] = None) -> None:
        try:
            current = self.registry.get(device_id).health
        except DeviceNotFoundError:
            return

        if error is None or isinstance(error, CommandRejectedError):
            # A refusal still proves the device is there
            previous = self.registry.mark_reachable(device_id, state)
            self.monitor.record_success(device_id, previous)
            self._health_changed(device_id, previous, Health.REACHABLE, "round-trip succeeded")
            return

        transition = self.monitor.record_failure(device_id, current)
        if transition == Health.UNREACHABLE:
            previous = self.registry.mark_unreachable(device_id)
            self._health_changed(
                device_id, previous, Health.UNREACHABLE,
                f"{self.monitor.threshold} consecutive failures ({type(error).__name__})",
            )

    def _health_changed(self, device_id: str, previous: Optional[Health],
                        current: Health, reason: str) -> None:
        if previous == current:
            return
        log = logger.warning if current == Health.UNREACHABLE else logger.info
        log(f"Device {device_id} is now {current.value} (was {previous.value if previous else None}): {reason}")
        self._emit(DEVICE_HEALTH, {
            "device_id": device_id,
            "previous": previous.value if previous else None,
            "health": current.value,
            "reason": reason,
        })

    def _next_probe_delay(self, device_id: str) -> float:
        try:
            health = self.registry.get(device_id).health
        except DeviceNotFoundError:
            return self.control.probe_interval
        return self.monitor.next_probe_delay(device_id, health, self.control.probe_interval)

    def _start_prober(self, device_id: str) -> None:
        if device_id in self.probers:
            return
        prober = HealthProber(
            device_id,
            submit=self.serializer.submit,
            results=self.probe_results,
            next_delay=self._next_probe_delay,
        )
        self.probers[device_id] = prober
        prober.start()

    async def _consume_probe_results(self) -> None:
        while True:
            outcome = await self.probe_results.get()
            try:
                self._apply_outcome(outcome.device_id, state=outcome.state, error=outcome.error)
            except Exception:
                logger.error(f"Failed to apply probe result for {outcome.device_id}: {traceback.format_exc()}")
            finally:
                if outcome.applied is not None and not outcome.applied.done():
                    outcome.applied.set_result(None)
                self.probe_results.task_done()

    # --- queries and administration ---

    def list_devices(self) -> List[DeviceRecord]:
        return self.registry.list()

    def get_device(self, device_id: str) -> DeviceRecord:
        return self.registry.get(device_id)

    def health_summary(self) -> Dict[str, int]:
        counts = Counter(record.health.value for record in self.registry.list())
        return {health.value: counts.get(health.value, 0) for health in Health}

    async def expire(self, device_id: str, older_than: float = 0.0) -> bool:
        """Remove ``device_id`` if it has not been seen for ``older_than`` seconds"""
        if not self.registry.expire(device_id, older_than):
            return False
        await self._forget(device_id)
        return True

    async def expire_stale(self, older_than: float) -> List[str]:
        removed = self.registry.expire_stale(older_than)
        for device_id in removed:
            await self._forget(device_id)
        return removed

    async def _forget(self, device_id: str) -> None:
        prober = self.probers.pop(device_id, None)
        if prober:
            await prober.stop()
        await self.serializer.remove(device_id)
        self.monitor.forget(device_id)
        self._emit(DEVICE_EXPIRED, {"device_id": device_id})

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        self.events.publish_nowait(event_type, data)
