# Request/response boundary for external callers (HTTP API, CLI, ...)
from .engine import ControlEngine
from ..models.api import CommandRequest, DaemonStatus, DeviceList, ExpireResult
from ..models.device import CommandResult, DeviceRecord
from ..utils.logging import get_logger

logger = get_logger(__name__)


class ControlInterface:
    """
    Transport-independent control contract.

    Every answer is a snapshot of registry state at the moment of the
    request; errors from the engine propagate unchanged so each transport
    can map them to its own encoding.
    """

    def __init__(self, engine: ControlEngine):
        self.engine = engine

    def list_devices(self) -> DeviceList:
        return DeviceList(devices=self.engine.list_devices())

    def get_device(self, device_id: str) -> DeviceRecord:
        return self.engine.get_device(device_id)

    async def submit_command(self, device_id: str, request: CommandRequest) -> CommandResult:
        logger.debug(f"Command {request.operation.value} for {device_id}: {request.parameters}")
        return await self.engine.submit(device_id, request.operation, request.parameters)

    async def expire_device(self, device_id: str, older_than: float = 0.0) -> ExpireResult:
        removed = await self.engine.expire(device_id, older_than)
        return ExpireResult(device_id=device_id, removed=removed)

    def status(self) -> DaemonStatus:
        summary = self.engine.health_summary()
        return DaemonStatus(
            running=self.engine.running and not self.engine.stopping,
            devices=sum(summary.values()),
            health=summary,
        )
