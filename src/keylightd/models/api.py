from pydantic import BaseModel, Field
from typing import Any, Dict, List

from .device import CommandType, DeviceRecord


class CommandRequest(BaseModel):
    operation: CommandType
    parameters: Dict[str, Any] = Field(default_factory=dict)


class DeviceList(BaseModel):
    devices: List[DeviceRecord]


class ExpireResult(BaseModel):
    device_id: str
    removed: bool


class DaemonStatus(BaseModel):
    running: bool
    devices: int
    health: Dict[str, int]
