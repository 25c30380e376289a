from .device import (
    Command,
    CommandOrigin,
    CommandResult,
    CommandType,
    DeviceAddress,
    DeviceLimits,
    DeviceRecord,
    DeviceState,
    Health,
    Observation,
)

__all__ = [
    "Command",
    "CommandOrigin",
    "CommandResult",
    "CommandType",
    "DeviceAddress",
    "DeviceLimits",
    "DeviceRecord",
    "DeviceState",
    "Health",
    "Observation",
]
