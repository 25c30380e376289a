from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime
from typing import Any, Dict, Optional
from enum import Enum

from ..utils.helpers import (
    TEMPERATURE_UNIT_MAX,
    TEMPERATURE_UNIT_MIN,
    clamp,
    kelvin_to_units,
)

# Longest accepted brightness fade, in seconds
MAX_TRANSITION = 60.0


class Health(str, Enum):
    UNKNOWN = "unknown"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


class DeviceAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(9123, ge=1, le=65535)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class DeviceLimits(BaseModel):
    """Value bounds a device accepts; commands are clamped to these before sending"""
    model_config = ConfigDict(frozen=True)

    brightness_min: int = 0
    brightness_max: int = 100
    temperature_min: int = TEMPERATURE_UNIT_MIN
    temperature_max: int = TEMPERATURE_UNIT_MAX

    def clamp_brightness(self, value: int) -> int:
        return clamp(value, self.brightness_min, self.brightness_max)

    def clamp_temperature(self, value: int) -> int:
        return clamp(value, self.temperature_min, self.temperature_max)


class DeviceState(BaseModel):
    model_config = ConfigDict(frozen=True)

    power: bool
    brightness: int = Field(ge=0, le=100)
    temperature: Optional[int] = None


class Observation(BaseModel):
    """A single sighting of a device produced by a discovery source"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    address: DeviceAddress
    name: Optional[str] = None
    advertised_state: Optional[DeviceState] = None
    limits: Optional[DeviceLimits] = None
    source: str = ""


class DeviceRecord(BaseModel):
    id: str = Field(frozen=True)
    name: Optional[str] = None
    address: DeviceAddress
    state: Optional[DeviceState] = None
    limits: DeviceLimits = Field(default_factory=DeviceLimits)
    health: Health = Health.UNKNOWN
    first_seen: datetime = Field(default_factory=datetime.now)
    last_seen: datetime = Field(default_factory=datetime.now)


class CommandType(str, Enum):
    SET_POWER = "set_power"
    SET_BRIGHTNESS = "set_brightness"
    SET_TEMPERATURE = "set_temperature"
    QUERY = "query"


class CommandOrigin(str, Enum):
    USER = "user"
    PROBE = "probe"


class Command(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    operation: CommandType
    parameters: Dict[str, Any] = Field(default_factory=dict)
    origin: CommandOrigin = CommandOrigin.USER
    seq: int = 0
    submitted_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="before")
    @classmethod
    def normalize_parameters(cls, data: Any) -> Any:
        """Copy the caller's parameters and convert ``kelvin`` to device units"""
        if not isinstance(data, dict):
            return data
        params = dict(data.get("parameters") or {})
        if (data.get("operation") == CommandType.SET_TEMPERATURE
                and "kelvin" in params and "temperature" not in params):
            kelvin = params["kelvin"]
            if isinstance(kelvin, bool) or not isinstance(kelvin, int) or kelvin <= 0:
                raise ValueError("'kelvin' must be a positive integer")
            params["temperature"] = kelvin_to_units(kelvin)
        return {**data, "parameters": params}

    @model_validator(mode="after")
    def check_parameters(self) -> "Command":
        params = self.parameters
        if self.operation == CommandType.SET_POWER:
            if not isinstance(params.get("on"), bool):
                raise ValueError("set_power requires boolean parameter 'on'")
        elif self.operation == CommandType.SET_BRIGHTNESS:
            value = params.get("brightness")
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
                raise ValueError("set_brightness requires integer parameter 'brightness' in 0..100")
            transition = params.get("transition", 0)
            if (isinstance(transition, bool) or not isinstance(transition, (int, float))
                    or not 0 <= transition <= MAX_TRANSITION):
                raise ValueError(f"'transition' must be a number of seconds in 0..{MAX_TRANSITION:g}")
        elif self.operation == CommandType.SET_TEMPERATURE:
            value = params.get("temperature")
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError("set_temperature requires integer parameter 'temperature' or 'kelvin'")
        return self

    @property
    def transition(self) -> float:
        """Seconds over which a brightness change is spread; 0 means immediate"""
        return float(self.parameters.get("transition", 0))


class CommandResult(BaseModel):
    device_id: str
    seq: int
    operation: CommandType
    state: DeviceState
