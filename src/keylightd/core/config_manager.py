# Configuration management
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
import traceback

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..models.device import DeviceLimits
from ..utils.exceptions import ConfigurationError
from ..utils.helpers import TEMPERATURE_UNIT_MAX, TEMPERATURE_UNIT_MIN


class APIConfig(BaseModel):
    host: str = Field("127.0.0.1", description="Control interface bind address")
    port: int = Field(9124, ge=1, le=65535, description="Control interface port")


class StaticDeviceConfig(BaseModel):
    id: str = Field(..., min_length=1, description="Stable device identifier")
    host: str
    port: int = Field(9123, ge=1, le=65535)
    name: Optional[str] = None


class DiscoveryConfig(BaseModel):
    sources: List[str] = Field(default_factory=lambda: ["mdns"], description="Enabled discovery sources")
    scan_interval: float = Field(10.0, gt=0, description="Seconds between scan cycles")
    scan_timeout: float = Field(3.0, gt=0, description="Seconds to wait for mDNS service info")
    service_type: str = Field("_elg._tcp.local.", description="mDNS service type to browse")
    retry_base_delay: float = Field(1.0, gt=0, description="First delay after a failed scan")
    retry_max_delay: float = Field(30.0, gt=0, description="Maximum delay after failed scans")
    static_devices: List[StaticDeviceConfig] = Field(default_factory=list)


class ControlConfig(BaseModel):
    request_timeout: float = Field(2.0, gt=0, description="Per-request device timeout in seconds")
    failure_threshold: int = Field(3, ge=1, description="Consecutive failures before a device is unreachable")
    failure_window: float = Field(60.0, gt=0, description="Rolling window for counting failures")
    queue_depth: int = Field(32, ge=1, description="Maximum queued commands per device")
    probe_interval: float = Field(15.0, gt=0, description="Health probe interval for reachable devices")
    probe_backoff_base: float = Field(1.0, gt=0, description="First probe delay once unreachable")
    probe_backoff_max: float = Field(30.0, gt=0, description="Probe delay cap while unreachable")
    drain_timeout: float = Field(5.0, ge=0, description="Seconds to drain queued commands on shutdown")
    brightness_range: Tuple[int, int] = (0, 100)
    temperature_range: Tuple[int, int] = (TEMPERATURE_UNIT_MIN, TEMPERATURE_UNIT_MAX)

    @field_validator("brightness_range", "temperature_range")
    @classmethod
    def validate_range(cls, v):
        if v[0] > v[1]:
            raise ValueError(f"Range lower bound {v[0]} exceeds upper bound {v[1]}")
        return v

    @field_validator("brightness_range")
    @classmethod
    def validate_brightness_range(cls, v):
        if v[0] < 0 or v[1] > 100:
            raise ValueError("Brightness range must lie within 0..100")
        return v

    def default_limits(self) -> DeviceLimits:
        return DeviceLimits(
            brightness_min=self.brightness_range[0],
            brightness_max=self.brightness_range[1],
            temperature_min=self.temperature_range[0],
            temperature_max=self.temperature_range[1],
        )


class MQTTSinkConfig(BaseModel):
    """MQTT event sink configuration model"""
    enabled: bool = Field(False, description="Publish engine events to MQTT")
    host: str = Field("localhost", description="MQTT broker hostname")
    port: int = Field(1883, description="MQTT broker port")
    username: Optional[str] = Field(None, description="MQTT username")
    password: Optional[str] = Field(None, description="MQTT password")
    client_id: str = Field("keylightd", description="MQTT client ID")
    topic_prefix: str = Field("keylightd", description="Prefix for published event topics")
    qos: int = Field(0, ge=0, le=2, description="qos for published events")
    keepalive: int = Field(60, description="Connection keepalive in seconds")
    reconnect_interval: float = Field(5.0, description="Base reconnection interval in seconds")
    queue_size: int = Field(1000, ge=1, description="Maximum queued events")


class EventsConfig(BaseModel):
    mqtt: MQTTSinkConfig = Field(default_factory=MQTTSinkConfig)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None
    max_size: int = 10
    backup_count: int = 5
    format: Optional[str] = None


class KeylightdConfig(BaseModel):
    api: APIConfig = Field(default_factory=APIConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class ConfigManager:
    """Manages configuration loading and validation"""

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> KeylightdConfig:
        try:
            return KeylightdConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @staticmethod
    def load_config(config_path: Union[str, Path]) -> KeylightdConfig:
        """Load and validate configuration from YAML file"""
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError:
            raise ConfigurationError(f"Error parsing configuration file: {traceback.format_exc()}")
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        if config is None:
            raise ConfigurationError("Configuration file is empty or incorrectly formatted")
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration file must contain a mapping at the top level")
        return ConfigManager.from_dict(config)


EXAMPLE_CONFIG = """
api:
  host: "127.0.0.1"
  port: 9124

discovery:
  sources: ["mdns"]
  scan_interval: 10
  scan_timeout: 3
  service_type: "_elg._tcp.local."
  # static_devices:
  #   - id: "3C:6A:9D:00:00:01"
  #     host: "10.0.0.5"
  #     port: 9123

control:
  request_timeout: 2
  failure_threshold: 3
  failure_window: 60
  queue_depth: 32
  probe_interval: 15
  drain_timeout: 5

events:
  mqtt:
    enabled: false
    host: "localhost"
    port: 1883
    topic_prefix: "keylightd"

logging:
  level: "INFO"
  format: "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"
"""


def create_default_config(config_path: Path) -> bool:
    """Create default configuration file if it doesn't exist"""
    if config_path.exists():
        return False
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(EXAMPLE_CONFIG)
    return True
