# src/keylightd/utils/exceptions.py
from typing import Optional


class KeylightdError(Exception):
    """Base exception class for keylightd"""
    pass

class ConfigurationError(KeylightdError):
    """Raised when there are issues with configuration"""
    pass

class InitializationError(KeylightdError):
    """Raised when component initialization fails"""
    pass


class ClientError(KeylightdError):
    """Raised when a control round-trip with a device fails"""
    pass

class DeviceUnreachableError(ClientError):
    """Connection refused, reset or timed out"""
    pass

class ProtocolError(ClientError):
    """The device answered with something we cannot parse"""
    pass

class CommandRejectedError(ClientError):
    """The device answered with an explicit error"""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class RegistryError(KeylightdError):
    """Raised for registry lookups and mutations"""
    pass

class DeviceNotFoundError(RegistryError):
    def __init__(self, device_id: str):
        super().__init__(f"Unknown device: {device_id}")
        self.device_id = device_id


class BackpressureError(KeylightdError):
    """Raised when a device command queue is full"""
    pass

class EngineStoppedError(KeylightdError):
    """Raised for work submitted to, or abandoned by, a stopped engine"""
    pass
