from fastapi import APIRouter, HTTPException, Query
from pydantic import ValidationError

from ..dependencies import ControlInterfaceDependency
from ...models.api import CommandRequest, DeviceList, ExpireResult
from ...models.device import CommandResult, DeviceRecord
from ...utils.exceptions import (
    BackpressureError,
    CommandRejectedError,
    DeviceNotFoundError,
    DeviceUnreachableError,
    EngineStoppedError,
    KeylightdError,
    ProtocolError,
)
from ...utils.logging import get_logger

logger = get_logger(__name__)

device_router = APIRouter()

ERROR_STATUS = (
    (DeviceNotFoundError, 404),
    (BackpressureError, 429),
    (DeviceUnreachableError, 504),
    (ProtocolError, 502),
    (CommandRejectedError, 409),
    (EngineStoppedError, 503),
)


def to_http_error(error: KeylightdError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(
                status_code=status_code,
                detail={"error": type(error).__name__, "message": str(error)},
            )
    return HTTPException(status_code=500, detail={"error": type(error).__name__, "message": str(error)})


@device_router.get("/devices", response_model=DeviceList)
async def list_devices(interface: ControlInterfaceDependency) -> DeviceList:
    return interface.list_devices()


@device_router.get("/devices/{device_id}", response_model=DeviceRecord)
async def get_device(device_id: str, interface: ControlInterfaceDependency) -> DeviceRecord:
    try:
        return interface.get_device(device_id)
    except KeylightdError as e:
        raise to_http_error(e)


@device_router.post("/devices/{device_id}/commands", response_model=CommandResult)
async def submit_command(device_id: str, request: CommandRequest,
                         interface: ControlInterfaceDependency) -> CommandResult:
    try:
        return await interface.submit_command(device_id, request)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={"error": "InvalidParameters",
                    "message": "; ".join(err["msg"] for err in e.errors())},
        )
    except KeylightdError as e:
        raise to_http_error(e)


@device_router.delete("/devices/{device_id}", response_model=ExpireResult)
async def expire_device(device_id: str, interface: ControlInterfaceDependency,
                        older_than: float = Query(0.0, ge=0)) -> ExpireResult:
    try:
        return await interface.expire_device(device_id, older_than)
    except KeylightdError as e:
        raise to_http_error(e)
