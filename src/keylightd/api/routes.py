# src/keylightd/api/routes.py
from fastapi import APIRouter

from .dependencies import ControlInterfaceDependency
from ..models.api import DaemonStatus

status_router = APIRouter()


@status_router.get("/health", response_model=DaemonStatus)
async def get_status(interface: ControlInterfaceDependency) -> DaemonStatus:
    return interface.status()
