# src/keylightd/api/dependencies.py
from fastapi import Request
from typing import Annotated
from fastapi import Depends
from ..core.interface import ControlInterface


async def get_control_interface(request: Request) -> ControlInterface:
    return request.app.state.components.interface

# Type definitions for dependencies
ControlInterfaceDependency = Annotated[ControlInterface, Depends(get_control_interface)]
