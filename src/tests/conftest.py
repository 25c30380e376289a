import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from keylightd.adapters.base import DeviceClient
from keylightd.core.config_manager import ControlConfig
from keylightd.models.device import (
    Command,
    CommandType,
    DeviceAddress,
    DeviceLimits,
    DeviceState,
    Observation,
)
from keylightd.utils.exceptions import CommandRejectedError, DeviceUnreachableError


class FakeDeviceClient(DeviceClient):
    """
    In-memory stand-in for a device transport.

    Every host behaves like a light with its own state. Hosts listed in
    ``unreachable`` raise DeviceUnreachableError, those in ``rejecting`` raise
    CommandRejectedError; ``delays`` holds per-host sleep times to simulate
    slow devices.
    """

    def __init__(self):
        self.states: Dict[str, DeviceState] = {}
        self.unreachable: set = set()
        self.rejecting: set = set()
        self.delays: Dict[str, float] = {}
        self.calls: List[Tuple[str, Command]] = []
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def send(self, address: DeviceAddress, command: Command,
                   limits: Optional[DeviceLimits] = None) -> DeviceState:
        self.calls.append((address.host, command))
        delay = self.delays.get(address.host)
        if delay:
            await asyncio.sleep(delay)
        if address.host in self.unreachable:
            raise DeviceUnreachableError(f"{address} unreachable")
        if address.host in self.rejecting:
            raise CommandRejectedError(f"{address} rejected {command.operation.value}", status=400)

        state = self.states.get(address.host, DeviceState(power=False, brightness=20, temperature=200))
        params = command.parameters
        if command.operation == CommandType.SET_POWER:
            state = state.model_copy(update={"power": params["on"]})
        elif command.operation == CommandType.SET_BRIGHTNESS:
            if params["brightness"] == 0:
                state = state.model_copy(update={"power": False})
            else:
                state = state.model_copy(update={"power": True, "brightness": params["brightness"]})
        elif command.operation == CommandType.SET_TEMPERATURE:
            state = state.model_copy(update={"temperature": params["temperature"]})
        self.states[address.host] = state
        return state

    def commands_for(self, device_id: str) -> List[Command]:
        return [command for _, command in self.calls if command.device_id == device_id]


@pytest.fixture
def make_observation():
    def _make(device_id: str = "dev-1", host: str = "10.0.0.5", port: int = 9123,
              **kwargs: Any) -> Observation:
        return Observation(id=device_id, address=DeviceAddress(host=host, port=port), **kwargs)
    return _make


@pytest.fixture
def fake_client():
    return FakeDeviceClient()


@pytest.fixture
def control_config():
    return ControlConfig(
        request_timeout=0.5,
        failure_threshold=3,
        failure_window=60,
        queue_depth=4,
        probe_interval=30,
        drain_timeout=1.0,
    )


def make_light_app(state: Optional[Dict[str, Any]] = None) -> web.Application:
    """A fake light speaking the /elgato/lights protocol"""
    app = web.Application()
    app["light"] = state or {"on": 0, "brightness": 20, "temperature": 200}
    app["requests"] = []
    # Mutated by tests after startup, so keep it a plain dict
    app["control"] = {"mode": "ok"}

    async def get_lights(request: web.Request) -> web.Response:
        app["requests"].append(("GET", None))
        if app["control"]["mode"] == "garbage":
            return web.Response(text="<html>not json</html>")
        if app["control"]["mode"] == "bad-encoding":
            return web.Response(body=b"\xff\xfe\xfa", content_type="application/json")
        if app["control"]["mode"] == "wrong-shape":
            return web.json_response({"lights": []})
        if app["control"]["mode"] == "slow":
            await asyncio.sleep(2)
        return web.json_response({"numberOfLights": 1, "lights": [app["light"]]})

    async def put_lights(request: web.Request) -> web.Response:
        body = await request.json()
        app["requests"].append(("PUT", body))
        if app["control"]["mode"] == "reject":
            return web.json_response({"error": "bad value"}, status=400)
        app["light"].update(body["lights"][0])
        return web.json_response({"numberOfLights": 1, "lights": [app["light"]]})

    async def accessory_info(request: web.Request) -> web.Response:
        return web.json_response({
            "productName": "Elgato Key Light",
            "serialNumber": "CW12K1A01234",
            "macAddress": "3c:6a:9d:11:22:33",
            "displayName": "Desk",
        })

    app.router.add_get("/elgato/lights", get_lights)
    app.router.add_put("/elgato/lights", put_lights)
    app.router.add_get("/elgato/accessory-info", accessory_info)
    return app


@pytest_asyncio.fixture
async def light_server():
    server = TestServer(make_light_app())
    await server.start_server()
    yield server
    await server.close()
