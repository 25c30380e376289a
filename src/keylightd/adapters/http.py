# adapters/http.py
import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp
from pydantic import ValidationError

from .base import DeviceClient
from ..models.device import Command, CommandType, DeviceAddress, DeviceLimits, DeviceState
from ..utils.exceptions import (
    CommandRejectedError,
    DeviceUnreachableError,
    ProtocolError,
)
from ..utils.logging import get_logger

logger = get_logger(__name__)

LIGHTS_PATH = "/elgato/lights"
ACCESSORY_INFO_PATH = "/elgato/accessory-info"


def build_light_update(command: Command, limits: Optional[DeviceLimits] = None) -> Dict[str, Any]:
    """
    Request body for a state-changing command.

    Brightness and temperature are clamped to ``limits`` here, before the
    request leaves, so the device never has to clamp or reject.
    """
    limits = limits or DeviceLimits()
    params = command.parameters
    if command.operation == CommandType.SET_POWER:
        light = {"on": 1 if params["on"] else 0}
    elif command.operation == CommandType.SET_BRIGHTNESS:
        # Brightness 0 switches the light off, any other level switches it on
        if params["brightness"] == 0:
            light = {"on": 0}
        else:
            light = {"on": 1, "brightness": limits.clamp_brightness(params["brightness"])}
    elif command.operation == CommandType.SET_TEMPERATURE:
        light = {"temperature": limits.clamp_temperature(params["temperature"])}
    else:
        raise ValueError(f"{command.operation.value} does not change device state")
    return {"numberOfLights": 1, "lights": [light]}


def parse_light_state(payload: Any) -> DeviceState:
    """Parse a ``/elgato/lights`` response body, raising ProtocolError on anything unexpected"""
    try:
        light = payload["lights"][0]
        on = light["on"]
        if on not in (0, 1, True, False):
            raise ValueError(f"invalid 'on' value {on!r}")
        return DeviceState(
            power=bool(on),
            brightness=light["brightness"],
            temperature=light.get("temperature"),
        )
    except (KeyError, IndexError, TypeError, ValueError, ValidationError) as e:
        raise ProtocolError(f"Malformed light state: {e}") from e


class ElgatoHTTPClient(DeviceClient):
    """
    HTTP client for the Key Light local control API.
    One shared session; every request is bounded by ``timeout``.
    """

    def __init__(self, timeout: float = 2.0):
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            logger.debug("Created device HTTP session")

    async def disconnect(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
            logger.debug("Closed device HTTP session")
        self.session = None

    async def send(self, address: DeviceAddress, command: Command,
                   limits: Optional[DeviceLimits] = None) -> DeviceState:
        url = self._url(address, LIGHTS_PATH)
        if command.operation == CommandType.QUERY:
            payload = await self._request("GET", url)
        else:
            body = build_light_update(command, limits)
            payload = await self._request("PUT", url, json_body=body)
        return parse_light_state(payload)

    async def fetch_identity(self, address: DeviceAddress) -> Dict[str, Any]:
        payload = await self._request("GET", self._url(address, ACCESSORY_INFO_PATH))
        if not isinstance(payload, dict):
            raise ProtocolError(f"Malformed accessory info from {address}")
        return payload

    @staticmethod
    def _url(address: DeviceAddress, path: str) -> str:
        host = f"[{address.host}]" if ":" in address.host else address.host
        return f"http://{host}:{address.port}{path}"

    async def _request(self, method: str, url: str, json_body: Optional[Dict[str, Any]] = None) -> Any:
        if self.session is None or self.session.closed:
            await self.connect()
        try:
            async with self.session.request(method, url, json=json_body) as response:
                raw = await response.read()
                if response.status >= 400:
                    raise CommandRejectedError(
                        f"{method} {url} rejected with HTTP {response.status}",
                        status=response.status,
                        body=raw.decode("utf-8", errors="replace"),
                    )
        except (asyncio.TimeoutError, aiohttp.ClientConnectionError, OSError) as e:
            raise DeviceUnreachableError(f"{method} {url} failed: {e!r}") from e
        except aiohttp.ClientError as e:
            raise ProtocolError(f"{method} {url} failed: {e!r}") from e

        # The device claims UTF-8 JSON; anything else is a protocol fault
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ProtocolError(f"{method} {url} returned invalid JSON: {e}") from e
