import socket

import pytest
import pytest_asyncio

from keylightd.adapters.http import ElgatoHTTPClient, build_light_update, parse_light_state
from keylightd.models.device import Command, CommandType, DeviceAddress, DeviceLimits
from keylightd.utils.exceptions import (
    CommandRejectedError,
    DeviceUnreachableError,
    ProtocolError,
)


def command(operation: CommandType, **parameters) -> Command:
    return Command(device_id="dev-1", operation=operation, parameters=parameters)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest_asyncio.fixture
async def client():
    client = ElgatoHTTPClient(timeout=0.5)
    await client.connect()
    yield client
    await client.disconnect()


@pytest.fixture
def address(light_server):
    return DeviceAddress(host=light_server.host, port=light_server.port)


@pytest.mark.asyncio
async def test_query_returns_device_state(client, address):
    state = await client.send(address, command(CommandType.QUERY))
    assert state.power is False
    assert state.brightness == 20
    assert state.temperature == 200


@pytest.mark.asyncio
async def test_set_brightness_sends_partial_update(client, address, light_server):
    state = await client.send(address, command(CommandType.SET_BRIGHTNESS, brightness=50))

    assert state.brightness == 50
    method, body = light_server.app["requests"][-1]
    assert method == "PUT"
    assert body == {"numberOfLights": 1, "lights": [{"on": 1, "brightness": 50}]}


@pytest.mark.asyncio
async def test_zero_brightness_switches_light_off(client, address, light_server):
    await client.send(address, command(CommandType.SET_BRIGHTNESS, brightness=50))
    state = await client.send(address, command(CommandType.SET_BRIGHTNESS, brightness=0))

    assert state.power is False
    _, body = light_server.app["requests"][-1]
    assert body == {"numberOfLights": 1, "lights": [{"on": 0}]}


@pytest.mark.asyncio
async def test_set_power(client, address):
    state = await client.send(address, command(CommandType.SET_POWER, on=True))
    assert state.power is True


@pytest.mark.asyncio
async def test_values_are_clamped_before_sending(client, address, light_server):
    limits = DeviceLimits(brightness_min=3, brightness_max=80, temperature_min=143, temperature_max=344)

    await client.send(address, command(CommandType.SET_BRIGHTNESS, brightness=95), limits)
    await client.send(address, command(CommandType.SET_TEMPERATURE, temperature=400), limits)

    bodies = [body for method, body in light_server.app["requests"] if method == "PUT"]
    assert bodies[0]["lights"][0] == {"on": 1, "brightness": 80}
    assert bodies[1]["lights"][0] == {"temperature": 344}


@pytest.mark.asyncio
async def test_device_error_is_rejected_not_retried(client, address, light_server):
    light_server.app["control"]["mode"] = "reject"

    with pytest.raises(CommandRejectedError) as excinfo:
        await client.send(address, command(CommandType.SET_BRIGHTNESS, brightness=10))

    assert excinfo.value.status == 400
    assert "bad value" in excinfo.value.body
    assert len([r for r in light_server.app["requests"] if r[0] == "PUT"]) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["garbage", "wrong-shape", "bad-encoding"])
async def test_malformed_response_is_protocol_error(client, address, light_server, mode):
    light_server.app["control"]["mode"] = mode
    with pytest.raises(ProtocolError):
        await client.send(address, command(CommandType.QUERY))


@pytest.mark.asyncio
async def test_undecodable_body_is_protocol_error(client, address, light_server):
    light_server.app["control"]["mode"] = "bad-encoding"
    with pytest.raises(ProtocolError, match="invalid JSON"):
        await client.send(address, command(CommandType.QUERY))


@pytest.mark.asyncio
async def test_timeout_is_unreachable(client, address, light_server):
    light_server.app["control"]["mode"] = "slow"
    with pytest.raises(DeviceUnreachableError):
        await client.send(address, command(CommandType.QUERY))


@pytest.mark.asyncio
async def test_closed_port_is_unreachable(client):
    with pytest.raises(DeviceUnreachableError):
        await client.send(DeviceAddress(host="127.0.0.1", port=free_port()), command(CommandType.QUERY))


@pytest.mark.asyncio
async def test_fetch_identity(client, address):
    identity = await client.fetch_identity(address)
    assert identity["macAddress"] == "3c:6a:9d:11:22:33"


def test_kelvin_parameter_is_converted_to_device_units():
    cmd = command(CommandType.SET_TEMPERATURE, kelvin=7000)
    assert cmd.parameters["temperature"] == 143
    assert build_light_update(cmd)["lights"][0] == {"temperature": 143}


def test_query_has_no_update_body():
    with pytest.raises(ValueError):
        build_light_update(command(CommandType.QUERY))


def test_parse_rejects_out_of_range_brightness():
    with pytest.raises(ProtocolError):
        parse_light_state({"lights": [{"on": 1, "brightness": 250, "temperature": 200}]})


@pytest.mark.parametrize("operation,parameters", [
    (CommandType.SET_POWER, {}),
    (CommandType.SET_POWER, {"on": "yes"}),
    (CommandType.SET_BRIGHTNESS, {"brightness": 101}),
    (CommandType.SET_BRIGHTNESS, {"brightness": True}),
    (CommandType.SET_TEMPERATURE, {}),
])
def test_invalid_command_parameters(operation, parameters):
    with pytest.raises(ValueError):
        Command(device_id="dev-1", operation=operation, parameters=parameters)


@pytest.mark.parametrize("transition", [-1, "slow", True, 61])
def test_invalid_transition(transition):
    with pytest.raises(ValueError):
        command(CommandType.SET_BRIGHTNESS, brightness=50, transition=transition)


def test_command_does_not_touch_caller_parameters():
    parameters = {"kelvin": 2900}
    cmd = Command(device_id="dev-1", operation=CommandType.SET_TEMPERATURE, parameters=parameters)
    sequenced = cmd.model_copy(update={"seq": 1}, deep=True)

    assert parameters == {"kelvin": 2900}
    assert cmd.parameters == {"kelvin": 2900, "temperature": 344}
    assert cmd.parameters is not parameters
    assert sequenced.parameters is not cmd.parameters
