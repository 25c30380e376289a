import asyncio

import pytest

from keylightd.core.health import HealthMonitor, HealthProber
from keylightd.core.serializer import CommandSerializer
from keylightd.models.device import CommandOrigin, CommandType, DeviceState, Health
from keylightd.utils.exceptions import DeviceUnreachableError, ProtocolError


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def monitor(clock):
    return HealthMonitor(threshold=3, window=60.0, backoff_base=1.0, backoff_max=30.0, clock=clock)


def test_first_success_makes_unknown_device_reachable(monitor):
    assert monitor.record_success("dev-1", Health.UNKNOWN) == Health.REACHABLE


def test_success_on_reachable_device_is_not_a_transition(monitor):
    assert monitor.record_success("dev-1", Health.REACHABLE) is None


def test_three_consecutive_failures_make_device_unreachable(monitor):
    assert monitor.record_failure("dev-1", Health.REACHABLE) is None
    assert monitor.record_failure("dev-1", Health.REACHABLE) is None
    assert monitor.record_failure("dev-1", Health.REACHABLE) == Health.UNREACHABLE


def test_success_resets_failure_count(monitor):
    monitor.record_failure("dev-1", Health.REACHABLE)
    monitor.record_failure("dev-1", Health.REACHABLE)
    monitor.record_success("dev-1", Health.REACHABLE)

    assert monitor.failure_count("dev-1") == 0
    assert monitor.record_failure("dev-1", Health.REACHABLE) is None


def test_failures_outside_window_do_not_count(monitor, clock):
    monitor.record_failure("dev-1", Health.REACHABLE)
    clock.now += 45
    monitor.record_failure("dev-1", Health.REACHABLE)
    clock.now += 45
    # The first failure has left the 60s window
    assert monitor.record_failure("dev-1", Health.REACHABLE) is None
    assert monitor.failure_count("dev-1") == 2


def test_unreachable_device_recovers_on_next_success(monitor):
    for _ in range(3):
        monitor.record_failure("dev-1", Health.REACHABLE)
    assert monitor.record_success("dev-1", Health.UNREACHABLE) == Health.REACHABLE


def test_devices_are_tracked_independently(monitor):
    for _ in range(2):
        monitor.record_failure("dev-1", Health.REACHABLE)
    assert monitor.record_failure("dev-2", Health.REACHABLE) is None
    assert monitor.failure_count("dev-1") == 2
    assert monitor.failure_count("dev-2") == 1


def test_probe_delay_backs_off_while_unreachable(monitor):
    assert monitor.next_probe_delay("dev-1", Health.REACHABLE, 15.0) == 15.0

    for _ in range(3):
        monitor.record_failure("dev-1", Health.REACHABLE)
    delays = [monitor.next_probe_delay("dev-1", Health.UNREACHABLE, 15.0)]
    for _ in range(7):
        monitor.record_failure("dev-1", Health.UNREACHABLE)
        delays.append(monitor.next_probe_delay("dev-1", Health.UNREACHABLE, 15.0))

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]


def test_backoff_resets_after_recovery(monitor):
    for _ in range(5):
        monitor.record_failure("dev-1", Health.REACHABLE)
    monitor.record_success("dev-1", Health.UNREACHABLE)
    assert monitor.next_probe_delay("dev-1", Health.UNREACHABLE, 15.0) == 1.0


@pytest.mark.asyncio
async def test_prober_submits_query_and_reports_outcome():
    state = DeviceState(power=True, brightness=10, temperature=200)
    seen = []

    async def executor(command):
        seen.append(command)
        return state

    serializer = CommandSerializer(executor, depth=4, timeout=1.0)
    results = asyncio.Queue()
    prober = HealthProber("dev-1", serializer.submit, results, next_delay=lambda _: 0.01)

    outcome = await prober.probe_once()

    assert outcome.ok
    assert outcome.state == state
    assert seen[0].operation == CommandType.QUERY
    assert seen[0].origin == CommandOrigin.PROBE
    await serializer.drain(1.0)


@pytest.mark.asyncio
async def test_prober_reports_failures_and_waits_for_them_to_be_applied():
    async def executor(command):
        raise DeviceUnreachableError("down")

    serializer = CommandSerializer(executor, depth=4, timeout=1.0)
    results = asyncio.Queue()
    prober = HealthProber("dev-1", serializer.submit, results, next_delay=lambda _: 10.0)
    prober.start()

    outcome = await asyncio.wait_for(results.get(), 1.0)
    assert not outcome.ok
    assert isinstance(outcome.error, DeviceUnreachableError)
    # Nothing else is submitted until the consumer acknowledges
    assert not outcome.applied.done()
    outcome.applied.set_result(None)

    await prober.stop()
    await serializer.drain(1.0)


@pytest.mark.asyncio
async def test_unexpected_error_counts_as_failure_and_loop_keeps_running():
    calls = []

    async def executor(command):
        calls.append(command)
        raise RuntimeError("undecodable reply")

    serializer = CommandSerializer(executor, depth=4, timeout=1.0)
    results = asyncio.Queue()
    prober = HealthProber("dev-1", serializer.submit, results, next_delay=lambda _: 0.01)
    prober.start()

    for _ in range(2):
        outcome = await asyncio.wait_for(results.get(), 1.0)
        assert isinstance(outcome.error, ProtocolError)
        assert "undecodable reply" in str(outcome.error)
        outcome.applied.set_result(None)

    assert len(calls) >= 2
    assert not prober._task.done()

    await prober.stop()
    await serializer.drain(1.0)
