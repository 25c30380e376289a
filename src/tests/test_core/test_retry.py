import pytest

from keylightd.utils.exceptions import DeviceUnreachableError, ProtocolError
from keylightd.utils.retry import async_retry_with_backoff, compute_backoff


def test_backoff_doubles_up_to_cap():
    assert [compute_backoff(n) for n in range(1, 8)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    assert compute_backoff(0) == 0.0
    assert compute_backoff(10_000) == 30.0


def test_jitter_stays_within_bounds():
    for attempt in range(1, 10):
        delay = compute_backoff(attempt, jitter=True)
        assert 0.0 <= delay <= 30.0


@pytest.mark.asyncio
async def test_retries_until_success():
    attempts = []

    @async_retry_with_backoff(max_retries=3, base_delay=0.001, exceptions=(DeviceUnreachableError,))
    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise DeviceUnreachableError("refused")
        return "ok"

    assert await flaky() == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    attempts = []

    @async_retry_with_backoff(max_retries=2, base_delay=0.001, exceptions=(DeviceUnreachableError,))
    async def down():
        attempts.append(1)
        raise DeviceUnreachableError("refused")

    with pytest.raises(DeviceUnreachableError):
        await down()
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_unlisted_errors_are_not_retried():
    attempts = []

    @async_retry_with_backoff(max_retries=5, base_delay=0.001, exceptions=(DeviceUnreachableError,))
    async def broken():
        attempts.append(1)
        raise ProtocolError("garbage")

    with pytest.raises(ProtocolError):
        await broken()
    assert len(attempts) == 1
