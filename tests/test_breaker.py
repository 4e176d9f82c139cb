import time

import pytest
import respx

from booking_dispatch.breaker import CircuitBreaker, CircuitBreakerOpen
from booking_dispatch.clients import BackendConnectionError, BackendRequestError, BookingBackendClient
from conftest import BASE, HOST, FakeRedis, envelope


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def breaker(redis):
    return CircuitBreaker("backend", redis, failure_threshold=3, reset_timeout_seconds=10)


@pytest.mark.asyncio
async def test_opens_after_threshold(breaker):
    for _ in range(2):
        await breaker.record_failure()
    await breaker.allow_request()

    await breaker.record_failure()

    with pytest.raises(CircuitBreakerOpen):
        await breaker.allow_request()
    assert (await breaker.status())["state"] == "OPEN"


@pytest.mark.asyncio
async def test_half_open_after_reset_timeout(breaker, redis):
    await breaker.open()
    redis.data[breaker._key("opened_at")] = str(time.time() - 11)

    await breaker.allow_request()

    assert redis.data[breaker._key("state")] == "HALF_OPEN"


@pytest.mark.asyncio
async def test_half_open_failure_reopens(breaker, redis):
    await redis.set(breaker._key("state"), "HALF_OPEN")

    await breaker.record_failure()

    assert (await breaker.status())["state"] == "OPEN"
    with pytest.raises(CircuitBreakerOpen):
        await breaker.allow_request()


@pytest.mark.asyncio
async def test_success_closes_and_resets_failures(breaker):
    await breaker.record_failure()
    await breaker.record_failure()

    await breaker.record_success()

    assert await breaker.status() == {
        "name": "backend",
        "state": "CLOSED",
        "failures": 0,
        "failure_threshold": 3,
        "reset_timeout_seconds": 10,
    }


@pytest.mark.asyncio
async def test_open_without_timestamp_closes(breaker, redis):
    await redis.set(breaker._key("state"), "OPEN")

    await breaker.allow_request()

    assert (await breaker.status())["state"] == "CLOSED"


@pytest.mark.asyncio
@respx.mock
async def test_client_short_circuits_when_open(breaker):
    route = respx.get(host=HOST, path="/api/workers").respond(200, json=envelope([]))
    client = BookingBackendClient(BASE, breaker=breaker)
    await breaker.open()

    with pytest.raises(BackendConnectionError):
        await client.list_workers()

    assert not route.called
    await client.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_client_counts_server_errors_only(breaker):
    respx.get(host=HOST, path="/api/workers").respond(500, json={"message": "boom"})
    respx.post(host=HOST, path="/api/bookings").respond(422, json={"message": "bad worker"})
    client = BookingBackendClient(BASE, breaker=breaker)

    for _ in range(5):
        with pytest.raises(BackendRequestError):
            await client.create_booking({"booking_id": "bk1"})
    assert (await breaker.status())["failures"] == 0

    for _ in range(3):
        with pytest.raises(BackendRequestError):
            await client.list_workers()
    assert (await breaker.status())["state"] == "OPEN"
    await client.aclose()
