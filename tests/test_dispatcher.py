import json
from datetime import datetime, timedelta

import httpx
import pytest
import respx
from pydantic import ValidationError

from booking_dispatch.dispatcher import (
    NoEligibleWorkersError,
    build_booking_payload,
    dispatch,
    format_booking_time,
)
from booking_dispatch.schemas import ServiceRequest, Worker, WorkLocation
from conftest import HOST, envelope, record, worker


def make_request(**overrides):
    fields = dict(
        category_id=5,
        user_id=42,
        location=WorkLocation(flat_no="12B", landmark="Near park", address="MG Road", latitude=12.9, longitude=77.6),
        description="Booking for Tap repair",
        contact_name="Asha",
        contact_number="9876543210",
    )
    fields.update(overrides)
    return ServiceRequest(**fields)


def workers(*ids):
    return [Worker(**worker(i, "5")) for i in ids]


def test_payload_carries_shared_id_and_initial_status():
    when = datetime.now().replace(microsecond=0) + timedelta(days=1)
    request = make_request(booking_time=when, work_documents=["a.jpg", "b.mp4"])

    payload = build_booking_payload(request, workers(7)[0], "bk1700000000", format_booking_time(request))

    assert payload == {
        "booking_id": "bk1700000000",
        "worker_id": 7,
        "user_id": 42,
        "contact_name": "Asha",
        "contact_number": "9876543210",
        "work_location": "12B, Near park, MG Road",
        "work_location_lat": 12.9,
        "work_location_lng": 77.6,
        "booking_time": when.strftime("%Y-%m-%d %H:%M:%S"),
        "status": 0,
        "description": "Booking for Tap repair",
        "work_documents": "a.jpg,b.mp4",
    }


def test_payload_defaults():
    request = make_request(location=WorkLocation(), contact_name="  ", contact_number=None)

    payload = build_booking_payload(request, workers(1)[0], "bk1", "2030-01-01 10:00:00")

    assert payload["work_location"] == "Location not specified"
    assert payload["contact_name"] == "Guest user"
    assert payload["contact_number"] is None
    assert payload["work_documents"] is None


def test_instant_request_uses_current_local_time():
    request = make_request(booking_time=None)
    now = datetime(2030, 5, 6, 7, 8, 9)

    assert format_booking_time(request, now=now) == "2030-05-06 07:08:09"


def test_past_booking_time_is_rejected():
    with pytest.raises(ValidationError):
        make_request(booking_time=datetime.now() - timedelta(minutes=1))


def test_describe_services():
    assert ServiceRequest.describe_services(["Tap repair", " Tap repair", "Fan install"]) == (
        "Booking for Tap repair, Fan install"
    )
    assert ServiceRequest.describe_services([], item_count=3) == "Booking for 3 service(s)"


@pytest.mark.asyncio
@respx.mock
async def test_empty_worker_set_fails_fast_without_network(backend_client):
    route = respx.post(host=HOST, path="/api/bookings").respond(201, json=envelope())

    with pytest.raises(NoEligibleWorkersError):
        await dispatch(backend_client, make_request(), [], "bk1700000000")

    assert not route.called


@pytest.mark.asyncio
@respx.mock
async def test_every_record_shares_the_booking_id(backend_client):
    route = respx.post(host=HOST, path="/api/bookings").respond(201, json=envelope(message="ok"))

    result = await dispatch(backend_client, make_request(), workers(1, 2, 3), "bk1700000000")

    assert result.ok
    assert not result.partial
    assert sorted(result.worker_ids) == [1, 2, 3]
    bodies = [json.loads(call.request.content) for call in route.calls]
    assert {b["booking_id"] for b in bodies} == {"bk1700000000"}
    assert sorted(b["worker_id"] for b in bodies) == [1, 2, 3]
    assert {b["status"] for b in bodies} == {0}


@pytest.mark.asyncio
@respx.mock
async def test_duplicate_roster_entries_get_one_record(backend_client):
    route = respx.post(host=HOST, path="/api/bookings").respond(201, json=envelope())

    result = await dispatch(backend_client, make_request(), workers(1, 1, 2), "bk1")

    assert route.call_count == 2
    assert sorted(result.worker_ids) == [1, 2]


@pytest.mark.asyncio
@respx.mock
async def test_one_failed_call_fails_the_dispatch_but_siblings_stay_live(backend_client):
    def create(request):
        body = json.loads(request.content)
        if body["worker_id"] == 2:
            raise httpx.ConnectError("connection reset")
        return httpx.Response(201, json=envelope(message="Booking created"))

    respx.post(host=HOST, path="/api/bookings").mock(side_effect=create)
    respx.get(host=HOST, path="/api/bookings").respond(
        200,
        json=envelope([record("bk1700000000", 1, 0), record("bk1700000000", 3, 0)]),
    )

    result = await dispatch(backend_client, make_request(), workers(1, 2, 3), "bk1700000000")

    assert not result.ok
    assert result.partial
    assert [o.worker_id for o in result.failed] == [2]
    assert "Error calling backend" in result.failed[0].error
    assert sorted(result.worker_ids) == [1, 3]

    snapshot = await backend_client.fetch_snapshot("bk1700000000", 42)
    assert sorted(r.worker_id for r in snapshot) == [1, 3]


@pytest.mark.asyncio
@respx.mock
async def test_backend_error_message_is_kept(backend_client):
    respx.post(host=HOST, path="/api/bookings").respond(400, json={"success": False, "message": "worker inactive"})

    result = await dispatch(backend_client, make_request(), workers(4), "bk1")

    assert not result.ok
    assert not result.partial
    assert "worker inactive" in result.failed[0].error
