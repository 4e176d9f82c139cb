import json
import os

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

import httpx
import pytest

from booking_dispatch.clients import BookingBackendClient
from booking_dispatch.payments import PaymentProvider, PaymentResult

BASE = "http://backend.test/api"
HOST = "backend.test"


def worker(id, skill_id, name=None, mobile=None):
    return {"id": id, "name": name or f"Worker {id}", "mobile": mobile or f"90000000{id:02d}", "skill_id": skill_id}


def record(booking_id, worker_id, status, user_id=42, **extra):
    return {
        "id": worker_id * 10,
        "booking_id": booking_id,
        "worker_id": worker_id,
        "user_id": user_id,
        "status": status,
        "worker_name": f"Worker {worker_id}",
        "worker_mobile": f"90000000{worker_id:02d}",
        **extra,
    }


def envelope(data=None, success=True, **extra):
    body = {"success": success, **extra}
    if data is not None:
        body["data"] = data
    return body


class FakeBackend:
    """
    In-memory stand-in for the booking backend, served through
    httpx.MockTransport. Workers act on their records through ``on_poll``.
    """

    def __init__(self, workers=None):
        self.workers = workers or []
        self.records = []
        self.payments = []
        self.fail_workers = set()
        self.fail_payments = False
        self.polls = 0
        self.on_poll = None

    def set_status(self, worker_id, status):
        for r in self.records:
            if r["worker_id"] == worker_id:
                r["status"] = status

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path == "/api/workers":
            return httpx.Response(200, json=envelope(self.workers))

        if request.method == "POST" and path == "/api/bookings":
            body = json.loads(request.content)
            if body["worker_id"] in self.fail_workers:
                return httpx.Response(500, json=envelope(success=False, message="insert failed"))
            self.records.append({**body, "id": len(self.records) + 1, "worker_name": f"Worker {body['worker_id']}"})
            return httpx.Response(201, json=envelope(message="Booking created"))

        if request.method == "GET" and path == "/api/bookings":
            self.polls += 1
            if self.on_poll:
                self.on_poll(self)
            user_id = request.url.params.get("user_id")
            data = [r for r in self.records if str(r["user_id"]) == user_id]
            return httpx.Response(200, json=envelope(data))

        if request.method == "PUT" and path.startswith("/api/bookings/") and path.endswith("/payment"):
            if self.fail_payments:
                return httpx.Response(503, json=envelope(success=False, message="db down"))
            booking_id = path.split("/")[3]
            self.payments.append({"booking_id": booking_id, **json.loads(request.content)})
            return httpx.Response(200, json=envelope(message="Payment updated"))

        return httpx.Response(404, json=envelope(success=False, message="not found"))

    def client(self) -> BookingBackendClient:
        return BookingBackendClient(BASE, http=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)))


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def set(self, *args, **kwargs):
        self.ops.append(("set", args, kwargs))
        return self

    def delete(self, *args):
        self.ops.append(("delete", args, {}))
        return self

    async def execute(self):
        results = []
        for name, args, kwargs in self.ops:
            results.append(await getattr(self.redis, name)(*args, **kwargs))
        self.ops = []
        return results


class FakeRedis:
    """Just enough of redis.asyncio for the breaker; expiry is ignored."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = str(value)
        return True

    async def delete(self, *keys):
        return sum(1 for k in keys if self.data.pop(k, None) is not None)

    async def incr(self, key):
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])

    async def expire(self, key, seconds):
        return key in self.data

    def pipeline(self):
        return FakePipeline(self)


class ScriptedProvider(PaymentProvider):
    def __init__(self, *results: PaymentResult):
        self.results = list(results)
        self.opened = []

    async def open(self, options):
        self.opened.append(options)
        return self.results.pop(0)


@pytest.fixture
async def backend_client():
    client = BookingBackendClient(BASE)
    yield client
    await client.aclose()
