import logging
from typing import List

import httpx
from pydantic import ValidationError

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .schemas import BookingRecord, Worker

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3.0

# what the reconciler needs from a record
RESOLUTION_FIELDS = ("booking_id", "worker_id", "status")


class BackendError(Exception):
    """Base error for booking backend calls."""


class BackendConnectionError(BackendError):
    """Timeout, transport failure, or the breaker refused the call."""


class BackendRequestError(BackendError):
    """Backend answered with an HTTP error status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"backend_error_{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class BackendResponseError(BackendError):
    """Backend answered 2xx but the envelope says it failed or is malformed."""


def _message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or "Unknown error"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "Unknown error")
    return "Unknown error"


class BookingBackendClient:
    """
    Client for the backend booking service. Every call goes through the
    breaker when one is configured; the backend wraps results in
    ``{"success": bool, "data": ..., "message": ...}``.
    """

    def __init__(
        self,
        base_url: str,
        http: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker
        self.http = http or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def aclose(self):
        await self.http.aclose()

    async def _call(self, method: str, path: str, payload: dict | None = None, params: dict | None = None) -> dict:
        if self.breaker:
            try:
                await self.breaker.allow_request()
            except CircuitBreakerOpen as e:
                raise BackendConnectionError(str(e)) from e

        url = f"{self.base_url}{path}"
        try:
            resp = await self.http.request(method, url, json=payload, params=params)
        except httpx.TimeoutException as e:
            await self._failure()
            raise BackendConnectionError(f"Timeout calling backend: {method} {path}") from e
        except httpx.HTTPError as e:
            await self._failure()
            raise BackendConnectionError(f"Error calling backend: {method} {path}: {e}") from e

        if resp.status_code >= 500:
            await self._failure()
            raise BackendRequestError(resp.status_code, _message(resp))
        if resp.status_code >= 400:
            # the backend is up, the request was wrong
            await self._success()
            raise BackendRequestError(resp.status_code, _message(resp))

        await self._success()
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as e:
            raise BackendResponseError(f"Non-JSON response from {method} {path}") from e
        if not isinstance(body, dict):
            raise BackendResponseError(f"Unexpected response shape from {method} {path}")
        if body.get("success") is False:
            raise BackendResponseError(str(body.get("message") or "Backend reported failure"))
        return body

    async def _success(self):
        if self.breaker:
            await self.breaker.record_success()

    async def _failure(self):
        if self.breaker:
            await self.breaker.record_failure()

    # -------- WORKERS --------

    async def list_workers(self) -> List[Worker]:
        body = await self._call("GET", "/workers")
        data = body.get("data")
        if not isinstance(data, list):
            raise BackendResponseError("Invalid workers data")

        workers = []
        for item in data:
            try:
                workers.append(Worker.model_validate(item))
            except ValidationError:
                logger.warning("skipping malformed worker entry: %r", item)
        return workers

    # -------- BOOKINGS --------

    async def create_booking(self, payload: dict) -> dict:
        return await self._call("POST", "/bookings", payload)

    async def _user_bookings(self, user_id, skip_payment_check: bool) -> list:
        params = {"user_id": str(user_id)}
        if skip_payment_check:
            params["skip_payment_check"] = "true"
        body = await self._call("GET", "/bookings", params=params)
        data = body.get("data")
        if not isinstance(data, list):
            raise BackendResponseError("Invalid bookings data")
        return data

    @staticmethod
    def _records(items: list) -> List[BookingRecord]:
        # one bad sibling must not hide the others from the reconciler; a record
        # with a broken detail field still counts by its status
        records = []
        for item in items:
            try:
                records.append(BookingRecord.model_validate(item))
                continue
            except ValidationError as e:
                logger.warning("malformed booking record %r, keeping its status only: %s", item.get("id"), e)
            try:
                records.append(BookingRecord.model_validate({k: item.get(k) for k in RESOLUTION_FIELDS}))
            except ValidationError:
                logger.warning("dropping unusable booking record %r", item.get("id"))
        return records

    async def fetch_snapshot(self, booking_id: str, user_id, skip_payment_check: bool = False) -> List[BookingRecord]:
        """All records of one logical booking; the backend can only filter by user."""
        items = await self._user_bookings(user_id, skip_payment_check)
        return self._records(
            [i for i in items if isinstance(i, dict) and str(i.get("booking_id")) == booking_id]
        )

    async def update_payment(self, booking_id: str, amount: float, payment_id: str) -> dict:
        return await self._call(
            "PUT",
            f"/bookings/{booking_id}/payment",
            {"payment_status": 1, "amount": amount, "payment_id": payment_id},
        )
