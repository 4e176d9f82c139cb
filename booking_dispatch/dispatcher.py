import asyncio
import logging
from datetime import datetime
from typing import Sequence

from .clients import BookingBackendClient
from .schemas import DispatchResult, ServiceRequest, Worker, WorkerOutcome
from .status import BookingStatus

logger = logging.getLogger(__name__)

BOOKING_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class DispatchError(Exception):
    pass


class NoEligibleWorkersError(DispatchError):
    def __init__(self, category_id=None):
        super().__init__("no eligible workers")
        self.category_id = category_id


def format_booking_time(request: ServiceRequest, now: datetime | None = None) -> str:
    # local wall clock, the backend stores it as-is
    when = request.booking_time or now or datetime.now()
    if when.tzinfo is not None:
        when = when.astimezone().replace(tzinfo=None)
    return when.strftime(BOOKING_TIME_FORMAT)


def build_booking_payload(
    request: ServiceRequest,
    worker: Worker,
    booking_id: str,
    booking_time: str,
) -> dict:
    contact_name, contact_number = request.resolved_contact()
    return {
        "booking_id": booking_id,
        "worker_id": worker.id,
        "user_id": request.user_id,
        "contact_name": contact_name,
        "contact_number": contact_number,
        "work_location": request.location.formatted(),
        "work_location_lat": request.location.latitude,
        "work_location_lng": request.location.longitude,
        "booking_time": booking_time,
        "status": int(BookingStatus.PENDING),
        "description": request.description,
        "work_documents": ",".join(request.work_documents) or None,
    }


async def dispatch(
    client: BookingBackendClient,
    request: ServiceRequest,
    workers: Sequence[Worker],
    booking_id: str,
) -> DispatchResult:
    """
    Create one booking record per eligible worker, concurrently, all under
    ``booking_id``.

    Every creation call is awaited; none is abandoned when a sibling fails.
    The result lists both sides, so ``result.ok`` is False on any failure
    even though the succeeded records are already live on the backend.
    """
    if not workers:
        raise NoEligibleWorkersError(request.category_id)

    # one record per worker, even if the roster lists someone twice
    unique = {}
    for w in workers:
        unique.setdefault(w.id, w)
    workers = list(unique.values())

    booking_time = format_booking_time(request)

    async def create(worker: Worker) -> WorkerOutcome:
        payload = build_booking_payload(request, worker, booking_id, booking_time)
        try:
            response = await client.create_booking(payload)
        except Exception as e:
            logger.warning("booking %s: creation failed for worker %s: %s", booking_id, worker.id, e)
            return WorkerOutcome(worker_id=worker.id, ok=False, error=str(e) or type(e).__name__)
        return WorkerOutcome(worker_id=worker.id, ok=True, response=response)

    outcomes = await asyncio.gather(*[create(w) for w in workers])

    result = DispatchResult(
        booking_id=booking_id,
        succeeded=[o for o in outcomes if o.ok],
        failed=[o for o in outcomes if not o.ok],
    )
    if result.ok:
        logger.info("booking %s: created %d record(s)", booking_id, len(result.succeeded))
    elif result.partial:
        logger.warning(
            "booking %s: partial dispatch, %d created, %d failed; created records stay live",
            booking_id,
            len(result.succeeded),
            len(result.failed),
        )
    else:
        logger.warning("booking %s: every creation call failed", booking_id)
    return result
