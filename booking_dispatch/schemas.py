from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from dateutil import parser
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .status import BookingStatus

LOCATION_NOT_SPECIFIED = "Location not specified"
GUEST_CONTACT_NAME = "Guest user"


# ---- Roster ----

class Worker(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    name: Optional[str] = None
    mobile: Optional[str] = None
    skill_id: Optional[int | str] = None  # comma-separated category ids


# ---- Service request ----

class WorkLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: Optional[str] = None
    flat_no: Optional[str] = None
    landmark: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def formatted(self) -> str:
        parts = [(p or "").strip() for p in (self.flat_no, self.landmark, self.address)]
        return ", ".join(p for p in parts if p) or LOCATION_NOT_SPECIFIED


class ServiceRequest(BaseModel):
    """
    What the customer asked for. Frozen: once dispatched the same request
    backs every record in the fan-out.
    """

    model_config = ConfigDict(frozen=True)

    category_id: int
    user_id: int | str
    location: WorkLocation = Field(default_factory=WorkLocation)
    description: str
    booking_time: Optional[datetime] = None  # None means "instant"
    work_documents: List[str] = Field(default_factory=list)
    contact_name: Optional[str] = None
    contact_number: Optional[str] = None

    @field_validator("booking_time")
    @classmethod
    def _future_only(cls, v: Optional[datetime]):
        if v is None:
            return v
        now = datetime.now(v.tzinfo) if v.tzinfo else datetime.now()
        if v <= now:
            raise ValueError("booking_time must be in the future")
        return v

    @staticmethod
    def describe_services(service_names: List[str], item_count: int | None = None) -> str:
        unique = []
        for name in service_names:
            name = (name or "").strip()
            if name and name not in unique:
                unique.append(name)
        if unique:
            return f"Booking for {', '.join(unique)}"
        return f"Booking for {item_count if item_count is not None else len(service_names)} service(s)"

    def resolved_contact(self, profile_name: str | None = None, profile_mobile: str | None = None):
        name = (self.contact_name or "").strip() or profile_name or GUEST_CONTACT_NAME
        number = (self.contact_number or "").strip() or profile_mobile or None
        return name, number


# ---- Booking records ----

class BookingRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    booking_id: str
    worker_id: Optional[int] = None
    user_id: Optional[int | str] = None
    status: Optional[int | str] = None
    booking_time: Optional[str] = None
    description: Optional[str] = None
    work_documents: Optional[str] = None
    cancel_reason: Optional[str] = None
    reschedule_date: Optional[str] = None
    worker_name: Optional[str] = None
    worker_mobile: Optional[str] = None

    @property
    def state(self) -> BookingStatus | None:
        return BookingStatus.parse(self.status)

    @property
    def scheduled_at(self) -> datetime | None:
        if not self.booking_time:
            return None
        try:
            return parser.parse(self.booking_time)
        except (ValueError, OverflowError):
            return None


# ---- Dispatch ----

class WorkerOutcome(BaseModel):
    worker_id: int
    ok: bool
    error: Optional[str] = None
    response: Optional[dict] = None


class DispatchResult(BaseModel):
    booking_id: str
    succeeded: List[WorkerOutcome] = Field(default_factory=list)
    failed: List[WorkerOutcome] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        # all-or-nothing: a single failed creation call fails the dispatch
        return bool(self.succeeded) and not self.failed

    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)

    @property
    def worker_ids(self) -> List[int]:
        return [o.worker_id for o in self.succeeded]


# ---- Reconciler outcomes ----

class FailureReason(str, Enum):
    NO_ELIGIBLE_WORKERS = "no eligible workers"
    NO_WORKERS_AVAILABLE = "no workers available"
    TIMEOUT = "timeout"
    DISPATCH_FAILED = "dispatch failed"


class Confirmed(BaseModel):
    kind: Literal["confirmed"] = "confirmed"
    booking_id: str
    record: BookingRecord


class Failed(BaseModel):
    kind: Literal["failed"] = "failed"
    booking_id: str
    reason: FailureReason


# ---- Outcome gate results ----

class PaymentCollected(BaseModel):
    kind: Literal["payment_collected"] = "payment_collected"
    booking_id: str
    payment_id: str
    amount: float
    # False when the provider charged but the backend payment update failed
    recorded: bool = True


class PaymentFailed(BaseModel):
    kind: Literal["payment_failed"] = "payment_failed"
    booking_id: str
    message: str = "payment failed"
    reason: str
    retryable: bool = True


class PaymentCancelled(BaseModel):
    kind: Literal["payment_cancelled"] = "payment_cancelled"
    booking_id: str


class WorkerContact(BaseModel):
    kind: Literal["worker_contact"] = "worker_contact"
    booking_id: str
    worker_id: Optional[int] = None
    worker_name: Optional[str] = None
    worker_mobile: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class DispatchFailed(BaseModel):
    kind: Literal["dispatch_failed"] = "dispatch_failed"
    booking_id: Optional[str] = None
    reason: FailureReason
    message: str
    can_redispatch: bool = True


# ---- HTTP surface ----

class DispatchRequest(BaseModel):
    category_id: int
    description: Optional[str] = None
    service_names: List[str] = Field(default_factory=list)
    location: WorkLocation = Field(default_factory=WorkLocation)
    booking_time: Optional[datetime] = None
    work_documents: List[str] = Field(default_factory=list)
    contact_name: Optional[str] = None
    contact_number: Optional[str] = None
    flow: Literal["checkout", "directory"] = "checkout"
    amount: Optional[float] = Field(default=None, ge=0)


class DispatchResponse(BaseModel):
    booking_id: str
    ok: bool
    state: str
    succeeded: List[int]
    failed: List[WorkerOutcome]


class SessionView(BaseModel):
    booking_id: str
    flow: str
    state: str
    status_counts: dict = Field(default_factory=dict)
    outcome: Optional[Confirmed | Failed] = None
    result: Optional[
        PaymentCollected | PaymentFailed | PaymentCancelled | WorkerContact | DispatchFailed
    ] = None
