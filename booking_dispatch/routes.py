from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from .dispatcher import DispatchError, NoEligibleWorkersError
from .outcome import failure_result
from .schemas import DispatchRequest, DispatchResponse, FailureReason, ServiceRequest, SessionView
from .security import require_role
from .sessions import (
    CheckoutUnavailable,
    DispatchCoordinator,
    SessionForbidden,
    SessionNotFound,
    SessionStateError,
)

router = APIRouter()

customer = require_role("user", "admin")


def get_coordinator(request: Request) -> DispatchCoordinator:
    return request.app.state.coordinator


def _session_or_error(coordinator: DispatchCoordinator, booking_id: str, user: dict):
    try:
        return coordinator.get(booking_id, user["user_id"])
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Booking not found")
    except SessionForbidden:
        raise HTTPException(status_code=403, detail="Booking belongs to another user")


@router.post("/dispatch", response_model=DispatchResponse)
async def start_dispatch(
    data: DispatchRequest,
    user: dict = Depends(customer),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    if data.flow == "checkout" and data.amount is None:
        raise HTTPException(status_code=422, detail="amount is required for the checkout flow")

    description = (data.description or "").strip() or ServiceRequest.describe_services(data.service_names)
    try:
        request = ServiceRequest(
            category_id=data.category_id,
            user_id=user["user_id"],
            location=data.location,
            description=description,
            booking_time=data.booking_time,
            work_documents=data.work_documents,
            contact_name=data.contact_name or user.get("name"),
            contact_number=data.contact_number or user.get("mobile"),
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=[err["msg"] for err in e.errors()])

    prefill = {k: user[k] for k in ("email", "name", "mobile") if user.get(k)}
    try:
        session = await coordinator.start(request, flow=data.flow, amount=data.amount, prefill=prefill)
    except CheckoutUnavailable:
        raise HTTPException(status_code=503, detail="Payments are not available right now. Please try again later.")
    except NoEligibleWorkersError:
        raise HTTPException(status_code=422, detail=failure_result(FailureReason.NO_ELIGIBLE_WORKERS).message)
    except DispatchError as e:
        raise HTTPException(status_code=422, detail=str(e))

    result = session.dispatch_result
    return DispatchResponse(
        booking_id=session.booking_id,
        ok=result.ok,
        state=session.state,
        succeeded=result.worker_ids,
        failed=result.failed,
    )


@router.get("/dispatch/{booking_id}", response_model=SessionView)
async def get_dispatch(
    booking_id: str,
    user: dict = Depends(customer),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    return _session_or_error(coordinator, booking_id, user).view()


@router.delete("/dispatch/{booking_id}", response_model=SessionView)
async def cancel_dispatch(
    booking_id: str,
    user: dict = Depends(customer),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    _session_or_error(coordinator, booking_id, user)
    return coordinator.cancel(booking_id).view()


@router.post("/dispatch/{booking_id}/payment/retry", response_model=SessionView)
async def retry_payment(
    booking_id: str,
    user: dict = Depends(customer),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    _session_or_error(coordinator, booking_id, user)
    try:
        session = await coordinator.retry_payment(booking_id)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.view()


@router.post("/dispatch/{booking_id}/payment/cancel", response_model=SessionView)
async def cancel_payment(
    booking_id: str,
    user: dict = Depends(customer),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    _session_or_error(coordinator, booking_id, user)
    try:
        session = coordinator.cancel_payment(booking_id)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.view()
