import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List

from .clients import BookingBackendClient
from .dispatcher import NoEligibleWorkersError, dispatch
from .eligibility import fetch_eligible_workers
from .events import build_event, to_json
from .identifiers import new_booking_id
from .outcome import CHECKOUT, OutcomeGate, failure_result
from .publisher import RabbitPublisher
from .reconciler import PollHandle, resolve, status_counts
from .schemas import (
    BookingRecord,
    DispatchResult,
    FailureReason,
    PaymentCollected,
    PaymentFailed,
    ServiceRequest,
    SessionView,
)

logger = logging.getLogger(__name__)

WAITING = "waiting"
CONFIRMED = "confirmed"
FAILED = "failed"
PAYMENT_PENDING = "payment_pending"
PAID = "paid"
PAYMENT_FAILED = "payment_failed"
CANCELLED = "cancelled"

# final states; sessions in them are evicted after the retention period
TERMINAL_STATES = {CONFIRMED, FAILED, PAID, CANCELLED}


class SessionNotFound(Exception):
    pass


class SessionForbidden(Exception):
    pass


class SessionStateError(Exception):
    pass


class CheckoutUnavailable(Exception):
    pass


@dataclass
class BookingSession:
    booking_id: str
    user_id: str
    flow: str
    amount: float | None
    prefill: dict = field(default_factory=dict)
    state: str = WAITING
    snapshot: List[BookingRecord] = field(default_factory=list)
    dispatch_result: DispatchResult | None = None
    outcome: object = None
    result: object = None
    handle: PollHandle | None = None
    driver: asyncio.Task | None = None
    finished_at: float | None = None

    def view(self) -> SessionView:
        return SessionView(
            booking_id=self.booking_id,
            flow=self.flow,
            state=self.state,
            status_counts=status_counts(self.snapshot),
            outcome=self.outcome,
            result=self.result,
        )


class DispatchCoordinator:
    """
    Runs the whole request pipeline for each customer request:
    eligibility -> booking id -> fan-out -> reconciler -> outcome gate.
    Each session owns exactly one poll handle.
    """

    def __init__(
        self,
        client: BookingBackendClient,
        gate: OutcomeGate,
        publisher: RabbitPublisher | None = None,
        poll_interval: float = 2.0,
        poll_timeout: float | None = 300.0,
        skip_payment_check: bool = True,
        poll_partial_dispatch: bool = True,
        session_retention: float | None = 900.0,
        publish_timeout: float = 2.0,
        clock=time.monotonic,
    ):
        self.client = client
        self.gate = gate
        self.publisher = publisher
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.skip_payment_check = skip_payment_check
        self.poll_partial_dispatch = poll_partial_dispatch
        self.session_retention = session_retention
        self.publish_timeout = publish_timeout
        self._clock = clock
        self._sessions: Dict[str, BookingSession] = {}

    @property
    def accepts_checkout(self) -> bool:
        return self.gate.provider is not None

    async def start(
        self,
        request: ServiceRequest,
        flow: str = CHECKOUT,
        amount: float | None = None,
        prefill: dict | None = None,
    ) -> BookingSession:
        self._evict_expired()
        if flow == CHECKOUT and not self.accepts_checkout:
            raise CheckoutUnavailable("no payment provider configured")

        workers = await fetch_eligible_workers(self.client, request.category_id)
        if not workers:
            raise NoEligibleWorkersError(request.category_id)

        booking_id = new_booking_id()
        result = await dispatch(self.client, request, workers, booking_id)

        session = BookingSession(
            booking_id=booking_id,
            user_id=str(request.user_id),
            flow=flow,
            amount=amount,
            prefill=prefill or {},
            dispatch_result=result,
        )
        self._sessions[booking_id] = session

        if not result.succeeded or (result.failed and not self.poll_partial_dispatch):
            session.state = FAILED
            session.result = failure_result(FailureReason.DISPATCH_FAILED, booking_id)
            self._settle(session)
        else:
            session.handle = resolve(
                self.client,
                booking_id,
                request.user_id,
                on_update=lambda records: self._on_update(session, records),
                interval=self.poll_interval,
                timeout=self.poll_timeout,
                skip_payment_check=self.skip_payment_check,
            )
            session.driver = asyncio.create_task(self._drive(session), name=f"gate:{booking_id}")

        # polling is already running; a slow broker only delays the response
        await self._publish(
            "booking.dispatched",
            {
                "booking_id": booking_id,
                "category_id": request.category_id,
                "succeeded": result.worker_ids,
                "failed": [o.worker_id for o in result.failed],
            },
        )
        return session

    async def _drive(self, session: BookingSession):
        outcome = await session.handle.wait()
        if outcome is None:
            return

        session.outcome = outcome
        session.state = CONFIRMED if outcome.kind == "confirmed" else FAILED
        if outcome.kind == "confirmed":
            session.snapshot = [outcome.record]
            if session.flow == CHECKOUT:
                session.state = PAYMENT_PENDING

        try:
            result = await self.gate.handle(outcome, flow=session.flow, amount=session.amount, prefill=session.prefill)
        except Exception:
            logger.exception("booking %s: outcome gate failed", session.booking_id)
            session.state = PAYMENT_FAILED if session.state == PAYMENT_PENDING else session.state
            self._settle(session)
            return
        self._apply_result(session, result)

    @staticmethod
    def _on_update(session: BookingSession, records: List[BookingRecord]):
        session.snapshot = list(records)

    def _apply_result(self, session: BookingSession, result):
        session.result = result
        if isinstance(result, PaymentCollected):
            session.state = PAID
        elif isinstance(result, PaymentFailed):
            session.state = PAYMENT_FAILED
        self._settle(session)

    def _settle(self, session: BookingSession):
        if session.state in TERMINAL_STATES and session.finished_at is None:
            session.finished_at = self._clock()

    def _evict_expired(self):
        if self.session_retention is None:
            return
        now = self._clock()
        expired = [
            booking_id
            for booking_id, s in self._sessions.items()
            if s.finished_at is not None and now - s.finished_at >= self.session_retention
        ]
        for booking_id in expired:
            del self._sessions[booking_id]
        if expired:
            logger.info("evicted %d finished session(s), %d left", len(expired), len(self._sessions))

    def get(self, booking_id: str, user_id=None) -> BookingSession:
        self._evict_expired()
        session = self._sessions.get(booking_id)
        if session is None:
            raise SessionNotFound(booking_id)
        if user_id is not None and session.user_id != str(user_id):
            raise SessionForbidden(booking_id)
        return session

    def cancel(self, booking_id: str, user_id=None) -> BookingSession:
        session = self.get(booking_id, user_id)
        if session.handle is not None and not session.handle.done:
            session.handle.cancel()
            session.state = CANCELLED
            self._settle(session)
        return session

    async def retry_payment(self, booking_id: str, user_id=None) -> BookingSession:
        session = self.get(booking_id, user_id)
        if session.state != PAYMENT_FAILED:
            raise SessionStateError(f"payment can only be retried after a failed payment, state is {session.state}")
        session.state = PAYMENT_PENDING
        try:
            result = await self.gate.retry_payment(booking_id, session.amount, prefill=session.prefill)
        except Exception:
            session.state = PAYMENT_FAILED
            raise
        self._apply_result(session, result)
        return session

    def cancel_payment(self, booking_id: str, user_id=None) -> BookingSession:
        session = self.get(booking_id, user_id)
        if session.state != PAYMENT_FAILED:
            raise SessionStateError(f"payment can only be cancelled after a failed payment, state is {session.state}")
        session.result = self.gate.cancel_payment(booking_id)
        session.state = CANCELLED
        self._settle(session)
        return session

    async def shutdown(self):
        for session in list(self._sessions.values()):
            if session.handle is not None:
                session.handle.cancel()
            if session.driver is not None and not session.driver.done():
                session.driver.cancel()
        drivers = [s.driver for s in self._sessions.values() if s.driver is not None]
        if drivers:
            await asyncio.gather(*drivers, return_exceptions=True)

    async def _publish(self, routing_key: str, data: dict):
        if self.publisher is None:
            return
        body = to_json(build_event(routing_key, data))
        try:
            await asyncio.wait_for(self.publisher.publish(routing_key, body), timeout=self.publish_timeout)
        except asyncio.TimeoutError:
            logger.warning("publishing %s took over %ss, dropped", routing_key, self.publish_timeout)
