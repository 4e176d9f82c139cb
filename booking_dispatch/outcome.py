import logging

from .clients import BackendError, BookingBackendClient
from .events import build_event, to_json
from .payments import PaymentOptions, PaymentProvider, to_minor_units
from .publisher import RabbitPublisher
from .schemas import (
    Confirmed,
    DispatchFailed,
    Failed,
    FailureReason,
    PaymentCancelled,
    PaymentCollected,
    PaymentFailed,
    WorkerContact,
)

logger = logging.getLogger(__name__)

CHECKOUT = "checkout"
DIRECTORY = "directory"

FAILURE_MESSAGES = {
    FailureReason.NO_ELIGIBLE_WORKERS: "No workers found for this service category. Please try again later.",
    FailureReason.NO_WORKERS_AVAILABLE: "no workers available",
    FailureReason.TIMEOUT: "timed out",
    FailureReason.DISPATCH_FAILED: "Failed to create booking. Please try again.",
}


def failure_result(reason: FailureReason, booking_id: str | None = None) -> DispatchFailed:
    return DispatchFailed(booking_id=booking_id, reason=reason, message=FAILURE_MESSAGES[reason])


class OutcomeGate:
    """
    Next step once the reconciler settles: collect payment (checkout flow),
    hand out the worker's contact (directory flow), or report the failure.
    """

    def __init__(
        self,
        client: BookingBackendClient,
        provider: PaymentProvider | None = None,
        publisher: RabbitPublisher | None = None,
        currency: str = "INR",
        merchant_name: str | None = None,
    ):
        self.client = client
        self.provider = provider
        self.publisher = publisher
        self.currency = currency
        self.merchant_name = merchant_name

    async def handle(
        self,
        outcome: Confirmed | Failed,
        flow: str = CHECKOUT,
        amount: float | None = None,
        prefill: dict | None = None,
    ):
        if isinstance(outcome, Failed):
            await self._publish("booking.failed", {"booking_id": outcome.booking_id, "reason": outcome.reason.value})
            return failure_result(outcome.reason, outcome.booking_id)

        await self._publish(
            "booking.confirmed",
            {"booking_id": outcome.booking_id, "worker_id": outcome.record.worker_id},
        )
        if flow == DIRECTORY:
            return self.worker_contact(outcome)
        return await self.collect_payment(outcome.booking_id, amount, prefill=prefill)

    @staticmethod
    def worker_contact(outcome: Confirmed) -> WorkerContact:
        record = outcome.record
        return WorkerContact(
            booking_id=outcome.booking_id,
            worker_id=record.worker_id,
            worker_name=record.worker_name,
            worker_mobile=record.worker_mobile,
            scheduled_at=record.scheduled_at,
        )

    async def collect_payment(self, booking_id: str, amount: float | None, prefill: dict | None = None):
        if self.provider is None:
            raise RuntimeError("no payment provider configured for the checkout flow")
        if amount is None:
            raise ValueError("amount is required to collect payment")

        options = PaymentOptions(
            booking_id=booking_id,
            amount_minor=to_minor_units(amount),
            currency=self.currency,
            description=f"Payment for booking {booking_id}",
            merchant_name=self.merchant_name,
            prefill=prefill or {},
        )
        result = await self.provider.open(options)

        if not result.success:
            logger.warning("booking %s: payment failed: %s", booking_id, result.reason)
            await self._publish("booking.payment_failed", {"booking_id": booking_id, "reason": result.reason})
            return PaymentFailed(booking_id=booking_id, reason=result.reason or "Please try again.")

        recorded = True
        try:
            await self.client.update_payment(booking_id, amount, result.payment_id)
        except BackendError as e:
            # charged but not recorded; the requester has to contact support with the booking id
            logger.error("booking %s: payment %s collected but not recorded: %s", booking_id, result.payment_id, e)
            recorded = False

        await self._publish(
            "booking.payment_collected",
            {"booking_id": booking_id, "payment_id": result.payment_id, "amount": amount, "recorded": recorded},
        )
        return PaymentCollected(booking_id=booking_id, payment_id=result.payment_id, amount=amount, recorded=recorded)

    async def retry_payment(self, booking_id: str, amount: float | None, prefill: dict | None = None):
        # same logical booking, nothing is re-dispatched
        return await self.collect_payment(booking_id, amount, prefill=prefill)

    @staticmethod
    def cancel_payment(booking_id: str) -> PaymentCancelled:
        return PaymentCancelled(booking_id=booking_id)

    async def _publish(self, routing_key: str, data: dict):
        if self.publisher is None:
            return
        await self.publisher.publish(routing_key, to_json(build_event(routing_key, data)))
