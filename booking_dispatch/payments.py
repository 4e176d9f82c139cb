import logging
from decimal import ROUND_HALF_UP, Decimal

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class PaymentOptions(BaseModel):
    booking_id: str
    amount_minor: int  # paise / cents
    currency: str = "INR"
    description: str
    merchant_name: str | None = None
    prefill: dict = Field(default_factory=dict)


class PaymentResult(BaseModel):
    success: bool
    payment_id: str | None = None
    reason: str | None = None


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def payment_reference(data: dict) -> str:
    return str(data.get("razorpay_payment_id") or data.get("payment_id") or "")


class PaymentProvider:
    """
    Opaque checkout boundary: ``open`` either charges and returns a provider
    reference or reports why it did not. It never raises for a declined or
    cancelled payment.
    """

    async def open(self, options: PaymentOptions) -> PaymentResult:
        raise NotImplementedError


class HttpCheckoutProvider(PaymentProvider):
    """Hosted checkout reachable over HTTP (Razorpay-style response fields)."""

    def __init__(self, url: str, http: httpx.AsyncClient | None = None, timeout: float = 30.0):
        if not url:
            raise ValueError("payment provider url is required")
        self.url = url
        self.http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        await self.http.aclose()

    async def open(self, options: PaymentOptions) -> PaymentResult:
        payload = {
            "amount": options.amount_minor,
            "currency": options.currency,
            "description": options.description,
            "receipt": options.booking_id,
            "name": options.merchant_name,
            "prefill": options.prefill,
        }
        try:
            resp = await self.http.post(self.url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("payment provider unreachable for booking %s: %s", options.booking_id, e)
            return PaymentResult(success=False, reason="Payment provider unreachable. Please try again.")

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.status_code >= 400 or data.get("status") in ("failed", "cancelled"):
            error = data.get("error") if isinstance(data.get("error"), dict) else {}
            reason = error.get("description") or data.get("description") or "Please try again."
            return PaymentResult(success=False, reason=str(reason))

        reference = payment_reference(data)
        if not reference:
            return PaymentResult(success=False, reason="Payment provider returned no payment reference")
        return PaymentResult(success=True, payment_id=reference)
