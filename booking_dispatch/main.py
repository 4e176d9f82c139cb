import logging

from fastapi import Depends, FastAPI

from . import config
from .breaker import CircuitBreaker
from .clients import BookingBackendClient
from .middleware import RequestLoggingMiddleware
from .outcome import OutcomeGate
from .payments import HttpCheckoutProvider
from .publisher import RabbitPublisher
from .redis_client import redis_client
from .routes import router
from .security import require_role
from .sessions import DispatchCoordinator

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "System", "description": "Operational endpoints (health, breaker status)."},
    {"name": "Dispatch", "description": "Fan a service request out to eligible workers and follow it to an outcome."},
]

app = FastAPI(title="Booking Dispatch Service", openapi_tags=OPENAPI_TAGS)
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router, tags=["Dispatch"])

backend_breaker = CircuitBreaker(
    "booking-backend",
    redis_client,
    failure_threshold=config.BREAKER_FAILURE_THRESHOLD,
    reset_timeout_seconds=config.BREAKER_RESET_SECONDS,
)
publisher = RabbitPublisher(config.RABBIT_URL, config.EXCHANGE_NAME)


def build_coordinator() -> DispatchCoordinator:
    client = BookingBackendClient(
        config.BOOKING_BACKEND_URL,
        breaker=backend_breaker,
        timeout=config.BOOKING_HTTP_TIMEOUT,
    )
    provider = None
    if config.PAYMENT_PROVIDER_URL:
        provider = HttpCheckoutProvider(config.PAYMENT_PROVIDER_URL, timeout=config.PAYMENT_HTTP_TIMEOUT)
    else:
        logger.warning("PAYMENT_PROVIDER_URL not set; checkout payments will fail")
    gate = OutcomeGate(
        client,
        provider=provider,
        publisher=publisher,
        currency=config.PAYMENT_CURRENCY,
        merchant_name=config.PAYMENT_MERCHANT_NAME,
    )
    return DispatchCoordinator(
        client,
        gate,
        publisher=publisher,
        poll_interval=config.POLL_INTERVAL_SECONDS,
        poll_timeout=config.POLL_TIMEOUT_SECONDS,
        skip_payment_check=config.POLL_SKIP_PAYMENT_CHECK,
        poll_partial_dispatch=config.POLL_PARTIAL_DISPATCH,
        session_retention=config.SESSION_RETENTION_SECONDS,
        publish_timeout=config.EVENT_PUBLISH_TIMEOUT,
    )


@app.get("/health", tags=["System"])
async def health():
    return {"status": "ok", "service": "booking-dispatch", "events_enabled": publisher.enabled}


@app.get("/system/breakers", tags=["System"])
async def breakers_status(user=Depends(require_role("admin"))):
    return {"breakers": [await backend_breaker.status()]}


@app.on_event("startup")
async def startup():
    app.state.coordinator = build_coordinator()
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing without events: %s", e)


@app.on_event("shutdown")
async def shutdown():
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        await coordinator.shutdown()
        await coordinator.client.aclose()
        provider = coordinator.gate.provider
        if isinstance(provider, HttpCheckoutProvider):
            await provider.aclose()
    try:
        await publisher.close()
    except Exception:
        logger.exception("RabbitMQ close failed")
    await redis_client.aclose()
