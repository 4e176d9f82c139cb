import os


def _flag(name: str, default: str) -> bool:
    return (os.getenv(name) or default).strip().lower() in ("1", "true", "yes", "on")


BOOKING_BACKEND_URL = (os.getenv("BOOKING_BACKEND_URL") or "http://booking-backend:3001/api").rstrip("/")
BOOKING_HTTP_TIMEOUT = float(os.getenv("BOOKING_HTTP_TIMEOUT") or "3.0")

# ---- Reconciler ----
# POLL_TIMEOUT_SECONDS=0 polls until a worker answers or the caller cancels.
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS") or "2.0")
POLL_TIMEOUT_SECONDS = float(os.getenv("POLL_TIMEOUT_SECONDS") or "300") or None
POLL_SKIP_PAYMENT_CHECK = _flag("POLL_SKIP_PAYMENT_CHECK", "true")
POLL_PARTIAL_DISPATCH = _flag("POLL_PARTIAL_DISPATCH", "true")

# ---- Sessions ----
# finished sessions stay readable this long, then are dropped; 0 keeps them forever
SESSION_RETENTION_SECONDS = float(os.getenv("SESSION_RETENTION_SECONDS") or "900") or None

# ---- Circuit breaker ----
BREAKER_FAILURE_THRESHOLD = int(os.getenv("BREAKER_FAILURE_THRESHOLD") or "5")
BREAKER_RESET_SECONDS = int(os.getenv("BREAKER_RESET_SECONDS") or "10")

# ---- Payments ----
PAYMENT_PROVIDER_URL = os.getenv("PAYMENT_PROVIDER_URL") or ""
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY") or "INR"
PAYMENT_MERCHANT_NAME = os.getenv("PAYMENT_MERCHANT_NAME") or "Handyman Services"
PAYMENT_HTTP_TIMEOUT = float(os.getenv("PAYMENT_HTTP_TIMEOUT") or "30.0")

# ---- Infrastructure ----
REDIS_URL = os.getenv("REDIS_URL")
RABBIT_URL = os.getenv("RABBIT_URL")  # optional, events disabled when unset
EXCHANGE_NAME = "domain_events"
EVENT_PUBLISH_TIMEOUT = float(os.getenv("EVENT_PUBLISH_TIMEOUT") or "2.0")

LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()
