import secrets
import time

BOOKING_ID_PREFIX = "bk"


def new_booking_id(prefix: str = BOOKING_ID_PREFIX, clock=time.time) -> str:
    """
    One id per logical booking, shared by every record of the fan-out.

    The epoch second keeps ids sortable and readable; the random suffix
    keeps two requests from the same client in the same second apart.
    """
    return f"{prefix}{int(clock())}{secrets.token_hex(3)}"
