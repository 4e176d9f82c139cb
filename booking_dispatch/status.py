from enum import IntEnum


class BookingStatus(IntEnum):
    """
    Status codes stored on a booking record by the backend.

    REJECTED_OR_MISSED covers two meanings the backend writes with the same
    code: the worker declined, or a sibling record was accepted first.
    Both are handled identically when reconciling.
    """

    PENDING = 0
    ACCEPTED = 1
    IN_PROGRESS = 2
    COMPLETED = 3
    REJECTED_OR_MISSED = 4
    CANCELLED = 5
    RESCHEDULED = 6

    @classmethod
    def parse(cls, value) -> "BookingStatus | None":
        if isinstance(value, bool) or value is None:
            return None
        try:
            return cls(int(str(value).strip()))
        except ValueError:
            return None


# Transitions a worker (or the backend) may apply to a single record.
TRANSITIONS = {
    BookingStatus.PENDING: {
        BookingStatus.ACCEPTED,
        BookingStatus.REJECTED_OR_MISSED,
        BookingStatus.CANCELLED,
        BookingStatus.RESCHEDULED,
    },
    BookingStatus.ACCEPTED: {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED},
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS.get(current, set())
