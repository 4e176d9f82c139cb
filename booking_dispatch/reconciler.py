import asyncio
import logging
from collections import Counter
from typing import Awaitable, Callable, List, Sequence

from .clients import BackendError, BookingBackendClient
from .schemas import BookingRecord, Confirmed, Failed, FailureReason
from .status import BookingStatus, can_transition

logger = logging.getLogger(__name__)

Outcome = Confirmed | Failed
Fetch = Callable[[], Awaitable[List[BookingRecord]]]
OnUpdate = Callable[[List[BookingRecord]], None]
OnTerminal = Callable[[Outcome], None]


def evaluate_snapshot(booking_id: str, records: Sequence[BookingRecord]) -> Outcome | None:
    """
    Resolution policy for one poll tick. Accepted is checked first, so an
    accepted record wins over rejected siblings in the same snapshot.
    An empty snapshot means the records are not visible yet: keep waiting.
    """
    if not records:
        return None

    for record in records:
        if record.state is BookingStatus.ACCEPTED:
            return Confirmed(booking_id=booking_id, record=record)

    if all(record.state is BookingStatus.REJECTED_OR_MISSED for record in records):
        return Failed(booking_id=booking_id, reason=FailureReason.NO_WORKERS_AVAILABLE)

    return None


def status_counts(records: Sequence[BookingRecord]) -> dict:
    counts = Counter(r.state.name.lower() if r.state is not None else "unknown" for r in records)
    return dict(counts)


class PollHandle:
    """
    Owns the polling task for one logical booking.

    ``cancel()`` is idempotent; once it returns, no further fetch is issued
    and neither callback runs again. The handle can also be used as an async
    context manager, which cancels on exit whatever the exit path was.
    """

    def __init__(
        self,
        booking_id: str,
        fetch: Fetch,
        on_update: OnUpdate | None = None,
        on_terminal: OnTerminal | None = None,
        interval: float = 2.0,
        timeout: float | None = 300.0,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.booking_id = booking_id
        self.interval = interval
        self.timeout = timeout
        self._fetch = fetch
        self._on_update = on_update
        self._on_terminal = on_terminal
        self._task: asyncio.Task | None = None
        self._closed = False
        self._cancelled = False
        self._outcome: Outcome | None = None
        self._finished = asyncio.Event()
        self._seen: dict = {}
        self.ticks = 0

    @property
    def done(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def outcome(self) -> Outcome | None:
        return self._outcome

    def start(self) -> "PollHandle":
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(self._run(), name=f"reconcile:{self.booking_id}")
        return self

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancelled = True
        if self._task and not self._task.done():
            self._task.cancel()
        self._finished.set()
        logger.info("booking %s: polling cancelled after %d tick(s)", self.booking_id, self.ticks)

    async def wait(self) -> Outcome | None:
        """Terminal outcome, or None if the handle was cancelled first."""
        await self._finished.wait()
        return self._outcome

    async def __aenter__(self) -> "PollHandle":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb):
        self.cancel()
        if self._task and self._task is not asyncio.current_task():
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self):
        try:
            if self.timeout is None:
                await self._poll()
            else:
                await asyncio.wait_for(self._poll(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.info("booking %s: no outcome after %ss, giving up", self.booking_id, self.timeout)
            self._finish(Failed(booking_id=self.booking_id, reason=FailureReason.TIMEOUT))

    async def _poll(self):
        # one fetch in flight at a time; the next tick is scheduled after it settles
        while not self._closed:
            records = await self._tick()
            if self._closed:
                return
            if records is not None:
                self._track(records)
                outcome = evaluate_snapshot(self.booking_id, records)
                if outcome is not None:
                    self._finish(outcome)
                    return
                self._notify(self._on_update, records)
            await asyncio.sleep(self.interval)

    async def _tick(self) -> List[BookingRecord] | None:
        self.ticks += 1
        try:
            return await self._fetch()
        except BackendError as e:
            logger.warning("booking %s: poll failed, still waiting: %s", self.booking_id, e)
        except Exception:
            logger.exception("booking %s: unexpected poll error, still waiting", self.booking_id)
        return None

    def _track(self, records: List[BookingRecord]):
        for record in records:
            state = record.state
            previous = self._seen.get(record.worker_id)
            if previous is not None and state is not None and state != previous and not can_transition(previous, state):
                logger.warning(
                    "booking %s: worker %s record moved %s -> %s",
                    self.booking_id,
                    record.worker_id,
                    previous.name,
                    state.name,
                )
            if state is not None:
                self._seen[record.worker_id] = state

    def _finish(self, outcome: Outcome):
        if self._closed:
            return
        self._closed = True
        self._outcome = outcome
        if isinstance(outcome, Confirmed):
            logger.info(
                "booking %s: confirmed by worker %s after %d tick(s)",
                self.booking_id,
                outcome.record.worker_id,
                self.ticks,
            )
        else:
            logger.info("booking %s: failed (%s)", self.booking_id, outcome.reason.value)
        self._notify(self._on_terminal, outcome)
        self._finished.set()

    def _notify(self, callback, value):
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logger.exception("booking %s: callback raised", self.booking_id)


def resolve(
    client: BookingBackendClient,
    booking_id: str,
    user_id,
    on_update: OnUpdate | None = None,
    on_terminal: OnTerminal | None = None,
    *,
    interval: float = 2.0,
    timeout: float | None = 300.0,
    skip_payment_check: bool = True,
) -> PollHandle:
    """Start polling ``booking_id`` for ``user_id``. Must run inside an event loop."""

    async def fetch() -> List[BookingRecord]:
        return await client.fetch_snapshot(booking_id, user_id, skip_payment_check=skip_payment_check)

    handle = PollHandle(
        booking_id,
        fetch,
        on_update=on_update,
        on_terminal=on_terminal,
        interval=interval,
        timeout=timeout,
    )
    return handle.start()
