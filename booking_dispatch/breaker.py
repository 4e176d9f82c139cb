import time


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed circuit breaker around the booking backend, shared by every
    dispatch instance talking to the same backend.

    States:
      - CLOSED: calls go through, failures are counted
      - OPEN: calls are refused for reset_timeout_seconds
      - HALF_OPEN: after the timeout, one probe call is let through
    """

    def __init__(
        self,
        name: str,
        redis,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 10,
        failure_window_seconds: int = 60,
    ):
        self.name = name
        self.redis = redis
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.failure_window_seconds = failure_window_seconds

    def _key(self, suffix: str) -> str:
        return f"dispatch:cb:{self.name}:{suffix}"

    async def _state(self) -> str:
        return await self.redis.get(self._key("state")) or "CLOSED"

    async def allow_request(self) -> None:
        state = await self._state()

        if state != "OPEN":
            return

        opened_at = await self.redis.get(self._key("opened_at"))
        if not opened_at:
            # opened without a timestamp; nothing to wait for
            await self.close()
            return

        if time.time() - float(opened_at) >= self.reset_timeout_seconds:
            await self.redis.set(self._key("state"), "HALF_OPEN")
            return

        raise CircuitBreakerOpen(f"Circuit breaker OPEN for {self.name}")

    async def record_success(self) -> None:
        if await self._state() != "CLOSED" or await self.redis.get(self._key("failures")):
            await self.close()

    async def record_failure(self) -> None:
        if await self._state() == "HALF_OPEN":
            await self.open()
            return

        failures = await self.redis.incr(self._key("failures"))
        if failures == 1:
            await self.redis.expire(self._key("failures"), self.failure_window_seconds)

        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        ttl = self.reset_timeout_seconds + 30
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), "OPEN", ex=ttl)
        pipe.set(self._key("opened_at"), str(time.time()), ex=ttl)
        await pipe.execute()

    async def close(self) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), "CLOSED", ex=3600)
        pipe.delete(self._key("failures"))
        pipe.delete(self._key("opened_at"))
        await pipe.execute()

    async def status(self) -> dict:
        failures = await self.redis.get(self._key("failures"))
        return {
            "name": self.name,
            "state": await self._state(),
            "failures": int(failures or 0),
            "failure_threshold": self.failure_threshold,
            "reset_timeout_seconds": self.reset_timeout_seconds,
        }
