import time

from .redis_client import redis_client


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed circuit breaker around an upstream dependency, shared by all
    workers of the service.

    States:
      - CLOSED: calls go through, failures are counted in a 60s window
      - OPEN: calls are refused until reset_timeout_seconds have passed
      - HALF_OPEN: one trial call decides between CLOSED and OPEN
    """

    def __init__(self, name: str, failure_threshold: int = 5, reset_timeout_seconds: int = 30):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds

    def _key(self, part: str) -> str:
        return f"cb:{self.name}:{part}"

    async def state(self) -> str:
        return await redis_client.get(self._key("state")) or "CLOSED"

    async def allow_request(self) -> None:
        state = await self.state()
        if state != "OPEN":
            return

        opened_at = await redis_client.get(self._key("opened_at"))
        if not opened_at:
            await self.close()
            return

        if time.time() - float(opened_at) >= self.reset_timeout_seconds:
            await redis_client.set(self._key("state"), "HALF_OPEN")
            return

        raise CircuitBreakerOpen(f"Circuit breaker OPEN for {self.name}")

    async def record_success(self) -> None:
        if await self.state() != "CLOSED" or await redis_client.exists(self._key("failures")):
            await self.close()

    async def record_failure(self) -> None:
        if await self.state() == "HALF_OPEN":
            await self.open()
            return

        failures = await redis_client.incr(self._key("failures"))
        if failures == 1:
            await redis_client.expire(self._key("failures"), 60)

        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        ttl = self.reset_timeout_seconds + 30
        pipe = redis_client.pipeline()
        pipe.set(self._key("state"), "OPEN", ex=ttl)
        pipe.set(self._key("opened_at"), str(time.time()), ex=ttl)
        await pipe.execute()
        print(f"[villa-booking] circuit breaker opened for {self.name}")

    async def close(self) -> None:
        pipe = redis_client.pipeline()
        pipe.set(self._key("state"), "CLOSED", ex=3600)
        pipe.delete(self._key("failures"))
        pipe.delete(self._key("opened_at"))
        await pipe.execute()

    async def status(self) -> dict:
        failures = await redis_client.get(self._key("failures"))
        return {
            "name": self.name,
            "state": await self.state(),
            "failures": int(failures or 0),
        }
