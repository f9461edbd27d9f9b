"""Short-lived key/value state shared by API instances and the worker.

Three things live here, all with a TTL:

  mpesa:token               Daraja OAuth token (only when MPESA_CACHE_TOKEN=true);
                            stored for ``expires_in`` minus a safety margin so
                            an expired token is never handed out
  wa:seen:{message_id}      inbound WhatsApp message ids already routed; the
                            Graph API redelivers webhooks it thinks failed
  wa:onboarding:{address}   unknown senders already sent the onboarding pointer

TTL is the only invalidation these keys need: none of them is a copy of
ledger data, so there is nothing to go stale.

``add`` is the atomic primitive: set-if-absent.  With Redis it is a single
``SET key value NX EX ttl``, so two API replicas receiving the same
redelivered webhook cannot both win.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable

from app.db.redis import redis_pool


@runtime_checkable
class CacheService(Protocol):
    async def get(self, key: str) -> str | None:
        """Fetch a value.  Returns None when missing or expired."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Store only if the key is absent.  True when this call stored it."""
        ...

    async def delete(self, key: str) -> None: ...


class InMemoryCacheService:
    """Process-local cache for dev and tests.  Enforces TTLs.

    Keys that are never read again (wa:seen ids) would otherwise stay
    forever, so writes sweep expired entries at most once a minute.
    """

    _SWEEP_INTERVAL_SECONDS = 60.0

    def __init__(self, clock=time.monotonic) -> None:
        self._store: dict[str, tuple[str, float]] = {}
        self._clock = clock
        self._next_sweep = 0.0

    def _sweep(self) -> None:
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._SWEEP_INTERVAL_SECONDS
        expired = [k for k, (_, expires_at) in self._store.items() if now >= expires_at]
        for key in expired:
            del self._store[key]

    def _live(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._store[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sweep()
        self._store[key] = (value, self._clock() + ttl_seconds)

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        # No await between check and write, so this is atomic on one loop.
        self._sweep()
        if self._live(key) is not None:
            return False
        self._store[key] = (value, self._clock() + ttl_seconds)
        return True

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)


class RedisCacheService:
    """Redis-backed cache shared across API instances and the worker."""

    _PREFIX = "skillboost:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        return await self._redis.get(f"{self._PREFIX}{key}")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.setex(f"{self._PREFIX}{key}", ttl_seconds, value)

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        stored = await self._redis.set(
            f"{self._PREFIX}{key}", value, nx=True, ex=ttl_seconds
        )
        return bool(stored)

    async def delete(self, key: str) -> None:
        await self._redis.delete(f"{self._PREFIX}{key}")


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    cache_service: CacheService = RedisCacheService(redis_pool)
else:
    cache_service = InMemoryCacheService()
