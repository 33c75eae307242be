"""Rate-limit and backoff guard for authentication attempts.

Three independent brakes per identifier:

- a sliding-window ceiling on attempts,
- an exponential cool-down after consecutive failures,
- a fixed hard lockout once the failure streak reaches a threshold.

Authentication is gated twice, by network origin and by normalized phone
number; an attempt goes through only if both identifiers pass.

Counters live in Redis in production. During tests an in-memory store with
the same TTL semantics is used so the guard logic is actually exercised.
"""

import math
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import redis.asyncio as aioredis

from tidewatch.config import Settings
from tidewatch.core.errors import RateLimitedError
from tidewatch.logging_config import get_logger
from tidewatch.services.channels.base import normalize_phone

logger = get_logger(__name__)

_KEY_PREFIX = "ratelimit:"


class CounterStore(Protocol):
    async def hit(
        self, key: str, now: float, window: float, limit: int, record: bool
    ) -> tuple[int, float | None, bool]:
        """Count hits inside the window, adding one if under the limit.

        Returns:
            (hits in window, oldest hit timestamp, whether a hit was added)
        """
        ...

    async def record_failure(self, key: str, now: float, ttl: float) -> int: ...

    async def failures(self, key: str, now: float) -> tuple[int, float | None]: ...

    async def clear_failures(self, key: str) -> None: ...

    async def release(self, key: str, at: float) -> None:
        """Take back one hit recorded at ``at``."""
        ...

    async def reset(self, key: str) -> None: ...


class InMemoryCounterStore:
    """Process-local store; expired entries are dropped on access."""

    def __init__(self) -> None:
        self._hits: dict[str, list[float]] = {}
        # key -> (count, last failure, expires at)
        self._failures: dict[str, tuple[int, float, float]] = {}

    async def hit(
        self, key: str, now: float, window: float, limit: int, record: bool
    ) -> tuple[int, float | None, bool]:
        hits = [ts for ts in self._hits.get(key, []) if ts > now - window]
        added = record and len(hits) < limit
        if added:
            hits.append(now)
        if hits:
            self._hits[key] = hits
        else:
            self._hits.pop(key, None)
        return len(hits), (hits[0] if hits else None), added

    async def release(self, key: str, at: float) -> None:
        hits = self._hits.get(key, [])
        if at in hits:
            hits.remove(at)
            if not hits:
                self._hits.pop(key, None)

    async def record_failure(self, key: str, now: float, ttl: float) -> int:
        count, _, _ = self._live_failures(key, now)
        count += 1
        self._failures[key] = (count, now, now + ttl)
        return count

    def _live_failures(self, key: str, now: float) -> tuple[int, float | None, float]:
        entry = self._failures.get(key)
        if entry is None or entry[2] <= now:
            self._failures.pop(key, None)
            return 0, None, 0.0
        return entry

    async def failures(self, key: str, now: float) -> tuple[int, float | None]:
        count, last, _ = self._live_failures(key, now)
        return count, last

    async def clear_failures(self, key: str) -> None:
        self._failures.pop(key, None)

    async def reset(self, key: str) -> None:
        self._hits.pop(key, None)
        self._failures.pop(key, None)


class RedisCounterStore:
    """Sorted-set sliding windows and hash failure streaks in Redis.

    Redis being unavailable fails open with an error log, so an outage does
    not lock everybody out.
    """

    def __init__(self, client: aioredis.Redis, prefix: str = _KEY_PREFIX):
        self.client = client
        self.prefix = prefix

    def _hits_key(self, key: str) -> str:
        return f"{self.prefix}hits:{key}"

    def _failures_key(self, key: str) -> str:
        return f"{self.prefix}failures:{key}"

    async def hit(
        self, key: str, now: float, window: float, limit: int, record: bool
    ) -> tuple[int, float | None, bool]:
        zkey = self._hits_key(key)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(zkey, 0, now - window)
                pipe.zcard(zkey)
                pipe.zrange(zkey, 0, 0, withscores=True)
                _, count, oldest = await pipe.execute()
            oldest_ts = float(oldest[0][1]) if oldest else None

            if not record or count >= limit:
                return count, oldest_ts, False

            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zadd(zkey, {f"{now}:{uuid.uuid4().hex}": now})
                pipe.expire(zkey, max(1, math.ceil(window)))
                await pipe.execute()
            return count + 1, oldest_ts if oldest_ts is not None else now, True
        except aioredis.RedisError:
            logger.error("Redis unavailable for rate limit check; allowing", key=key)
            return 0, None, record

    async def release(self, key: str, at: float) -> None:
        zkey = self._hits_key(key)
        try:
            members = await self.client.zrangebyscore(zkey, at, at, start=0, num=1)
            if members:
                await self.client.zrem(zkey, members[0])
        except aioredis.RedisError:
            logger.error("Redis unavailable; hit not released", key=key)

    async def record_failure(self, key: str, now: float, ttl: float) -> int:
        fkey = self._failures_key(key)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hincrby(fkey, "count", 1)
                pipe.hset(fkey, "last", str(now))
                pipe.expire(fkey, max(1, math.ceil(ttl)))
                count, _, _ = await pipe.execute()
            return int(count)
        except aioredis.RedisError:
            logger.error("Redis unavailable; failure not recorded", key=key)
            return 0

    async def failures(self, key: str, now: float) -> tuple[int, float | None]:
        try:
            count, last = await self.client.hmget(
                self._failures_key(key), "count", "last"
            )
        except aioredis.RedisError:
            logger.error("Redis unavailable for failure lookup; allowing", key=key)
            return 0, None
        return int(count or 0), (float(last) if last is not None else None)

    async def clear_failures(self, key: str) -> None:
        try:
            await self.client.delete(self._failures_key(key))
        except aioredis.RedisError:
            logger.error("Redis unavailable; failures not cleared", key=key)

    async def reset(self, key: str) -> None:
        try:
            await self.client.delete(self._hits_key(key), self._failures_key(key))
        except aioredis.RedisError:
            logger.error("Redis unavailable; counters not reset", key=key)


def build_counter_store(config: Settings) -> CounterStore:
    if config.testing or not config.redis_url:
        return InMemoryCounterStore()
    client = aioredis.from_url(
        config.redis_url,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
    )
    return RedisCounterStore(client)


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: float
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 30.0
    lockout_threshold: int = 10
    lockout_seconds: float = 3600
    failure_ttl_seconds: float = 3600


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: float | None = None
    # "window", "backoff" or "lockout" when blocked
    reason: str | None = None
    scope: str | None = None
    # Clock value of the hit this decision added to the window
    counted_at: float | None = None

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(math.ceil(self.retry_after))
        return headers


def backoff_delay(failures: int, base: float, cap: float) -> float:
    """Cool-down after ``failures`` consecutive failures: min(base * 2^(n-1), cap)."""
    if failures <= 0:
        return 0.0
    return min(base * 2 ** (failures - 1), cap)


class RateLimitGuard:
    """Sliding window plus failure backoff for one identifier space."""

    def __init__(
        self,
        scope: str,
        policy: RateLimitPolicy,
        store: CounterStore,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.scope = scope
        self.policy = policy
        self.store = store
        self.clock = clock

    def _key(self, identifier: str) -> str:
        return f"{self.scope}:{identifier}"

    def _blocked(self, reason: str, retry_after: float, remaining: int = 0):
        return RateLimitDecision(
            allowed=False,
            limit=self.policy.limit,
            remaining=remaining,
            retry_after=max(retry_after, 0.0),
            reason=reason,
            scope=self.scope,
        )

    async def check(self, identifier: str, *, consume: bool = True) -> RateLimitDecision:
        """Decide whether one more attempt is allowed.

        Args:
            identifier: Value within this guard's identifier space.
            consume: Count the attempt against the window when allowed.
        """
        key = self._key(identifier)
        policy = self.policy
        now = self.clock()

        failures, last_failure = await self.store.failures(key, now)
        if failures and last_failure is not None:
            if failures >= policy.lockout_threshold:
                until = last_failure + policy.lockout_seconds
                if now < until:
                    return self._blocked("lockout", until - now)
            else:
                delay = backoff_delay(
                    failures, policy.backoff_base_seconds, policy.backoff_cap_seconds
                )
                if now < last_failure + delay:
                    return self._blocked("backoff", last_failure + delay - now)

        count, oldest, added = await self.store.hit(
            key, now, policy.window_seconds, policy.limit, consume
        )
        if count >= policy.limit and not added:
            retry_after = (
                oldest + policy.window_seconds - now
                if oldest is not None
                else policy.window_seconds
            )
            return self._blocked("window", retry_after)

        remaining = policy.limit - count - (0 if added else 1)
        return RateLimitDecision(
            allowed=True,
            limit=policy.limit,
            remaining=max(0, remaining),
            scope=self.scope,
            counted_at=now if added else None,
        )

    async def record_failure(self, identifier: str) -> int:
        """Extend the failure streak; returns its new length."""
        count = await self.store.record_failure(
            self._key(identifier), self.clock(), self.policy.failure_ttl_seconds
        )
        if count >= self.policy.lockout_threshold:
            logger.warning(
                "Identifier locked out after repeated failures",
                scope=self.scope,
                failures=count,
            )
        return count

    async def clear_failures(self, identifier: str) -> None:
        await self.store.clear_failures(self._key(identifier))

    async def release(self, identifier: str, decision: RateLimitDecision) -> None:
        """Undo the window hit an allowed decision counted."""
        if decision.counted_at is not None:
            await self.store.release(self._key(identifier), decision.counted_at)

    async def reset(self, identifier: str) -> None:
        await self.store.reset(self._key(identifier))


def normalize_phone_identifier(raw: str) -> str:
    """One counter per number however it was formatted."""
    return normalize_phone(raw)


def most_restrictive(decisions: list[RateLimitDecision]) -> RateLimitDecision:
    blocked = [d for d in decisions if not d.allowed]
    if blocked:
        return max(blocked, key=lambda d: d.retry_after or 0.0)
    return min(decisions, key=lambda d: d.remaining)


class AuthAttemptGuard:
    """Dual gate for authentication challenges: origin and phone number."""

    def __init__(self, origin: RateLimitGuard, phone: RateLimitGuard):
        self.origin = origin
        self.phone = phone

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        store: CounterStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "AuthAttemptGuard":
        backoff = {
            "backoff_base_seconds": config.auth_backoff_base_seconds,
            "backoff_cap_seconds": config.auth_backoff_cap_seconds,
            "lockout_threshold": config.auth_lockout_threshold,
            "lockout_seconds": config.auth_lockout_seconds,
            "failure_ttl_seconds": config.auth_failure_ttl_seconds,
        }
        return cls(
            origin=RateLimitGuard(
                "auth:origin",
                RateLimitPolicy(
                    limit=config.auth_origin_limit,
                    window_seconds=config.auth_origin_window_seconds,
                    **backoff,
                ),
                store,
                clock=clock,
            ),
            phone=RateLimitGuard(
                "auth:phone",
                RateLimitPolicy(
                    limit=config.auth_phone_limit,
                    window_seconds=config.auth_phone_window_seconds,
                    **backoff,
                ),
                store,
                clock=clock,
            ),
        )

    async def check(self, origin: str, phone: str) -> RateLimitDecision:
        """Allowed only if both identifiers pass; only then are both counted.

        A concurrent attempt can fill a window between the peek and the
        counting pass; the origin hit is then released again.
        """
        phone_id = normalize_phone_identifier(phone)
        decisions = [
            await self.origin.check(origin, consume=False),
            await self.phone.check(phone_id, consume=False),
        ]
        if not all(d.allowed for d in decisions):
            return self._limited(most_restrictive(decisions))

        counted_origin = await self.origin.check(origin)
        if not counted_origin.allowed:
            return self._limited(counted_origin)
        counted_phone = await self.phone.check(phone_id)
        if not counted_phone.allowed:
            await self.origin.release(origin, counted_origin)
            return self._limited(counted_phone)
        return most_restrictive([counted_origin, counted_phone])

    @staticmethod
    def _limited(decision: RateLimitDecision) -> RateLimitDecision:
        logger.info(
            "Authentication attempt rate limited",
            scope=decision.scope,
            reason=decision.reason,
            retry_after=decision.retry_after,
        )
        return decision

    async def enforce(self, origin: str, phone: str) -> RateLimitDecision:
        """Like check, but raises when blocked.

        Raises:
            RateLimitedError: With the largest retry-after of the two gates.
        """
        decision = await self.check(origin, phone)
        if not decision.allowed:
            raise RateLimitedError(
                f"Too many attempts ({decision.reason})",
                retry_after=decision.retry_after or 0.0,
            )
        return decision

    async def record_failure(self, origin: str, phone: str) -> None:
        await self.origin.record_failure(origin)
        await self.phone.record_failure(normalize_phone_identifier(phone))

    async def record_success(self, origin: str, phone: str) -> None:
        await self.origin.clear_failures(origin)
        await self.phone.clear_failures(normalize_phone_identifier(phone))
