"""Per-requester fixed-window admission control.

The window resets completely once it has elapsed rather than decaying.
Bursts of up to 2x the ceiling are possible across a window boundary; this
is accepted in exchange for limits an admin can reason about.

The in-memory limiter is process-local. Run a single dispatcher replica or
select the Redis backend to share windows across replicas.
"""

from __future__ import annotations

import asyncio
import math
import time
from abc import abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from dispatcher.core.exceptions import AdmissionDenied

logger = structlog.get_logger(__name__)

ANONYMOUS_REQUESTER = "anonymous"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


@dataclass
class RateLimitEntry:
    count: int
    window_start: float


class RateLimiter(Protocol):
    """Admission control keyed by requester id.

    Backends implement admit(); enforce() and the lifecycle hooks are shared.
    """

    max_requests: int
    window_seconds: int

    @abstractmethod
    async def admit(self, requester_id: str | None) -> RateLimitDecision: ...

    async def enforce(self, requester_id: str | None) -> RateLimitDecision:
        """Admit or raise AdmissionDenied."""
        decision = await self.admit(requester_id)
        if not decision.allowed:
            raise AdmissionDenied(
                requester_id or ANONYMOUS_REQUESTER,
                self.max_requests,
                self.window_seconds,
                decision.retry_after_seconds,
            )
        return decision

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class InMemoryRateLimiter(RateLimiter):
    """Fixed-window limiter keyed by requester id."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        sweep_interval_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._sweep_task: asyncio.Task | None = None

    async def admit(self, requester_id: str | None) -> RateLimitDecision:
        key = requester_id or ANONYMOUS_REQUESTER
        now = self._clock()
        entry = self._entries.get(key)

        if entry is None or now - entry.window_start >= self.window_seconds:
            self._entries[key] = RateLimitEntry(count=1, window_start=now)
            return RateLimitDecision(allowed=True, remaining=self.max_requests - 1)

        if entry.count < self.max_requests:
            entry.count += 1
            return RateLimitDecision(allowed=True, remaining=self.max_requests - entry.count)

        retry_after = math.ceil(entry.window_start + self.window_seconds - now)
        logger.info(
            "rate_limit_exceeded",
            requester_id=key,
            count=entry.count,
            retry_after_seconds=retry_after,
        )
        return RateLimitDecision(allowed=False, remaining=0, retry_after_seconds=max(1, retry_after))

    def sweep(self) -> int:
        """Drop windows that have elapsed. Returns number removed."""
        now = self._clock()
        stale = [
            key
            for key, entry in self._entries.items()
            if now - entry.window_start >= self.window_seconds
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    @property
    def tracked_requesters(self) -> int:
        return len(self._entries)

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("rate_limit_sweep", removed=removed, tracked=len(self._entries))


class RedisRateLimiter(RateLimiter):
    """Fixed-window limiter stored in Redis, shared by every replica.

    The key TTL is the window, so Redis expiry does the sweeping.
    """

    KEY_PREFIX = "dispatcher:ratelimit:"

    def __init__(self, redis: Redis, max_requests: int, window_seconds: int):
        self.redis = redis
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    async def admit(self, requester_id: str | None) -> RateLimitDecision:
        key = f"{self.KEY_PREFIX}{requester_id or ANONYMOUS_REQUESTER}"

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    count = int(current) if current else 0

                    if count >= self.max_requests:
                        ttl = await pipe.ttl(key)
                        await pipe.unwatch()
                        logger.info("rate_limit_exceeded", requester_id=requester_id, count=count)
                        return RateLimitDecision(
                            allowed=False,
                            remaining=0,
                            retry_after_seconds=max(1, ttl),
                        )

                    pipe.multi()
                    if count == 0:
                        pipe.set(key, 1, ex=self.window_seconds)
                    else:
                        pipe.incr(key)
                    await pipe.execute()
                    return RateLimitDecision(allowed=True, remaining=self.max_requests - count - 1)
                except WatchError:
                    continue
