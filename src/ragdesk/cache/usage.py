"""Per-owner daily generation allowance."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Callable

from redis import asyncio as aioredis

from ragdesk.errors import UsageLimitExceededError
from ragdesk.metrics.observability import get_logger
from ragdesk.models import UsageSnapshot

REDIS_KEY_PREFIX = "daily_msg_count"

LOGGER = get_logger("usage")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_reset(now: datetime) -> datetime:
    """Midnight UTC following ``now``."""

    today = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return today + timedelta(days=1)


class UsageLedger:
    """Counts successful generations per owner per UTC day.

    Keys look like ``daily_msg_count:{owner_id}:{YYYY-MM-DD}`` and expire at
    the next UTC midnight. Reads fail open: when the store is unreachable the
    owner is treated as having used nothing.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        limit: int = 25,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._redis = redis
        self._limit = limit
        self._clock = clock

    @property
    def limit(self) -> int:
        return self._limit

    def key_for(self, owner_id: str, now: datetime | None = None) -> str:
        day = (now or self._clock()).astimezone(timezone.utc).strftime("%Y-%m-%d")
        return f"{REDIS_KEY_PREFIX}:{owner_id}:{day}"

    async def get_usage(self, owner_id: str) -> UsageSnapshot:
        now = self._clock()
        try:
            raw = await self._redis.get(self.key_for(owner_id, now))
            used = int(raw) if raw else 0
        except Exception as exc:
            LOGGER.error("usage.read_failed", owner_id=owner_id, error=str(exc))
            used = 0
        return self._snapshot(used, now)

    async def can_proceed(self, owner_id: str) -> tuple[bool, UsageSnapshot]:
        usage = await self.get_usage(owner_id)
        return usage.remaining > 0, usage

    async def check(self, owner_id: str, *, own_credential: bool = False) -> UsageSnapshot | None:
        """Raise :class:`UsageLimitExceededError` when today's allowance is spent.

        Requests made with the owner's own provider credential are not
        limited and return ``None``.
        """

        if own_credential:
            return None
        allowed, usage = await self.can_proceed(owner_id)
        if not allowed:
            LOGGER.info("usage.limit_reached", owner_id=owner_id, used=usage.used, limit=usage.limit)
            raise UsageLimitExceededError(usage)
        return usage

    async def increment(self, owner_id: str) -> UsageSnapshot:
        now = self._clock()
        key = self.key_for(owner_id, now)
        try:
            count = int(await self._redis.incr(key))
            if count == 1:
                ttl = max(1, math.ceil((next_reset(now) - now).total_seconds()))
                await self._redis.expire(key, ttl)
        except Exception as exc:
            LOGGER.error("usage.increment_failed", owner_id=owner_id, error=str(exc))
            return await self.get_usage(owner_id)
        return self._snapshot(count, now)

    def _snapshot(self, used: int, now: datetime) -> UsageSnapshot:
        return UsageSnapshot(
            used=used,
            limit=self._limit,
            remaining=max(0, self._limit - used),
            resets_at=next_reset(now),
        )
