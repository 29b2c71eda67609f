"""Connection to the key-value store shared by the cache and usage ledger."""

from __future__ import annotations

from redis import asyncio as aioredis


def create_redis(url: str, *, timeout_seconds: float = 2.0) -> aioredis.Redis:
    """Return an async Redis client that decodes responses to ``str``."""

    return aioredis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout_seconds,
        socket_connect_timeout=timeout_seconds,
    )
