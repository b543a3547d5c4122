from __future__ import annotations

import json
import logging
import os
from contextlib import suppress
from typing import Any, AsyncIterator

import redis.asyncio as redis

# purpose: redis connection and per-matrix channels for the presence fan-out
# status: pilot

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
_redis = None
_logger = logging.getLogger(__name__)


async def get_redis():
    global _redis
    if _redis is None:
        if os.getenv("TESTING") == "1":
            from fakeredis import aioredis
            _redis = aioredis.FakeRedis()
        else:
            _redis = redis.from_url(REDIS_URL)
    return _redis


def matrix_channel(matrix_id: int) -> str:
    return f"matrix:{matrix_id}"


def _decode(data: Any) -> dict[str, Any] | None:
    if isinstance(data, bytes):
        data = data.decode()
    try:
        envelope = json.loads(data)
    except (TypeError, ValueError):
        _logger.warning("dropped undecodable presence envelope %r", data)
        return None
    return envelope if isinstance(envelope, dict) else None


async def publish_matrix_event(matrix_id: int, envelope: dict[str, Any]) -> None:
    """Publish a presence or sync envelope to every process serving the matrix."""

    r = await get_redis()
    await r.publish(matrix_channel(matrix_id), json.dumps(envelope))


async def iter_matrix_events(matrix_id: int) -> AsyncIterator[dict[str, Any]]:
    r = await get_redis()
    channel = matrix_channel(matrix_id)
    pubsub = r.pubsub()
    await pubsub.subscribe(channel)
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            envelope = _decode(message.get("data"))
            if envelope is not None:
                yield envelope
    finally:
        with suppress(Exception):
            await pubsub.unsubscribe(channel)
        with suppress(AttributeError):
            await pubsub.close()
