"""
RedisStateStore — Production frame log backed by Redis lists.

- append: RPUSH (+ LTRIM for max_frames, + EXPIRE for TTL) in one pipeline
- latest: LRANGE key -1 -1
- history: LRANGE key -N -1

Appends are retried with exponential backoff before surfacing a StateError.
Read failures degrade to "no frame" so the conversation starts over instead
of failing the inbound message.
"""
from __future__ import annotations

from typing import Optional

import structlog
from redis.exceptions import RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from database.store_base import BaseStateStore
from models.schemas import ConversationFrame
from utils.errors import StateError

logger = structlog.get_logger()


class RedisStateStore(BaseStateStore):

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        ttl_seconds: int = 0,
        max_frames: int = 0,
        client=None,
    ):
        super().__init__(ttl_seconds=ttl_seconds, max_frames=max_frames)
        self._redis_url = redis_url
        self._redis = client

    def _client(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
            logger.info("redis_state_store_connected", url=self._redis_url)
        return self._redis

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @retry(
        retry=retry_if_exception_type(RedisError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        reraise=True,
    )
    async def _push(self, key: str, raw: str) -> None:
        pipe = self._client().pipeline(transaction=True)
        pipe.rpush(key, raw)
        if self.max_frames > 0:
            pipe.ltrim(key, -self.max_frames, -1)
        if self.ttl_seconds > 0:
            pipe.expire(key, self.ttl_seconds)
        await pipe.execute()

    async def append(self, key: str, frame: ConversationFrame) -> None:
        try:
            await self._push(key, self._encode(frame))
        except RedisError as e:
            logger.error("state_append_failed", key=key, error=str(e))
            raise StateError(f"state store unavailable: {e}", key=key) from e

    async def latest(self, key: str) -> Optional[ConversationFrame]:
        try:
            raw = await self._client().lrange(key, -1, -1)
        except RedisError as e:
            logger.warning("state_read_failed", key=key, error=str(e))
            return None
        if not raw:
            return None
        return self._decode(key, raw[0])

    async def history(self, key: str, limit: int = 0) -> list[ConversationFrame]:
        start = -limit if limit > 0 else 0
        try:
            raws = await self._client().lrange(key, start, -1)
        except RedisError as e:
            logger.warning("state_read_failed", key=key, error=str(e))
            return []
        decoded = (self._decode(key, raw) for raw in raws)
        return [f for f in decoded if f is not None]

    async def clear(self, key: str) -> None:
        try:
            await self._client().delete(key)
        except RedisError as e:
            raise StateError(f"state store unavailable: {e}", key=key) from e
