"""
InMemoryStateStore — Dict-backed frame log for development and testing.

Features:
  - Zero dependencies (no Redis)
  - Same contract as RedisStateStore
  - Atomic per key via asyncio (single event loop)
  - Optional TTL (refreshed on every append) and max_frames trimming
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import time
from typing import Optional

import structlog

from database.store_base import BaseStateStore
from models.schemas import ConversationFrame

logger = structlog.get_logger()


class InMemoryStateStore(BaseStateStore):
    """Keeps raw JSON frames per key so reads exercise the same decode path as Redis."""

    def __init__(self, ttl_seconds: int = 0, max_frames: int = 0):
        super().__init__(ttl_seconds=ttl_seconds, max_frames=max_frames)
        self._frames: dict[str, list[str]] = {}     # key → [frame json]
        self._expires_at: dict[str, float] = {}     # key → wall-clock expiry
        logger.info("inmemory_state_store_initialized")

    # ── Internal ──────────────────────────────────────────

    def _expire_if_needed(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and time.time() >= deadline:
            self._frames.pop(key, None)
            self._expires_at.pop(key, None)
            logger.debug("state_key_expired", key=key)

    def _push_raw(self, key: str, raw: str) -> None:
        self._expire_if_needed(key)
        frames = self._frames.setdefault(key, [])
        frames.append(raw)
        if self.max_frames > 0 and len(frames) > self.max_frames:
            del frames[: len(frames) - self.max_frames]
        if self.ttl_seconds > 0:
            self._expires_at[key] = time.time() + self.ttl_seconds

    def _raw_frames(self, key: str) -> list[str]:
        self._expire_if_needed(key)
        return self._frames.get(key, [])

    # ── Contract ──────────────────────────────────────────

    async def append(self, key: str, frame: ConversationFrame) -> None:
        self._push_raw(key, self._encode(frame))

    async def latest(self, key: str) -> Optional[ConversationFrame]:
        frames = self._raw_frames(key)
        if not frames:
            return None
        return self._decode(key, frames[-1])

    async def history(self, key: str, limit: int = 0) -> list[ConversationFrame]:
        frames = self._raw_frames(key)
        if limit > 0:
            frames = frames[-limit:]
        decoded = (self._decode(key, raw) for raw in frames)
        return [f for f in decoded if f is not None]

    async def clear(self, key: str) -> None:
        self._frames.pop(key, None)
        self._expires_at.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._frames.keys())
