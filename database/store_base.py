"""
Abstract State Store — Append-only per-conversation frame log.

Implementations:
  - InMemoryStateStore (dict-based, single-process, no persistence)
  - FileStateStore     (JSON files on disk, single-process, durable)
  - RedisStateStore    (Redis lists, RPUSH / LRANGE -1 -1, shared across hosts)

Contract:
  - append(key, frame) is atomic per key
  - latest(key) returns the most recently appended frame for that key
  - frames are stored as JSON; a malformed frame on read is logged and
    treated as "no frame"
  - write failures raise StateError (retryable) so callers can retry
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import structlog
from pydantic import ValidationError

from models.schemas import ConversationFrame

logger = structlog.get_logger()


class BaseStateStore(ABC):
    """Interface that all state store backends must implement."""

    def __init__(self, ttl_seconds: int = 0, max_frames: int = 0):
        self.ttl_seconds = ttl_seconds
        self.max_frames = max_frames

    @abstractmethod
    async def append(self, key: str, frame: ConversationFrame) -> None:
        ...

    @abstractmethod
    async def latest(self, key: str) -> Optional[ConversationFrame]:
        ...

    @abstractmethod
    async def history(self, key: str, limit: int = 0) -> list[ConversationFrame]:
        """Frames in append order; `limit` > 0 keeps only the newest N."""
        ...

    @abstractmethod
    async def clear(self, key: str) -> None:
        ...

    async def close(self) -> None:
        pass

    # ── Serialization ─────────────────────────────────────────

    @staticmethod
    def _encode(frame: ConversationFrame) -> str:
        return frame.to_json()

    @staticmethod
    def _decode(key: str, raw: str) -> Optional[ConversationFrame]:
        try:
            return ConversationFrame.from_json(raw)
        except (ValidationError, ValueError) as e:
            logger.warning("state_frame_malformed", key=key, error=str(e))
            return None
