"""
Store Factory — Create the right state store backend from configuration.

Configuration in settings.yaml:
    store:
      #   "memory": In-memory dicts (development, testing)
      #   "file"  : JSON files on disk (small deployments, demos)
      #   "redis" : Redis lists (production, multi-process)
      backend: "memory"
      redis_url: "redis://localhost:6379"
      file_dir: "./data/frames"
      ttl_seconds: 0
      max_frames: 0

Usage:
    from database.store_factory import create_store, get_store
    store = create_store(config)     # Create from StoreConfig or dict
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

import structlog
from dataclasses import asdict, is_dataclass
from typing import Any, Optional

from database.store_base import BaseStateStore
from utils.errors import ConfigError

logger = structlog.get_logger()

_instance: Optional[BaseStateStore] = None


def create_store(config: Any = None) -> BaseStateStore:
    """
    Factory: create the appropriate state store backend.

    Args:
        config: StoreConfig dataclass or dict with keys:
            backend: "memory" | "file" | "redis"  (default: "memory")
            file_dir: str (for file backend)
            redis_url: str (for redis backend)
            ttl_seconds / max_frames: int (0 disables)
    """
    global _instance
    if _instance is not None:
        return _instance

    if is_dataclass(config):
        config = asdict(config)
    config = config or {}
    backend = config.get("backend", "memory")
    ttl = int(config.get("ttl_seconds", 0) or 0)
    max_frames = int(config.get("max_frames", 0) or 0)

    if backend == "redis":
        from database.store_redis import RedisStateStore
        url = config.get("redis_url") or "redis://localhost:6379"
        _instance = RedisStateStore(redis_url=url, ttl_seconds=ttl, max_frames=max_frames)
        logger.info("store_created", backend="redis", url=url)

    elif backend == "file":
        from database.store_file import FileStateStore
        data_dir = config.get("file_dir", "./data/frames")
        _instance = FileStateStore(data_dir=data_dir, ttl_seconds=ttl, max_frames=max_frames)
        logger.info("store_created", backend="file", data_dir=data_dir)

    elif backend == "memory":
        from database.store_memory import InMemoryStateStore
        _instance = InMemoryStateStore(ttl_seconds=ttl, max_frames=max_frames)
        logger.info("store_created", backend="memory")

    else:
        raise ConfigError(f"unknown state store backend: {backend}")

    return _instance


def get_store() -> BaseStateStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
