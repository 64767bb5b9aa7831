"""
State layer — Append-only conversation frame log.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)
  - Redis (lists, for production)

Quick start:
  from database import create_store
  store = create_store({"backend": "memory"})
  await store.append("628123@main:state", frame)
  frame = await store.latest("628123@main:state")
"""
from database.store_base import BaseStateStore
from database.store_memory import InMemoryStateStore
from database.store_file import FileStateStore
from database.store_redis import RedisStateStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # Store interface
    "BaseStateStore",
    # Store backends
    "InMemoryStateStore", "FileStateStore", "RedisStateStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
