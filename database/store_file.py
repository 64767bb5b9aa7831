"""
FileStateStore — JSON file-backed frame log with persistence across restarts.

Data layout:
  {data_dir}/
    <sha1(conversation key)>.json   {"key": ..., "frames": [...], "expires_at": ...}

Features:
  - Survives process restarts (unlike InMemoryStateStore)
  - No external dependencies (no Redis)
  - Every append rewrites the key's file via tmp + rename
  - Single-process only (no cross-process write safety)

Best for: small deployments, demos, edge devices.
"""
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import structlog

from database.store_memory import InMemoryStateStore
from models.schemas import ConversationFrame
from utils.errors import StateError

logger = structlog.get_logger()


class FileStateStore(InMemoryStateStore):
    """
    Extends InMemoryStateStore with JSON file persistence.

    On init: loads every key file from disk into memory.
    On every write: flushes that key's file.
    """

    def __init__(self, data_dir: str = "./data/frames", ttl_seconds: int = 0, max_frames: int = 0):
        super().__init__(ttl_seconds=ttl_seconds, max_frames=max_frames)
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_state_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return self._data_dir / f"{digest}.json"

    def _load_all(self):
        """Load all key files from disk."""
        for path in self._data_dir.glob("*.json"):
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                key = data["key"]
                self._frames[key] = [str(raw) for raw in data.get("frames", [])]
                if data.get("expires_at"):
                    self._expires_at[key] = float(data["expires_at"])
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("file_state_load_error", path=str(path), error=str(e))

    def _flush_key(self, key: str):
        """Write a single key's frames to disk."""
        path = self._file_path(key)
        data: dict[str, Any] = {
            "key": key,
            "frames": self._frames.get(key, []),
            "expires_at": self._expires_at.get(key),
        }
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(data, f)
            tmp_path.replace(path)  # atomic on POSIX
        except OSError as e:
            raise StateError(f"failed to persist frames for {key}: {e}", key=key) from e

    # ── Contract ──────────────────────────────────────────

    async def append(self, key: str, frame: ConversationFrame) -> None:
        previous = list(self._frames[key]) if key in self._frames else None
        expires_at = self._expires_at.get(key)
        await super().append(key, frame)
        try:
            self._flush_key(key)
        except StateError:
            # memory must not show a frame the disk never got
            if previous is None:
                self._frames.pop(key, None)
            else:
                self._frames[key] = previous
            if expires_at is None:
                self._expires_at.pop(key, None)
            else:
                self._expires_at[key] = expires_at
            raise

    async def clear(self, key: str) -> None:
        await super().clear(key)
        path = self._file_path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StateError(f"failed to clear frames for {key}: {e}", key=key) from e
