"""
State bag — the shared key/value map of one flow engine execution.

Writes are serialized with a lock so sync handlers running in worker
threads and coroutines on the loop see a consistent map. Inside a
parallel step every child runs in its own write scope; two siblings
writing the same key is rejected because the winner would depend on
scheduling.
"""
from __future__ import annotations

import threading
from contextvars import ContextVar
from typing import Any, Iterator, Mapping, MutableMapping, Optional

from utils.errors import ConfigError

# Keys every step writes; exempt from sibling-conflict checks.
BOOKKEEPING_KEYS = frozenset({
    "last_error", "last_executed_step", "last_execution_time", "error_logs",
})


class ParallelGroup:
    """Tracks which child of one parallel step wrote which key."""

    def __init__(self, step: str):
        self.step = step
        self._owners: dict[str, str] = {}
        self._lock = threading.Lock()

    def claim(self, key: str, child: str) -> None:
        with self._lock:
            owner = self._owners.setdefault(key, child)
        if owner != child:
            raise ConfigError(
                f"parallel step {self.step}: children {owner} and {child} "
                f"both write state key '{key}'"
            )


class WriteScope:
    def __init__(self, group: ParallelGroup, child: str, parent: Optional["WriteScope"]):
        self.group = group
        self.child = child
        self.parent = parent

    def claim(self, key: str) -> None:
        scope: Optional[WriteScope] = self
        while scope is not None:
            scope.group.claim(key, scope.child)
            scope = scope.parent


_current_scope: ContextVar[Optional[WriteScope]] = ContextVar("flow_write_scope", default=None)


def enter_child_scope(group: ParallelGroup, child: str) -> None:
    """Bind the calling task's context to one parallel child."""
    _current_scope.set(WriteScope(group, child, _current_scope.get()))


class StateBag(MutableMapping[str, Any]):

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        self._data: dict[str, Any] = dict(initial or {})
        self._lock = threading.RLock()

    def __getitem__(self, key: str) -> Any:
        with self._lock:
            return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        scope = _current_scope.get()
        if scope is not None and key not in BOOKKEEPING_KEYS:
            scope.claim(key)
        with self._lock:
            self._data[key] = value

    def __delitem__(self, key: str) -> None:
        with self._lock:
            del self._data[key]

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._data))

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __repr__(self) -> str:
        return f"StateBag({self.snapshot()!r})"

    def append_to(self, key: str, item: Any) -> None:
        """Atomically append to a list value, creating it if absent."""
        with self._lock:
            current = self._data.get(key)
            items = list(current) if isinstance(current, list) else []
            items.append(item)
            self._data[key] = items

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._data)
