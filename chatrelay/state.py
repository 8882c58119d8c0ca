"""
Shared in-process state: keyed maps that outlive a single request.

Two of these live for the whole process: the chat context cache
(chat_id -> message list) and the cancellation registry
(session_id -> cancel token). Both are constructed once at startup and
injected; nothing here is a module-level singleton.
"""

from __future__ import annotations

import abc
import threading
from collections import OrderedDict
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class KeyValueStore(abc.ABC, Generic[K, V]):
    """Minimal map interface with last-writer-wins semantics."""

    @abc.abstractmethod
    def get(self, key: K) -> V | None:
        ...

    @abc.abstractmethod
    def put(self, key: K, value: V) -> None:
        ...

    @abc.abstractmethod
    def pop(self, key: K) -> V | None:
        ...

    @abc.abstractmethod
    def pop_if(self, key: K, expected: V) -> bool:
        """Remove the entry only if it still holds `expected` (identity)."""
        ...

    def has(self, key: K) -> bool:
        return self.get(key) is not None

    @abc.abstractmethod
    def __len__(self) -> int:
        ...


class LockedMap(KeyValueStore[K, V]):
    """
    Thread-safe dict. Optional max_size evicts the least recently written
    key once the map is full.
    """

    def __init__(self, max_size: int = 0):
        self.max_size = max_size
        self._items: OrderedDict = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._items.get(key)

    def put(self, key, value):
        with self._lock:
            if key in self._items:
                self._items.move_to_end(key)
            self._items[key] = value
            while self.max_size and len(self._items) > self.max_size:
                self._items.popitem(last=False)

    def pop(self, key):
        with self._lock:
            return self._items.pop(key, None)

    def pop_if(self, key, expected) -> bool:
        with self._lock:
            if self._items.get(key) is expected:
                del self._items[key]
                return True
            return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
