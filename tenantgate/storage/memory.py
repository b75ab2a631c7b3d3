from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Set

from tenantgate.logging import get_logger


class MemoryStore:
    """In-process credential store for tests and local development.

    Mirrors the Redis semantics the directory relies on: string values with
    optional expiry, NX writes, and string sets. Nothing survives a restart.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.values: Dict[str, str] = {}
        self.expiry: Dict[str, float] = {}
        self.sets: Dict[str, Set[str]] = {}
        self._data_lock = threading.RLock()

    def _purge_if_expired(self, key: str) -> None:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.values.pop(key, None)
            self.expiry.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            self._purge_if_expired(key)
            return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        with self._data_lock:
            self.values[key] = value
            self.expiry.pop(key, None)

    async def set_if_absent(self, key: str, value: str) -> bool:
        with self._data_lock:
            self._purge_if_expired(key)
            if key in self.values or key in self.sets:
                return False
            self.values[key] = value
            return True

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._data_lock:
            self.values[key] = value
            self.expiry[key] = time.monotonic() + max(1, int(ttl_seconds))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._data_lock:
            for key in keys:
                self._purge_if_expired(key)
                if self.values.pop(key, None) is not None:
                    removed += 1
                if self.sets.pop(key, None) is not None:
                    removed += 1
                self.expiry.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._data_lock:
            self._purge_if_expired(key)
            return key in self.values or bool(self.sets.get(key))

    async def add_to_set(self, key: str, *members: str) -> int:
        with self._data_lock:
            bucket = self.sets.setdefault(key, set())
            before = len(bucket)
            bucket.update(members)
            return len(bucket) - before

    async def remove_from_set(self, key: str, *members: str) -> int:
        with self._data_lock:
            bucket = self.sets.get(key)
            if not bucket:
                return 0
            before = len(bucket)
            bucket.difference_update(members)
            if not bucket:
                self.sets.pop(key, None)
            return before - len(bucket)

    async def set_members(self, key: str) -> Set[str]:
        with self._data_lock:
            return set(self.sets.get(key, set()))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self.logger.debug("memory_store_closed", keys=len(self.values), sets=len(self.sets))
