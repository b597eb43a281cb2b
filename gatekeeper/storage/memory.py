from __future__ import annotations

import fnmatch
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from gatekeeper.logging import get_logger
from gatekeeper.storage.base import LIST_BATCH_SIZE, expiry_score, is_live
from gatekeeper.storage.errors import NoSuchKeyError, StorageError, WrongTypeError


@dataclass
class _Value:
    payload: str
    expires_at: float


class MemoryStorage:
    """Volatile in-process storage backend.

    Values and named sets share one keyspace, like Redis does. Values are
    kept JSON-encoded so callers always get a fresh copy back.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._values: Dict[str, _Value] = {}
        self._sets: Dict[str, Dict[str, float]] = {}
        # RLock so set views can call back into storage helpers while holding it
        self._data_lock = threading.RLock()

    def _now(self) -> float:
        return self._clock()

    async def ping(self) -> str:
        return "pong"

    def _live_value(self, key: str) -> Optional[_Value]:
        value = self._values.get(key)
        if value is not None and not is_live(value.expires_at, self._now()):
            del self._values[key]
            return None
        return value

    async def get(self, key: str) -> Any:
        with self._data_lock:
            if key in self._sets:
                raise WrongTypeError(key)
            value = self._live_value(key)
            if value is None:
                raise NoSuchKeyError(key)
            return json.loads(value.payload)

    async def set(self, key: str, data: Any) -> None:
        await self.set_with_expire(key, data, None)

    async def set_with_expire(self, key: str, data: Any, ttl_seconds: Optional[float]) -> None:
        try:
            payload = json.dumps(data)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"set with expire: {exc}", key=key) from exc
        with self._data_lock:
            self._sets.pop(key, None)
            self._values[key] = _Value(payload, expiry_score(self._now(), ttl_seconds))

    async def delete(self, key: str) -> None:
        with self._data_lock:
            if self._live_value(key) is not None:
                del self._values[key]
                return
            if key in self._sets:
                del self._sets[key]
                return
        raise NoSuchKeyError(key)

    async def count_keys(self, pattern: str) -> int:
        with self._data_lock:
            self.purge_expired()
            keys = list(self._values) + list(self._sets)
        return sum(1 for key in keys if fnmatch.fnmatchcase(key, pattern))

    def named_set(self, key: str) -> "MemoryExpiringSet":
        return MemoryExpiringSet(self, key)

    async def close(self) -> None:
        with self._data_lock:
            self._values.clear()
            self._sets.clear()

    def purge_expired(self) -> int:
        """Eagerly drop every expired value and set member.

        Reads already ignore expired entries; this only reclaims memory.
        """
        removed = 0
        with self._data_lock:
            now = self._now()
            for key in [k for k, v in self._values.items() if not is_live(v.expires_at, now)]:
                del self._values[key]
                removed += 1
            for key in list(self._sets):
                removed += self._purge_set(key, now)
        if removed:
            self.logger.debug("memory_storage_purged", removed=removed)
        return removed

    def _purge_set(self, key: str, now: float) -> int:
        members = self._sets.get(key)
        if members is None:
            return 0
        expired = [m for m, score in members.items() if not is_live(score, now)]
        for member in expired:
            del members[member]
        if not members:
            del self._sets[key]
        return len(expired)

    def _set_members(self, key: str, *, create: bool) -> Optional[Dict[str, float]]:
        """Return the purged member map for ``key``; caller holds the lock."""
        if self._live_value(key) is not None:
            raise WrongTypeError(key)
        self._purge_set(key, self._now())
        members = self._sets.get(key)
        if members is None and create:
            members = self._sets[key] = {}
        return members


class MemoryExpiringSet:
    """ExpiringSet view over one key of a MemoryStorage."""

    def __init__(self, storage: MemoryStorage, key: str) -> None:
        self._storage = storage
        self.key = key

    async def add(self, member: str) -> None:
        await self.add_expire(member, None)

    async def add_expire(self, member: str, ttl_seconds: Optional[float]) -> None:
        storage = self._storage
        with storage._data_lock:
            score = expiry_score(storage._now(), ttl_seconds)
            members = storage._set_members(self.key, create=True)
            members[member] = score

    async def remove(self, member: str) -> None:
        storage = self._storage
        with storage._data_lock:
            members = storage._set_members(self.key, create=False)
            if not members or member not in members:
                raise NoSuchKeyError(self.key, member=member)
            del members[member]
            if not members:
                del storage._sets[self.key]

    async def check(self, member: str) -> bool:
        storage = self._storage
        with storage._data_lock:
            members = storage._set_members(self.key, create=False)
            return bool(members) and member in members

    async def list(self) -> List[str]:
        storage = self._storage
        with storage._data_lock:
            members = storage._set_members(self.key, create=False) or {}
            ordered = sorted(members.items(), key=lambda item: (item[1], item[0]))
        return [member for member, _ in ordered[:LIST_BATCH_SIZE]]


__all__ = ["MemoryStorage", "MemoryExpiringSet"]
