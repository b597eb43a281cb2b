from __future__ import annotations

import math
from typing import Any, List, Optional, Protocol

# Upper bound on members returned by a single ExpiringSet.list() call
LIST_BATCH_SIZE = 100


class ExpiringSet(Protocol):
    """Named set of string members, each live until its own expiry.

    Every operation first drops members whose expiry has passed, so a
    member past its expiry is never observed as live whether or not it
    was physically removed yet.
    """

    async def add(self, member: str) -> None: ...

    async def add_expire(self, member: str, ttl_seconds: Optional[float]) -> None: ...

    async def remove(self, member: str) -> None: ...

    async def check(self, member: str) -> bool: ...

    async def list(self) -> List[str]: ...


class Storage(Protocol):
    """Key-value store with named expiring sets.

    Backends serialize values themselves; callers hand in and get back
    JSON-compatible data.
    """

    async def ping(self) -> str: ...

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, data: Any) -> None: ...

    async def set_with_expire(self, key: str, data: Any, ttl_seconds: Optional[float]) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def count_keys(self, pattern: str) -> int: ...

    def named_set(self, key: str) -> ExpiringSet: ...

    async def close(self) -> None: ...


def expiry_score(now: float, ttl_seconds: Optional[float]) -> float:
    """Absolute expiry for a ttl; ``None`` or infinity never expires."""
    if ttl_seconds is None or math.isinf(ttl_seconds):
        return math.inf
    if ttl_seconds < 0:
        raise ValueError("ttl_seconds must not be negative")
    return now + ttl_seconds


def is_live(score: float, now: float) -> bool:
    return score > now


__all__ = ["ExpiringSet", "Storage", "LIST_BATCH_SIZE", "expiry_score", "is_live"]
