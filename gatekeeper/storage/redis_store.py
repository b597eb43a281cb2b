from __future__ import annotations

import contextlib
import json
import math
import time
from typing import Any, Callable, Iterator, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from gatekeeper.logging import get_logger
from gatekeeper.storage.base import LIST_BATCH_SIZE, expiry_score
from gatekeeper.storage.errors import (
    NoSuchKeyError,
    StorageError,
    StorageUnavailableError,
    WrongTypeError,
)

logger = get_logger(__name__)


@contextlib.contextmanager
def _redis_errors(operation: str, key: Optional[str] = None) -> Iterator[None]:
    """Translate redis-py exceptions into storage errors."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        logger.warning("redis_unavailable", operation=operation, key=key, error=str(exc))
        raise StorageUnavailableError(f"redis {operation}: {exc}", key=key) from exc
    except ResponseError as exc:
        if "WRONGTYPE" in str(exc):
            raise WrongTypeError(key or "") from exc
        raise StorageError(f"redis {operation}: {exc}", key=key) from exc
    except RedisError as exc:
        raise StorageError(f"redis {operation}: {exc}", key=key) from exc


class RedisStorage:
    """Storage backend on top of one long-lived ``redis.asyncio`` client.

    The client (and its connection pool) is created on construction and
    released by :meth:`close`; the instance is also an async context manager.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self._clock = clock
        # Explicit timeouts so a stalled server surfaces as StorageUnavailableError
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def __aenter__(self) -> "RedisStorage":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _now(self) -> float:
        return self._clock()

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the backend is handed out."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            with _redis_errors("ping"):
                sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> str:
        with _redis_errors("ping"):
            await self.client.ping()
        return "PONG"

    async def get(self, key: str) -> Any:
        with _redis_errors("get", key):
            raw = await self.client.get(key)
        if raw is None:
            raise NoSuchKeyError(key)
        if raw == "":
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageError(f"redis get: undecodable value: {exc}", key=key) from exc

    async def set(self, key: str, data: Any) -> None:
        await self.set_with_expire(key, data, None)

    async def set_with_expire(self, key: str, data: Any, ttl_seconds: Optional[float]) -> None:
        try:
            payload = json.dumps(data)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"set with expire: {exc}", key=key) from exc
        if ttl_seconds is None or math.isinf(ttl_seconds):
            with _redis_errors("set", key):
                await self.client.set(key, payload)
            return
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must not be negative")
        with _redis_errors("set", key):
            await self.client.set(key, payload, px=max(1, int(ttl_seconds * 1000)))

    async def delete(self, key: str) -> None:
        with _redis_errors("delete", key):
            deleted = await self.client.delete(key)
        if not deleted:
            raise NoSuchKeyError(key)

    async def count_keys(self, pattern: str) -> int:
        count = 0
        with _redis_errors("scan", pattern):
            async for _ in self.client.scan_iter(match=pattern, count=LIST_BATCH_SIZE):
                count += 1
        return count

    def named_set(self, key: str) -> "RedisExpiringSet":
        return RedisExpiringSet(self, key)

    async def close(self) -> None:
        """Close the client and its connection pool."""
        await self.client.aclose()


class RedisExpiringSet:
    """ExpiringSet stored as a sorted set scored by expiry timestamp.

    Members that never expire are scored ``+inf``. Each operation runs in a
    MULTI/EXEC pipeline behind a ZREMRANGEBYSCORE of everything already
    expired, so the sweep and the operation are applied atomically.
    """

    def __init__(self, storage: RedisStorage, key: str) -> None:
        self._storage = storage
        self.key = key

    async def _swept(self, operation: str, now: float, build: Callable[[Any], None]) -> Any:
        pipe = self._storage.client.pipeline(transaction=True)
        pipe.zremrangebyscore(self.key, "-inf", now)
        build(pipe)
        with _redis_errors(operation, self.key):
            results = await pipe.execute()
        return results[-1]

    async def add(self, member: str) -> None:
        await self.add_expire(member, None)

    async def add_expire(self, member: str, ttl_seconds: Optional[float]) -> None:
        now = self._storage._now()
        score = expiry_score(now, ttl_seconds)
        await self._swept("add expire", now, lambda pipe: pipe.zadd(self.key, {member: score}))

    async def remove(self, member: str) -> None:
        now = self._storage._now()
        removed = await self._swept("remove", now, lambda pipe: pipe.zrem(self.key, member))
        if not removed:
            raise NoSuchKeyError(self.key, member=member)

    async def check(self, member: str) -> bool:
        now = self._storage._now()
        score = await self._swept("check", now, lambda pipe: pipe.zscore(self.key, member))
        if score is None:
            return False
        return float(score) > now

    async def list(self) -> List[str]:
        now = self._storage._now()
        members = await self._swept(
            "list",
            now,
            lambda pipe: pipe.zrangebyscore(
                self.key, f"({now}", "+inf", start=0, num=LIST_BATCH_SIZE
            ),
        )
        return [str(member) for member in members or []]


__all__ = ["RedisStorage", "RedisExpiringSet"]
