from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatekeeper.config import Settings, StorageBackend, get_settings, reset_settings_cache
from gatekeeper.logging import get_logger
from gatekeeper.service.codec import JWTCodec
from gatekeeper.service.sessions import SessionManager
from gatekeeper.storage.base import Storage
from gatekeeper.storage.memory import MemoryStorage
from gatekeeper.storage.redis_store import RedisStorage

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


def build_storage(settings: Settings) -> Optional[Storage]:
    """Create the storage backend selected by ``settings``.

    A Redis backend is pinged before it is returned so a bad URL fails at
    startup instead of on the first token.
    """
    if settings.storage_backend == StorageBackend.NONE:
        return None
    if settings.storage_backend == StorageBackend.MEMORY:
        return MemoryStorage()
    storage = RedisStorage(
        settings.redis_url, socket_timeout=settings.redis_socket_timeout
    )
    try:
        storage.verify_connection()
    except Exception as exc:
        logger.error(
            "runtime_storage_init_failed",
            redis_url=_mask_url_password(settings.redis_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    return storage


class Runtime:
    """Owns the configured storage, codec and session manager."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.storage = build_storage(self.settings)
        self.codec = JWTCodec(self.settings.jwt_secret)
        self.sessions = SessionManager(
            self.codec, self.settings.session_ttl_seconds, self.storage
        )
        logger.info(
            "runtime_initialized",
            storage_backend=self.settings.storage_backend.value,
            session_ttl_minutes=self.settings.session_ttl_minutes,
        )

    async def aclose(self) -> None:
        """Release the storage connection."""
        if self.storage is not None:
            await self.storage.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Optional[Runtime]:
    """Drop the runtime singleton and re-read settings on next use.

    Only allowed in TEST_MODE. Returns the discarded runtime so callers
    holding an event loop can ``await old.aclose()``.
    """
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous, runtime = runtime, None
        return previous
