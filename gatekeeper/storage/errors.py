from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when a storage backend operation fails."""

    def __init__(
        self, message: str, *, key: Optional[str] = None, detail: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.key = key
        self.detail = detail or {}


class NoSuchKeyError(StorageError):
    """Key, or member of a named set, is absent (or already expired)."""

    def __init__(self, key: str, *, member: Optional[str] = None):
        message = f"no such key found - {key}"
        super().__init__(message, key=key, detail={"member": member} if member else None)
        self.member = member


class WrongTypeError(StorageError):
    """Key holds a value of another type than the operation expects."""

    def __init__(self, key: str):
        super().__init__(f"wrong value type - {key}", key=key)


class StorageUnavailableError(StorageError):
    """Backend could not be reached or did not answer in time."""


__all__ = ["StorageError", "NoSuchKeyError", "WrongTypeError", "StorageUnavailableError"]
