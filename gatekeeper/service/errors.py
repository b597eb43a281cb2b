from __future__ import annotations

from typing import Optional


class SessionError(Exception):
    """Base class for session-layer exceptions.

    Each subclass carries a stable ``error_code`` so callers can tell a
    cryptographically invalid token apart from a valid but revoked or
    expired one, and both apart from a deployment that cannot revoke.
    ``status_code`` is the HTTP status a transport layer should answer with.
    """

    status_code: int = 400
    error_code: str = "session_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class UnexpectedTokenError(SessionError):
    """Token is malformed, tampered, signed with another algorithm or carries a bad internal claim."""
    status_code = 401
    error_code = "unexpected_token"


class NotFoundError(SessionError):
    """Token is not registered as live (revoked or never issued here)."""
    status_code = 401
    error_code = "not_found"


class ExpiredError(SessionError):
    """Token expiry claim has elapsed."""
    status_code = 401
    error_code = "expired"


class NoStorageError(SessionError):
    """Revocation requested but no session storage is configured."""
    status_code = 501
    error_code = "no_storage"


class DataInvalidError(SessionError):
    """Caller data cannot be turned into a session token."""
    status_code = 400
    error_code = "data_invalid"


__all__ = [
    "SessionError",
    "UnexpectedTokenError",
    "NotFoundError",
    "ExpiredError",
    "NoStorageError",
    "DataInvalidError",
]
