"""Claim set carried inside every session token.

A token payload is a flat JSON object: the protocol fields below plus any
application fields the caller supplied at creation time.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from gatekeeper.service.errors import DataInvalidError, UnexpectedTokenError

SUBJECT_KEY = "uuid"
ISSUED_AT_KEY = "iat"
EXPIRE_AT_KEY = "exp"
PERSIST_ID_KEY = "persistKey"
# Presence of this application field marks a trusted, non-expiring token
SOURCE_KEY = "source"

PROTOCOL_KEYS = frozenset({ISSUED_AT_KEY, EXPIRE_AT_KEY, PERSIST_ID_KEY})

NON_EXPIRING_TTL = timedelta(hours=999999)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_subject(raw: Any) -> Optional[uuid.UUID]:
    """Accept a subject as ``uuid.UUID`` or its string form; ``None`` passes through."""
    if raw is None or isinstance(raw, uuid.UUID):
        return raw
    if isinstance(raw, str):
        try:
            return uuid.UUID(raw)
        except ValueError as exc:
            raise DataInvalidError(
                "subject identifier is not a UUID", detail={"field": SUBJECT_KEY}
            ) from exc
    raise DataInvalidError(
        "subject identifier is not a UUID", detail={"field": SUBJECT_KEY}
    )


@dataclass
class ClaimSet:
    issued_at: int
    expires_at: int
    subject: Optional[uuid.UUID] = None
    persist_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def is_trusted_source(data: Mapping[str, Any]) -> bool:
        return SOURCE_KEY in data

    @classmethod
    def from_data(
        cls,
        data: Mapping[str, Any],
        *,
        issued_at: int,
        expires_at: int,
        persist_id: Optional[str] = None,
    ) -> "ClaimSet":
        """Build a claim set from caller data.

        Protocol fields the caller may have passed are dropped; the subject,
        when present, must be a UUID or its string form.
        """
        extra = {
            key: value
            for key, value in data.items()
            if key not in PROTOCOL_KEYS and key != SUBJECT_KEY
        }
        for key in extra:
            if not isinstance(key, str):
                raise DataInvalidError(
                    "session data keys must be strings", detail={"key": repr(key)}
                )
        return cls(
            issued_at=issued_at,
            expires_at=expires_at,
            subject=parse_subject(data.get(SUBJECT_KEY)),
            persist_id=persist_id,
            extra=extra,
        )

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "ClaimSet":
        """Validate a decoded token payload.

        Raises:
            UnexpectedTokenError: a protocol field is missing or malformed.
        """
        issued_at = claims.get(ISSUED_AT_KEY)
        expires_at = claims.get(EXPIRE_AT_KEY)
        if not _is_number(issued_at) or not _is_number(expires_at):
            raise UnexpectedTokenError("token timestamps are missing or malformed")

        persist_id = claims.get(PERSIST_ID_KEY)
        if persist_id is not None and (not isinstance(persist_id, str) or not persist_id):
            raise UnexpectedTokenError("malformed token persistence id")

        subject = None
        raw_subject = claims.get(SUBJECT_KEY)
        if raw_subject is not None:
            if not isinstance(raw_subject, str):
                raise UnexpectedTokenError("malformed token subject")
            try:
                subject = uuid.UUID(raw_subject)
            except ValueError as exc:
                raise UnexpectedTokenError("malformed token subject") from exc

        extra = {
            key: value
            for key, value in claims.items()
            if key not in PROTOCOL_KEYS and key != SUBJECT_KEY
        }
        return cls(
            issued_at=int(issued_at),
            expires_at=int(expires_at),
            subject=subject,
            persist_id=persist_id,
            extra=extra,
        )

    def to_claims(self) -> Dict[str, Any]:
        claims: Dict[str, Any] = dict(self.extra)
        if self.subject is not None:
            claims[SUBJECT_KEY] = str(self.subject)
        claims[ISSUED_AT_KEY] = self.issued_at
        claims[EXPIRE_AT_KEY] = self.expires_at
        if self.persist_id is not None:
            claims[PERSIST_ID_KEY] = self.persist_id
        return claims

    def application_data(self) -> Dict[str, Any]:
        """Caller-visible data: everything but the protocol fields."""
        data: Dict[str, Any] = dict(self.extra)
        if self.subject is not None:
            data[SUBJECT_KEY] = self.subject
        return data


__all__ = [
    "ClaimSet",
    "parse_subject",
    "SUBJECT_KEY",
    "ISSUED_AT_KEY",
    "EXPIRE_AT_KEY",
    "PERSIST_ID_KEY",
    "SOURCE_KEY",
    "PROTOCOL_KEYS",
    "NON_EXPIRING_TTL",
]
