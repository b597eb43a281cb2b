from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple, Union

from gatekeeper.logging import get_logger
from gatekeeper.service.claims import NON_EXPIRING_TTL, ClaimSet, parse_subject
from gatekeeper.service.codec import TokenCodec
from gatekeeper.service.errors import (
    DataInvalidError,
    ExpiredError,
    NoStorageError,
    NotFoundError,
    UnexpectedTokenError,
)
from gatekeeper.storage.base import ExpiringSet, Storage
from gatekeeper.storage.errors import NoSuchKeyError

logger = get_logger(__name__)

Token = Union[str, bytes]


class Sessions(Protocol):
    async def create(self, data: Mapping[str, Any]) -> str: ...

    async def get(self, token: Token) -> Dict[str, Any]: ...

    async def refresh_token(self, old_token: Token) -> str: ...

    async def delete(self, token: Token) -> None: ...


def session_set_key(subject: uuid.UUID) -> str:
    """Name of the expiring set tracking one subject's live tokens."""
    return f"user:{subject}:sessions"


class SessionManager:
    """Signed session tokens with optional server-side revocation.

    Without storage every token is self-contained and valid until its
    ``exp`` claim. With storage each token also gets a random persistence
    id registered in the subject's expiring set; ``get`` requires that id
    to still be live, so ``delete`` can log a token out early.

    The manager keeps no state between calls. ``refresh_token`` is a plain
    get, delete, create sequence with no atomicity: a concurrent ``get`` on
    the old token can fail with NotFound before the new token exists, and
    two concurrent refreshes of one token can both pass ``get`` before one
    of them loses the ``delete``.
    """

    def __init__(
        self,
        codec: TokenCodec,
        ttl_seconds: float,
        storage: Optional[Storage] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.codec = codec
        self.ttl_seconds = ttl_seconds
        self.storage = storage
        self._clock = clock
        self.logger = logger

    def _now(self) -> float:
        return self._clock()

    def _registry(self, subject: uuid.UUID) -> ExpiringSet:
        if self.storage is None:
            raise NoStorageError("doesn't have any session storage")
        return self.storage.named_set(session_set_key(subject))

    def _require_storage(self, operation: str) -> None:
        if self.storage is None:
            raise NoStorageError(f"{operation}: doesn't have any session storage")

    async def create(self, data: Mapping[str, Any]) -> str:
        """Issue a token carrying ``data``.

        Data with a ``source`` field yields a token that practically never
        expires. With storage configured ``data`` must carry a ``uuid``
        subject identifier.
        """
        now = self._now()
        if ClaimSet.is_trusted_source(data):
            expires_at = int(now + NON_EXPIRING_TTL.total_seconds())
            registry_ttl: Optional[float] = None
        else:
            expires_at = int(now + self.ttl_seconds)
            registry_ttl = self.ttl_seconds

        claim_set = ClaimSet.from_data(data, issued_at=int(now), expires_at=expires_at)
        if self.storage is not None:
            if claim_set.subject is None:
                raise DataInvalidError(
                    "create token: no such user UUID", detail={"field": "uuid"}
                )
            claim_set.persist_id = str(uuid.uuid4())

        try:
            token = self.codec.sign(claim_set.to_claims())
        except (TypeError, ValueError) as exc:
            raise DataInvalidError(f"create token: data not serializable: {exc}") from exc

        if self.storage is not None:
            await self._registry(claim_set.subject).add_expire(
                claim_set.persist_id, registry_ttl
            )

        self.logger.info(
            "session_created",
            subject=str(claim_set.subject) if claim_set.subject else None,
            expires_at=expires_at,
            tracked=self.storage is not None,
        )
        return token

    def _decode(self, token: Token) -> ClaimSet:
        try:
            return ClaimSet.from_claims(self.codec.verify(token))
        except UnexpectedTokenError as exc:
            self.logger.info("token_rejected", reason=exc.message)
            raise

    @staticmethod
    def _tracking_ids(claim_set: ClaimSet) -> Tuple[str, uuid.UUID]:
        if claim_set.persist_id is None:
            raise UnexpectedTokenError("extract token ID: token carries no persistence id")
        if claim_set.subject is None:
            raise UnexpectedTokenError("extract token ID: token carries no subject")
        return claim_set.persist_id, claim_set.subject

    async def get(self, token: Token) -> Dict[str, Any]:
        """Validate ``token`` and return the application data it carries."""
        claim_set = self._decode(token)

        if self._now() > claim_set.expires_at:
            raise ExpiredError("validate token: token expired")

        if self.storage is not None:
            persist_id, subject = self._tracking_ids(claim_set)
            if not await self._registry(subject).check(persist_id):
                raise NotFoundError("no such token registered or already deleted")

        return claim_set.application_data()

    async def refresh_token(self, old_token: Token) -> str:
        data = await self.get(old_token)
        await self.delete(old_token)
        token = await self.create(data)
        self.logger.info("session_refreshed", subject=str(data.get("uuid")))
        return token

    async def delete(self, token: Token) -> None:
        """Revoke ``token`` so later ``get`` calls fail with NotFound."""
        self._require_storage("delete token")

        claim_set = self._decode(token)
        persist_id, subject = self._tracking_ids(claim_set)
        try:
            await self._registry(subject).remove(persist_id)
        except NoSuchKeyError as exc:
            raise NotFoundError(
                "delete token: no such token registered or already deleted"
            ) from exc
        self.logger.info("session_revoked", subject=str(subject))

    async def list_sessions(self, subject: Union[uuid.UUID, str]) -> List[str]:
        """Persistence ids of the subject's live tokens (first batch only)."""
        self._require_storage("list sessions")
        return await self._registry(self._subject(subject)).list()

    async def delete_all(
        self, subject: Union[uuid.UUID, str], except_token: Optional[Token] = None
    ) -> int:
        """Revoke every live token of ``subject``, optionally keeping one.

        Returns:
            Number of tokens revoked by this call.
        """
        self._require_storage("delete all tokens")
        subject_id = self._subject(subject)

        keep_id = None
        if except_token is not None:
            keep_id, keep_subject = self._tracking_ids(self._decode(except_token))
            if keep_subject != subject_id:
                keep_id = None

        registry = self._registry(subject_id)
        revoked = 0
        while True:
            members = [member for member in await registry.list() if member != keep_id]
            if not members:
                break
            for member in members:
                try:
                    await registry.remove(member)
                except NoSuchKeyError:
                    # Revoked or expired concurrently
                    continue
                revoked += 1

        self.logger.info("sessions_revoked", subject=str(subject_id), revoked=revoked)
        return revoked

    @staticmethod
    def _subject(subject: Union[uuid.UUID, str]) -> uuid.UUID:
        parsed = parse_subject(subject)
        if parsed is None:
            raise DataInvalidError("subject identifier is required")
        return parsed


__all__ = ["Sessions", "SessionManager", "Token", "session_set_key"]
