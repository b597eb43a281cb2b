"""Tests for the session lifecycle: create, get, refresh and delete."""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from gatekeeper.service.claims import NON_EXPIRING_TTL
from gatekeeper.service.codec import JWTCodec
from gatekeeper.service.errors import (
    DataInvalidError,
    ExpiredError,
    NoStorageError,
    NotFoundError,
    UnexpectedTokenError,
)
from gatekeeper.service.sessions import SessionManager, session_set_key
from gatekeeper.storage.errors import StorageUnavailableError

USER = uuid.UUID("6f1c2e8a-4b1d-4c8e-9f2a-0d3b5e7a9c11")


def user_data(**extra):
    return {"uuid": USER, "role": "editor", "scopes": ["read", "write"], **extra}


class TestStateless:
    async def test_round_trip(self, stateless_sessions):
        token = await stateless_sessions.create(user_data())

        assert await stateless_sessions.get(token) == user_data()

    async def test_subject_is_optional(self, stateless_sessions):
        token = await stateless_sessions.create({"role": "guest"})

        assert await stateless_sessions.get(token) == {"role": "guest"}

    async def test_no_persistence_id_in_claims(self, stateless_sessions, codec):
        token = await stateless_sessions.create(user_data())

        assert "persistKey" not in codec.verify(token)

    async def test_expiry(self, stateless_sessions, clock):
        token = await stateless_sessions.create(user_data())

        clock.advance(3600)
        assert await stateless_sessions.get(token) == user_data()
        clock.advance(1)
        with pytest.raises(ExpiredError):
            await stateless_sessions.get(token)

    async def test_delete_requires_storage(self, stateless_sessions):
        token = await stateless_sessions.create(user_data())

        with pytest.raises(NoStorageError):
            await stateless_sessions.delete(token)
        with pytest.raises(NoStorageError):
            await stateless_sessions.delete("not even a token")

    async def test_refresh_without_storage_fails_on_delete(self, stateless_sessions):
        token = await stateless_sessions.create(user_data())

        with pytest.raises(NoStorageError):
            await stateless_sessions.refresh_token(token)


class TestCreate:
    async def test_protocol_fields_are_stripped(self, sessions, codec, clock):
        token = await sessions.create(user_data(iat=1, exp=2, persistKey="mine"))

        claims = codec.verify(token)
        assert claims["iat"] == int(clock.now)
        assert claims["exp"] == int(clock.now + 3600)
        assert claims["persistKey"] != "mine"
        assert await sessions.get(token) == user_data()

    async def test_string_subject_is_accepted(self, sessions):
        token = await sessions.create({"uuid": str(USER)})

        assert await sessions.get(token) == {"uuid": USER}

    async def test_subject_required_with_storage(self, sessions):
        with pytest.raises(DataInvalidError):
            await sessions.create({"role": "editor"})

    @pytest.mark.parametrize("subject", ["not-a-uuid", 42, b"bytes"])
    async def test_invalid_subject(self, sessions, subject):
        with pytest.raises(DataInvalidError):
            await sessions.create({"uuid": subject})

    async def test_unserializable_data(self, sessions, memory_storage):
        with pytest.raises(DataInvalidError):
            await sessions.create(user_data(blob=object()))

        assert await memory_storage.count_keys("*") == 0

    async def test_registers_persistence_id(self, sessions, codec, memory_storage):
        token = await sessions.create(user_data())

        persist_id = codec.verify(token)["persistKey"]
        registry = memory_storage.named_set(session_set_key(USER))
        assert await registry.check(persist_id) is True

    async def test_source_token_never_expires(self, sessions, clock):
        token = await sessions.create(user_data(source="billing-service"))

        clock.advance(10 * 365 * 24 * 3600)

        assert await sessions.get(token) == user_data(source="billing-service")

    async def test_source_token_expiry_claim(self, stateless_sessions, codec, clock):
        token = await stateless_sessions.create({"source": "cron"})

        claims = codec.verify(token)
        assert claims["exp"] == int(clock.now + NON_EXPIRING_TTL.total_seconds())

    async def test_storage_failure_propagates(self, codec, clock):
        registry = MagicMock()
        registry.add_expire = AsyncMock(side_effect=StorageUnavailableError("down"))
        storage = MagicMock()
        storage.named_set.return_value = registry
        manager = SessionManager(codec, 60, storage, clock=clock)

        with pytest.raises(StorageUnavailableError):
            await manager.create(user_data())

    def test_ttl_must_be_positive(self, codec):
        with pytest.raises(ValueError):
            SessionManager(codec, 0)


class TestGet:
    async def test_expired_before_registry(self, sessions, clock):
        token = await sessions.create(user_data())

        clock.advance(3601)

        with pytest.raises(ExpiredError):
            await sessions.get(token)

    async def test_tampered_token(self, sessions):
        token = await sessions.create(user_data())

        for index in (0, len(token) // 2, len(token) - 1):
            char = token[index]
            tampered = token[:index] + ("x" if char != "x" else "y") + token[index + 1:]
            with pytest.raises(UnexpectedTokenError):
                await sessions.get(tampered)

    async def test_foreign_secret(self, sessions):
        other = SessionManager(JWTCodec("a-different-secret-of-sufficient-length"), 60)
        token = await other.create(user_data())

        with pytest.raises(UnexpectedTokenError):
            await sessions.get(token)

    async def test_stateless_token_rejected_by_tracking_manager(self, sessions, stateless_sessions):
        token = await stateless_sessions.create(user_data())

        with pytest.raises(UnexpectedTokenError):
            await sessions.get(token)

    async def test_malformed_internal_claims(self, sessions, codec, clock):
        base = {"uuid": str(USER), "iat": int(clock.now), "exp": int(clock.now) + 60}
        for claims in (
            {**base, "persistKey": 12},
            {**base, "persistKey": ""},
            {**base, "exp": "soon"},
            {**base, "exp": True, "persistKey": "p"},
            {**base, "uuid": "nope", "persistKey": "p"},
            {"iat": int(clock.now), "exp": int(clock.now) + 60, "persistKey": "p"},
        ):
            with pytest.raises(UnexpectedTokenError):
                await sessions.get(codec.sign(claims))

    async def test_unknown_persistence_id_is_not_found(self, sessions, codec, clock):
        token = codec.sign(
            {"uuid": str(USER), "iat": int(clock.now), "exp": int(clock.now) + 60, "persistKey": "forged"}
        )

        with pytest.raises(NotFoundError):
            await sessions.get(token)

    async def test_registry_outage_is_not_not_found(self, codec, clock):
        registry = MagicMock()
        registry.add_expire = AsyncMock()
        registry.check = AsyncMock(side_effect=StorageUnavailableError("timeout"))
        storage = MagicMock()
        storage.named_set.return_value = registry
        manager = SessionManager(codec, 60, storage, clock=clock)
        token = await manager.create(user_data())

        with pytest.raises(StorageUnavailableError):
            await manager.get(token)


class TestDelete:
    async def test_delete_revokes(self, sessions):
        token = await sessions.create(user_data())

        await sessions.delete(token)

        with pytest.raises(NotFoundError):
            await sessions.get(token)

    async def test_delete_twice(self, sessions):
        token = await sessions.create(user_data())
        await sessions.delete(token)

        with pytest.raises(NotFoundError):
            await sessions.delete(token)

    async def test_delete_only_affects_one_token(self, sessions):
        first = await sessions.create(user_data())
        second = await sessions.create(user_data())

        await sessions.delete(first)

        assert await sessions.get(second) == user_data()

    async def test_delete_garbage(self, sessions):
        with pytest.raises(UnexpectedTokenError):
            await sessions.delete("garbage")


class TestRefresh:
    async def test_refresh_rotates_token(self, sessions, clock):
        token = await sessions.create(user_data())
        before = await sessions.get(token)
        clock.advance(1800)

        new_token = await sessions.refresh_token(token)

        assert new_token != token
        assert await sessions.get(new_token) == before
        with pytest.raises(NotFoundError):
            await sessions.get(token)

    async def test_refresh_extends_lifetime(self, sessions, clock):
        token = await sessions.create(user_data())
        clock.advance(1800)
        new_token = await sessions.refresh_token(token)

        clock.advance(3000)

        assert await sessions.get(new_token) == user_data()

    async def test_refresh_revoked_token(self, sessions):
        token = await sessions.create(user_data())
        await sessions.delete(token)

        with pytest.raises(NotFoundError):
            await sessions.refresh_token(token)

    async def test_refresh_expired_token(self, sessions, clock):
        token = await sessions.create(user_data())
        clock.advance(4000)

        with pytest.raises(ExpiredError):
            await sessions.refresh_token(token)


class TestSubjectSessions:
    async def test_list_sessions(self, sessions, codec):
        tokens = [await sessions.create(user_data()) for _ in range(3)]
        other = await sessions.create({"uuid": uuid.uuid4()})

        listed = await sessions.list_sessions(USER)

        assert sorted(listed) == sorted(codec.verify(t)["persistKey"] for t in tokens)
        assert codec.verify(other)["persistKey"] not in listed

    async def test_list_sessions_drops_expired(self, sessions, clock):
        await sessions.create(user_data())
        clock.advance(3600)

        assert await sessions.list_sessions(str(USER)) == []

    async def test_delete_all(self, sessions):
        tokens = [await sessions.create(user_data()) for _ in range(5)]

        assert await sessions.delete_all(USER) == 5

        for token in tokens:
            with pytest.raises(NotFoundError):
                await sessions.get(token)

    async def test_delete_all_keeps_current(self, sessions):
        keep = await sessions.create(user_data())
        others = [await sessions.create(user_data()) for _ in range(3)]

        assert await sessions.delete_all(USER, except_token=keep) == 3

        assert await sessions.get(keep) == user_data()
        with pytest.raises(NotFoundError):
            await sessions.get(others[0])

    async def test_delete_all_beyond_one_batch(self, sessions):
        for _ in range(130):
            await sessions.create(user_data())

        assert await sessions.delete_all(USER) == 130
        assert await sessions.list_sessions(USER) == []

    async def test_subject_operations_require_storage(self, stateless_sessions):
        with pytest.raises(NoStorageError):
            await stateless_sessions.list_sessions(USER)
        with pytest.raises(NoStorageError):
            await stateless_sessions.delete_all(USER)

    def test_registry_lookup_requires_storage(self, stateless_sessions):
        with pytest.raises(NoStorageError):
            stateless_sessions._registry(USER)
