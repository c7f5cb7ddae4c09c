"""Unit tests for password and session handling in the auth service."""

import asyncio
from datetime import timedelta

import pytest

from stepflow.config import Settings
from stepflow.service.auth import AuthService
from stepflow.storage.errors import ConstraintViolation
from stepflow.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(session_ttl_minutes=30)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(store=memory_store, settings=settings)


class TestPasswords:
    def test_hash_is_argon2(self, auth_service):
        pwd_hash, algo = auth_service._hash_password("TestPassword123!")
        assert algo == "argon2id"
        assert pwd_hash.startswith("$argon2id$")

    def test_verify_roundtrip(self, auth_service, memory_store):
        user = memory_store.create_user("pw@example.com")
        auth_service.save_password(user.id, "TestPassword123!")
        assert auth_service.verify_password(user.id, "TestPassword123!")
        assert not auth_service.verify_password(user.id, "wrong-password")

    def test_missing_record_fails_verification(self, auth_service, memory_store):
        user = memory_store.create_user("nopw@example.com")
        assert not auth_service.verify_password(user.id, "anything")


class TestSessions:
    def test_signup_then_login(self, auth_service):
        user, session = asyncio.run(
            auth_service.signup("new@example.com", "TestPassword123!")
        )
        assert session.user_id == user.id
        logged_in, second = asyncio.run(
            auth_service.login("new@example.com", "TestPassword123!")
        )
        assert logged_in.id == user.id
        assert second.id != session.id

    def test_signup_duplicate_email(self, auth_service):
        asyncio.run(auth_service.signup("dup@example.com", "TestPassword123!"))
        with pytest.raises(ConstraintViolation):
            asyncio.run(auth_service.signup("dup@example.com", "TestPassword123!"))

    def test_login_wrong_password(self, auth_service):
        asyncio.run(auth_service.signup("bad@example.com", "TestPassword123!"))
        user, session = asyncio.run(auth_service.login("bad@example.com", "nope-nope"))
        assert user is None and session is None

    def test_authenticate_prefers_bearer(self, auth_service):
        user, session = asyncio.run(
            auth_service.signup("bearer@example.com", "TestPassword123!")
        )
        ctx = asyncio.run(auth_service.authenticate(f"Bearer {session.id}", None))
        assert ctx.user_id == user.id
        ctx = asyncio.run(auth_service.authenticate(None, session.id))
        assert ctx.session_id == session.id
        assert asyncio.run(auth_service.authenticate("Basic abc", None)) is None

    def test_expired_session_is_revoked(self, auth_service, memory_store):
        _, session = asyncio.run(
            auth_service.signup("old@example.com", "TestPassword123!")
        )
        session.expires_at = session.created_at - timedelta(minutes=1)
        assert asyncio.run(auth_service.resolve_session(session.id)) is None
        assert memory_store.get_session(session.id) is None

    def test_revoked_session_rejected(self, auth_service):
        _, session = asyncio.run(
            auth_service.signup("gone@example.com", "TestPassword123!")
        )
        asyncio.run(auth_service.revoke(session.id))
        assert asyncio.run(auth_service.resolve_session(session.id)) is None
