"""Unit tests for auth service.

Tests for:
- Account creation and password hashing
- Credential checks
- Refresh sessions and the two gates
- Password change
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from taskmanager.config import Settings
from taskmanager.service.auth import AuthService, normalize_email
from taskmanager.service.errors import (
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidTokenError,
    SessionInvalidError,
    ValidationError,
)
from taskmanager.service.tokens import TokenService
from taskmanager.storage.memory import MemoryStore


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def tokens(settings):
    return TokenService(settings)


@pytest.fixture
def auth_service(memory_store, tokens, settings):
    return AuthService(store=memory_store, tokens=tokens, settings=settings)


@pytest.fixture
def test_user(auth_service):
    return auth_service.create_user("test@example.com", "TestPassword123!")


class TestEmailNormalization:
    def test_strips_and_lowercases(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize(
        "value", ["", "no-at-sign", "@example.com", "alice@", "alice@localhost", "a b@example.com"]
    )
    def test_rejects_malformed(self, value):
        with pytest.raises(ValueError):
            normalize_email(value)


class TestCreateUser:
    def test_password_is_hashed_not_stored_plaintext(self, auth_service, memory_store):
        user = auth_service.create_user("a@x.com", "secret123")
        stored = memory_store.get_user(user.id)
        assert stored.password_hash != "secret123"
        assert stored.password_hash.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, auth_service):
        first = auth_service.create_user("one@example.com", "TestPassword123!")
        second = auth_service.create_user("two@example.com", "TestPassword123!")
        assert first.password_hash != second.password_hash

    def test_each_user_gets_own_token_salt(self, auth_service):
        first = auth_service.create_user("one@example.com", "TestPassword123!")
        second = auth_service.create_user("two@example.com", "TestPassword123!")
        assert first.token_salt and second.token_salt
        assert first.token_salt != second.token_salt

    def test_email_normalized_before_storage(self, auth_service):
        user = auth_service.create_user("  Mixed@Example.com", "TestPassword123!")
        assert user.email == "mixed@example.com"

    def test_duplicate_email_rejected(self, auth_service, test_user):
        with pytest.raises(DuplicateEmailError) as excinfo:
            auth_service.create_user("TEST@example.com", "AnotherPassword1")
        assert excinfo.value.status_code == 409
        assert excinfo.value.error_code == "conflict"

    def test_invalid_email_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.create_user("not-an-email", "TestPassword123!")

    @pytest.mark.parametrize("password", ["short", "x" * 129])
    def test_password_length_enforced(self, auth_service, password):
        with pytest.raises(ValidationError):
            auth_service.create_user("user@example.com", password)

    def test_no_user_persisted_on_validation_failure(self, auth_service, memory_store):
        with pytest.raises(ValidationError):
            auth_service.create_user("user@example.com", "short")
        assert memory_store.get_user_by_email("user@example.com") is None


class TestFindByCredentials:
    def test_correct_password(self, auth_service, test_user):
        found = auth_service.find_by_credentials("test@example.com", "TestPassword123!")
        assert found.id == test_user.id

    def test_email_lookup_is_case_insensitive(self, auth_service, test_user):
        found = auth_service.find_by_credentials("TEST@Example.com", "TestPassword123!")
        assert found.id == test_user.id

    def test_wrong_password_and_unknown_email_fail_identically(self, auth_service, test_user):
        with pytest.raises(InvalidCredentialsError) as wrong_password:
            auth_service.find_by_credentials("test@example.com", "WrongPassword!")
        with pytest.raises(InvalidCredentialsError) as unknown_email:
            auth_service.find_by_credentials("nobody@example.com", "TestPassword123!")
        assert type(wrong_password.value) is type(unknown_email.value)
        assert wrong_password.value.message == unknown_email.value.message
        assert wrong_password.value.status_code == unknown_email.value.status_code == 400
        assert wrong_password.value.detail == unknown_email.value.detail

    def test_malformed_email_fails_like_unknown_email(self, auth_service):
        with pytest.raises(InvalidCredentialsError):
            auth_service.find_by_credentials("garbage", "TestPassword123!")


class TestSessions:
    def test_signup_persists_session_and_returns_tokens(self, auth_service, memory_store):
        user, session, tokens = asyncio.run(auth_service.signup("new@example.com", "TestPassword123!"))
        stored = memory_store.get_user(user.id)
        assert [s.token for s in stored.sessions] == [session.token]
        assert tokens["refresh_token"] == session.token
        assert auth_service.tokens.verify_access_token(tokens["access_token"], stored) == user.id

    def test_add_session_leaves_password_hash_untouched(self, auth_service, memory_store, test_user):
        before = memory_store.get_user(test_user.id).password_hash
        auth_service.add_session(test_user)
        auth_service.add_session(test_user)
        after = memory_store.get_user(test_user.id)
        assert after.password_hash == before
        assert len(after.sessions) == 2

    def test_login_appends_new_session_each_time(self, auth_service, memory_store, test_user):
        _, first, _ = asyncio.run(auth_service.login("test@example.com", "TestPassword123!"))
        _, second, _ = asyncio.run(auth_service.login("test@example.com", "TestPassword123!"))
        assert first.token != second.token
        tokens = [s.token for s in memory_store.get_user(test_user.id).sessions]
        assert tokens == [first.token, second.token]

    def test_login_with_bad_password_creates_no_session(self, auth_service, memory_store, test_user):
        with pytest.raises(InvalidCredentialsError):
            asyncio.run(auth_service.login("test@example.com", "nope-nope"))
        assert memory_store.get_user(test_user.id).sessions == []


class TestAccessGate:
    def test_valid_token_resolves_user(self, auth_service, test_user):
        token, _ = auth_service.tokens.issue_access_token(test_user)
        ctx = asyncio.run(auth_service.authenticate_access(token))
        assert ctx.user_id == test_user.id

    def test_missing_token_rejected(self, auth_service):
        with pytest.raises(InvalidTokenError):
            asyncio.run(auth_service.authenticate_access(None))

    def test_token_for_unknown_user_rejected(self, auth_service, memory_store, test_user):
        token, _ = auth_service.tokens.issue_access_token(test_user)
        memory_store.users.clear()
        with pytest.raises(InvalidTokenError):
            asyncio.run(auth_service.authenticate_access(token))

    def test_expired_token_rejected_with_detail(self, auth_service, test_user):
        issued = datetime.now(timezone.utc) - timedelta(hours=1)
        token, _ = auth_service.tokens.issue_access_token(test_user, now=issued)
        with pytest.raises(InvalidTokenError) as excinfo:
            asyncio.run(auth_service.authenticate_access(token))
        assert "expired" in excinfo.value.message


class TestRefreshGate:
    def test_valid_session_resolves(self, auth_service, test_user):
        session = auth_service.add_session(test_user)
        user, found = asyncio.run(
            auth_service.resolve_refresh_session(test_user.id, session.token)
        )
        assert user.id == test_user.id
        assert found.token == session.token

    def test_unknown_token_rejected_as_not_found(self, auth_service, test_user):
        auth_service.add_session(test_user)
        with pytest.raises(SessionInvalidError) as excinfo:
            asyncio.run(auth_service.resolve_refresh_session(test_user.id, "0" * 128))
        assert excinfo.value.reason == "not_found"
        assert excinfo.value.message == "user not found"
        assert excinfo.value.status_code == 401

    def test_token_of_other_user_rejected(self, auth_service, test_user):
        other = auth_service.create_user("other@example.com", "OtherPassword1")
        session = auth_service.add_session(other)
        with pytest.raises(SessionInvalidError) as excinfo:
            asyncio.run(auth_service.resolve_refresh_session(test_user.id, session.token))
        assert excinfo.value.reason == "not_found"

    @pytest.mark.parametrize("user_id,token", [(None, "abc"), ("someone", None), ("", "")])
    def test_missing_headers_rejected(self, auth_service, user_id, token):
        with pytest.raises(SessionInvalidError):
            asyncio.run(auth_service.resolve_refresh_session(user_id, token))

    def test_expired_session_rejected_even_though_found(self, auth_service, memory_store, test_user):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        memory_store.add_session(test_user.id, "f" * 128, past)
        # The record is there...
        assert memory_store.find_user_by_id_and_refresh_token(test_user.id, "f" * 128)
        # ...but the gate still refuses it
        with pytest.raises(SessionInvalidError) as excinfo:
            asyncio.run(auth_service.resolve_refresh_session(test_user.id, "f" * 128))
        assert excinfo.value.reason == "expired"
        assert excinfo.value.detail == {"reason": "expired"}

    def test_expired_session_does_not_block_others(self, auth_service, memory_store, test_user):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        memory_store.add_session(test_user.id, "e" * 128, past)
        live = auth_service.add_session(test_user)
        user, _ = asyncio.run(auth_service.resolve_refresh_session(test_user.id, live.token))
        assert user.id == test_user.id


class TestPasswordChange:
    def test_change_password_rehashes(self, auth_service, memory_store, test_user):
        before = memory_store.get_user(test_user.id).password_hash
        asyncio.run(auth_service.change_password(test_user.id, "TestPassword123!", "BrandNewPass1"))
        assert memory_store.get_user(test_user.id).password_hash != before
        assert auth_service.find_by_credentials("test@example.com", "BrandNewPass1").id == test_user.id
        with pytest.raises(InvalidCredentialsError):
            auth_service.find_by_credentials("test@example.com", "TestPassword123!")

    def test_change_password_requires_current(self, auth_service, test_user):
        with pytest.raises(InvalidCredentialsError):
            asyncio.run(auth_service.change_password(test_user.id, "wrong-one", "BrandNewPass1"))

    def test_change_password_validates_new(self, auth_service, test_user):
        with pytest.raises(ValidationError):
            asyncio.run(auth_service.change_password(test_user.id, "TestPassword123!", "short"))
