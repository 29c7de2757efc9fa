from __future__ import annotations

import re
import secrets
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taskmanager.config import Settings
from taskmanager.logging import get_logger
from taskmanager.service.errors import (
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidTokenError,
    SessionInvalidError,
    ValidationError,
)
from taskmanager.service.tokens import TokenService
from taskmanager.storage.errors import ConstraintViolation
from taskmanager.storage.models import Session, User

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(value: str) -> str:
    """Strip, lower-case and NFKC-normalize an email, raising ValueError if malformed."""

    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def check_password_length(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("password must be a string")
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


class AuthStore(Protocol):
    def create_user(self, email: str, password_hash: str, token_salt: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str) -> None: ...

    def add_session(self, user_id: str, token: str, expires_at: datetime) -> Session: ...

    def find_user_by_id_and_refresh_token(
        self, user_id: str, token: str
    ) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str


class AuthService:
    """Credential checks, refresh sessions and the two request gates."""

    def __init__(self, store: AuthStore, tokens: TokenService, settings: Settings) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both failure paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    # credentials
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def create_user(self, email: str, password: str) -> User:
        try:
            normalized = normalize_email(email)
            check_password_length(password)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        # Hash before the record exists so no stored user ever lacks one
        password_hash = self._hash_password(password)
        try:
            user = self.store.create_user(
                normalized, password_hash, secrets.token_hex(32)
            )
        except ConstraintViolation as exc:
            self.logger.info("signup_duplicate_email")
            raise DuplicateEmailError(detail={"field": "email"}) from exc
        self.logger.info("user_created", user_id=user.id)
        return user

    def find_by_credentials(self, email: str, password: str) -> User:
        try:
            normalized = normalize_email(email)
        except ValueError:
            normalized = None
        user = self.store.get_user_by_email(normalized) if normalized else None
        if user is None:
            self._verify_hash(self._dummy_hash, password or "")
            self.logger.warning("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()
        if not self._verify_hash(user.password_hash, password or ""):
            self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        return user

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self.store.get_user(user_id)
        if not user or not self._verify_hash(user.password_hash, current_password):
            raise InvalidCredentialsError()
        try:
            check_password_length(new_password)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        self.store.save_password(user.id, self._hash_password(new_password))
        self.logger.info("password_changed", user_id=user.id)

    # sessions
    def add_session(self, user: User) -> Session:
        token, expires_at = self.tokens.issue_refresh_token()
        session = self.store.add_session(user.id, token, expires_at)
        self.logger.info(
            "session_created", user_id=user.id, expires_at=expires_at.isoformat()
        )
        return session

    def _issue(self, user: User) -> Tuple[Session, dict[str, str]]:
        # The refresh session is persisted before any access token leaves the server
        session = self.add_session(user)
        access_token, access_exp = self.tokens.issue_access_token(user)
        return session, {
            "access_token": access_token,
            "refresh_token": session.token,
            "access_expires_at": access_exp.isoformat(),
            "refresh_expires_at": session.expires_at.isoformat(),
        }

    async def signup(self, email: str, password: str) -> tuple[User, Session, dict[str, str]]:
        user = self.create_user(email, password)
        session, tokens = self._issue(user)
        return user, session, tokens

    async def login(self, email: str, password: str) -> tuple[User, Session, dict[str, str]]:
        user = self.find_by_credentials(email, password)
        session, tokens = self._issue(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, session, tokens

    # gates
    async def authenticate_access(self, token: Optional[str]) -> AuthContext:
        if not token:
            raise InvalidTokenError("access token missing")
        subject = self.tokens.peek_subject(token)
        if not subject:
            raise InvalidTokenError("jwt malformed")
        user = self.store.get_user(subject)
        if not user:
            raise InvalidTokenError("invalid signature")
        user_id = self.tokens.verify_access_token(token, user)
        return AuthContext(user_id=user_id)

    async def resolve_refresh_session(
        self, user_id: Optional[str], refresh_token: Optional[str]
    ) -> tuple[User, Session]:
        user = None
        if user_id and refresh_token:
            user = self.store.find_user_by_id_and_refresh_token(user_id, refresh_token)
        session = user.find_session(refresh_token) if user else None
        if user is None or session is None:
            self.logger.warning("refresh_session_rejected", reason="not_found")
            raise SessionInvalidError("user not found", reason="not_found")
        # A found session is not enough; it must also be unexpired
        if self.tokens.has_expired(session.expires_at):
            self.logger.warning(
                "refresh_session_rejected", reason="expired", user_id=user.id
            )
            raise SessionInvalidError("session expired or invalid", reason="expired")
        return user, session

