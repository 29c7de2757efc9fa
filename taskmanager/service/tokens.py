from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from taskmanager.config import Settings
from taskmanager.logging import get_logger
from taskmanager.service.errors import InvalidTokenError
from taskmanager.storage.models import User

logger = get_logger(__name__)

# 64 random bytes, hex encoded
REFRESH_TOKEN_BYTES = 64


class TokenService:
    """Mints and checks access tokens (HS256) and opaque refresh tokens.

    Access tokens are signed with a per-user key derived from the server secret
    and the user's ``token_salt``. The key is recomputed on every call, so a new
    ``JWT_SECRET`` invalidates every outstanding access token at once.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def signing_key(self, user: User) -> bytes:
        return hmac.new(
            self.settings.jwt_secret.encode(),
            user.token_salt.encode(),
            hashlib.sha256,
        ).digest()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, key: bytes, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], key: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(key, signing_input)}"

    def _split(self, token: str) -> Tuple[str, str, str]:
        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3 or not all(parts):
            raise InvalidTokenError("jwt malformed")
        return parts[0], parts[1], parts[2]

    def _read_payload(self, payload_b64: str) -> dict[str, Any]:
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("jwt malformed") from exc
        if not isinstance(payload, dict):
            raise InvalidTokenError("jwt malformed")
        return payload

    def issue_access_token(
        self, user: User, *, now: Optional[datetime] = None
    ) -> Tuple[str, datetime]:
        issued_at = now or self._now()
        expires_at = issued_at + timedelta(
            minutes=self.settings.access_token_ttl_minutes
        )
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload, self.signing_key(user)), expires_at

    def peek_subject(self, token: str) -> Optional[str]:
        """Return the unverified ``sub`` claim, or None if the token is unreadable."""

        try:
            _, payload_b64, _ = self._split(token)
            subject = self._read_payload(payload_b64).get("sub")
        except InvalidTokenError:
            return None
        return subject if isinstance(subject, str) and subject else None

    def verify_access_token(
        self, token: str, user: User, *, now: Optional[datetime] = None
    ) -> str:
        header_b64, payload_b64, sig_b64 = self._split(token)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("jwt malformed") from exc
        # Reject anything but HS256 to rule out algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError("invalid algorithm")

        expected_sig = self._sign(self.signing_key(user), f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise InvalidTokenError("invalid signature")

        payload = self._read_payload(payload_b64)
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("jwt issuer invalid")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("jwt audience invalid")
        if payload.get("token_type") != "access":
            raise InvalidTokenError("wrong token type")
        if payload.get("sub") != user.id:
            raise InvalidTokenError("jwt subject invalid")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError("jwt expiry missing") from exc
        current = now or self._now()
        if exp_ts <= current.timestamp():
            raise InvalidTokenError("jwt expired")
        return user.id

    def issue_refresh_token(
        self, *, now: Optional[datetime] = None
    ) -> Tuple[str, datetime]:
        issued_at = now or self._now()
        expires_at = issued_at + timedelta(
            minutes=self.settings.refresh_token_ttl_minutes
        )
        return secrets.token_hex(REFRESH_TOKEN_BYTES), expires_at

    def has_expired(self, expires_at: datetime, *, now: Optional[datetime] = None) -> bool:
        current = now or self._now()
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= current
