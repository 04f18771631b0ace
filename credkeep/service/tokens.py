from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from credkeep.config import Settings
from credkeep.logging import get_logger
from credkeep.service.errors import InvalidToken, TokenExpired
from credkeep.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    RefreshToken,
    utcnow,
)

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


def opaque_token() -> str:
    """256 bits from the OS CSPRNG, URL-safe so it can travel in links and cookies."""
    return secrets.token_urlsafe(32)


class TokenIssuer:
    """Mints signed access tokens and opaque store-backed tokens.

    Access tokens are HS256 JWTs whose validity is decided by signature and
    ``exp`` alone. Refresh, reset and verification tokens carry no claims;
    the caller persists the returned record and the store is the source of
    truth for them.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    @property
    def access_cookie_max_age(self) -> int:
        return int(self.access_ttl.total_seconds())

    @property
    def refresh_cookie_max_age(self) -> int:
        return int(self.refresh_ttl.total_seconds())

    # access tokens

    def issue_access_token(self, email: str, *, now: Optional[datetime] = None) -> str:
        issued = now or utcnow()
        payload = {
            "sub": email,
            "iat": int(issued.timestamp()),
            "exp": int((issued + self.access_ttl).timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "typ": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def decode_access_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> dict[str, Any]:
        """Return the claims of a valid access token.

        Raises:
            InvalidToken: malformed token, wrong algorithm, bad signature or claims
            TokenExpired: signature is valid but ``exp`` has passed
        """
        if not token:
            raise InvalidToken("Access token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidToken("Malformed access token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken("Malformed access token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken("Unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidToken("Invalid token signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken("Malformed access token")
        if not isinstance(payload, dict):
            raise InvalidToken("Malformed access token")
        if payload.get("typ") != ACCESS_TOKEN_TYPE:
            raise InvalidToken("Not an access token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidToken("Unexpected token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidToken("Unexpected token audience")
        if not payload.get("sub"):
            raise InvalidToken("Token has no subject")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken("Token has no expiry")
        if (now or utcnow()).timestamp() > exp_ts:
            raise TokenExpired("Access token has expired")
        return payload

    # opaque tokens

    def new_refresh_token(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> RefreshToken:
        created = now or utcnow()
        return RefreshToken(
            token=opaque_token(),
            user_id=user_id,
            expiry_date=created + self.refresh_ttl,
            created_at=created,
        )

    def new_password_reset_token(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> PasswordResetToken:
        created = now or utcnow()
        return PasswordResetToken(
            token=opaque_token(),
            user_id=user_id,
            expiry_date=created
            + timedelta(minutes=self.settings.password_reset_ttl_minutes),
            created_at=created,
        )

    def new_email_verification_token(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> EmailVerificationToken:
        created = now or utcnow()
        return EmailVerificationToken(
            token=opaque_token(),
            user_id=user_id,
            expiry_date=created
            + timedelta(hours=self.settings.email_verification_ttl_hours),
            created_at=created,
        )

    # JWT plumbing

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        try:
            return base64.urlsafe_b64decode(segment + padding)
        except (ValueError, TypeError) as exc:
            raise ValueError("invalid base64 segment") from exc

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"
