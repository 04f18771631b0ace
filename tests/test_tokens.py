"""Tests for access-token signing and opaque token minting."""

import base64
import json
from datetime import timedelta

import pytest

from credkeep.config import Settings
from credkeep.service.errors import InvalidToken, TokenExpired
from credkeep.service.tokens import TokenIssuer, opaque_token
from credkeep.storage.models import utcnow


@pytest.fixture
def issuer():
    return TokenIssuer(
        Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")
    )


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestAccessTokens:
    def test_claims(self, issuer):
        now = utcnow()
        claims = issuer.decode_access_token(issuer.issue_access_token("a@example.com", now=now))

        assert claims["sub"] == "a@example.com"
        assert claims["typ"] == "access"
        assert claims["iss"] == "credkeep"
        assert claims["aud"] == "credkeep-clients"
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_each_token_is_unique(self, issuer):
        now = utcnow()
        first = issuer.issue_access_token("a@example.com", now=now)
        second = issuer.issue_access_token("a@example.com", now=now)

        assert first != second

    def test_expired_token(self, issuer):
        token = issuer.issue_access_token("a@example.com", now=utcnow() - timedelta(minutes=16))

        with pytest.raises(TokenExpired):
            issuer.decode_access_token(token)

    def test_token_valid_until_expiry(self, issuer):
        issued = utcnow()
        token = issuer.issue_access_token("a@example.com", now=issued)

        claims = issuer.decode_access_token(token, now=issued + timedelta(minutes=14))

        assert claims["sub"] == "a@example.com"

    def test_tampered_payload_is_rejected(self, issuer):
        header, _, signature = issuer.issue_access_token("a@example.com").split(".")
        forged = _segment(
            {
                "sub": "admin@example.com",
                "typ": "access",
                "iss": "credkeep",
                "aud": "credkeep-clients",
                "exp": int((utcnow() + timedelta(hours=1)).timestamp()),
            }
        )

        with pytest.raises(InvalidToken):
            issuer.decode_access_token(f"{header}.{forged}.{signature}")

    def test_other_secret_is_rejected(self, issuer):
        other = TokenIssuer(Settings(jwt_secret="Another-Secret-Key_entirely-0123456789!"))

        with pytest.raises(InvalidToken):
            issuer.decode_access_token(other.issue_access_token("a@example.com"))

    def test_alg_none_is_rejected(self, issuer):
        _, payload, _ = issuer.issue_access_token("a@example.com").split(".")
        header = _segment({"alg": "none", "typ": "JWT"})

        with pytest.raises(InvalidToken):
            issuer.decode_access_token(f"{header}.{payload}.")

    @pytest.mark.parametrize("signature", ["\u00e9", "sig\u00e9nature", "\u0661\u0662"])
    def test_non_ascii_signature_is_rejected(self, issuer, signature):
        header, payload, _ = issuer.issue_access_token("a@example.com").split(".")

        with pytest.raises(InvalidToken):
            issuer.decode_access_token(f"{header}.{payload}.{signature}")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.###"])
    def test_malformed_tokens(self, issuer, token):
        with pytest.raises(InvalidToken):
            issuer.decode_access_token(token)


class TestOpaqueTokens:
    def test_opaque_tokens_are_url_safe_and_unique(self):
        tokens = {opaque_token() for _ in range(100)}

        assert len(tokens) == 100
        assert all(len(t) >= 43 for t in tokens)
        assert all(set(t) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_") for t in tokens)

    def test_lifetimes(self, issuer):
        now = utcnow()

        refresh = issuer.new_refresh_token("user-1", now=now)
        reset = issuer.new_password_reset_token("user-1", now=now)
        verification = issuer.new_email_verification_token("user-1", now=now)

        assert refresh.expiry_date - now == timedelta(days=7)
        assert reset.expiry_date - now == timedelta(hours=1)
        assert reset.used is False
        assert verification.expiry_date - now == timedelta(hours=24)

    def test_cookie_max_ages(self, issuer):
        assert issuer.access_cookie_max_age == 900
        assert issuer.refresh_cookie_max_age == 604800
