"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - Access issue/validate round trip preserves subject and username
  - Cross-kind validation -> TOKEN_WRONG_KIND
  - Expired, tampered, forged-kind, garbage and foreign-issuer tokens
  - Revoked tokens are rejected before any other check
  - Signing failures surface as SIGNING_FAILURE
  - Password hashing helpers
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt
from jose.exceptions import JWSError

from auth.errors import AuthError, ErrorCode
from auth.models import TokenKind
from auth.revocation import RevocationRegistry
from auth.tokens import TokenIssuer, hash_password, verify_password

ACCESS_KEY = "access-key-" + "x" * 32
REFRESH_KEY = "refresh-key-" + "y" * 32


def _issuer(revocations: RevocationRegistry, **kwargs) -> TokenIssuer:
    return TokenIssuer(ACCESS_KEY, REFRESH_KEY, revocations, **kwargs)


def _code(exc_info: pytest.ExceptionInfo) -> ErrorCode:
    return exc_info.value.code


class TestIssueAndValidate:
    def test_access_round_trip(self, revocations):
        issuer = _issuer(revocations)
        token = issuer.issue(42, "alice", TokenKind.ACCESS)
        claims = issuer.validate(token, TokenKind.ACCESS)
        assert claims.subject_id == 42
        assert claims.username == "alice"
        assert claims.kind is TokenKind.ACCESS
        assert claims.issuer == "authgate"
        assert claims.expires_at - claims.issued_at == timedelta(minutes=15)

    def test_refresh_lifetime_is_days(self, revocations):
        issuer = _issuer(revocations)
        claims = issuer.validate(issuer.issue(1, "alice", TokenKind.REFRESH), TokenKind.REFRESH)
        assert claims.expires_at - claims.issued_at == timedelta(days=7)

    def test_every_token_gets_a_unique_id(self, revocations):
        issuer = _issuer(revocations)
        ids = {issuer.validate(issuer.issue(1, "alice", "access"), "access").token_id for _ in range(5)}
        assert len(ids) == 5

    def test_access_token_validated_as_refresh_is_wrong_kind(self, revocations):
        issuer = _issuer(revocations)
        token = issuer.issue(42, "alice", TokenKind.ACCESS)
        with pytest.raises(AuthError) as exc_info:
            issuer.validate(token, TokenKind.REFRESH)
        assert _code(exc_info) is ErrorCode.TOKEN_WRONG_KIND

    def test_refresh_token_validated_as_access_is_wrong_kind(self, revocations):
        issuer = _issuer(revocations)
        token = issuer.issue(42, "alice", TokenKind.REFRESH)
        with pytest.raises(AuthError) as exc_info:
            issuer.validate(token, TokenKind.ACCESS)
        assert _code(exc_info) is ErrorCode.TOKEN_WRONG_KIND

    def test_issue_pair(self, revocations):
        issuer = _issuer(revocations)
        pair = issuer.issue_pair(7, "bob")
        assert pair.expires_in == 900
        assert issuer.validate(pair.access_token, TokenKind.ACCESS).subject_id == 7
        assert issuer.validate(pair.refresh_token, TokenKind.REFRESH).subject_id == 7

    def test_equal_keys_rejected(self, revocations):
        with pytest.raises(ValueError):
            TokenIssuer(ACCESS_KEY, ACCESS_KEY, revocations)


class TestRejections:
    def test_expired_token(self, revocations):
        past = datetime.now(timezone.utc) - timedelta(days=1)
        minted = _issuer(revocations, clock=lambda: past).issue(1, "alice", TokenKind.ACCESS)
        with pytest.raises(AuthError) as exc_info:
            _issuer(revocations).validate(minted, TokenKind.ACCESS)
        assert _code(exc_info) is ErrorCode.TOKEN_EXPIRED

    def test_expired_token_of_wrong_kind_reports_expiry_first(self, revocations):
        past = datetime.now(timezone.utc) - timedelta(days=30)
        minted = _issuer(revocations, clock=lambda: past).issue(1, "alice", TokenKind.REFRESH)
        with pytest.raises(AuthError) as exc_info:
            _issuer(revocations).validate(minted, TokenKind.ACCESS)
        assert _code(exc_info) is ErrorCode.TOKEN_EXPIRED

    def test_garbage_is_malformed(self, revocations):
        with pytest.raises(AuthError) as exc_info:
            _issuer(revocations).validate("not-a-token", TokenKind.ACCESS)
        assert _code(exc_info) is ErrorCode.TOKEN_MALFORMED

    def test_tampered_signature_is_malformed(self, revocations):
        issuer = _issuer(revocations)
        token = issuer.issue(1, "alice", TokenKind.ACCESS)
        header, payload, signature = token.split(".")
        flipped = ("A" if signature[0] != "A" else "B") + signature[1:]
        with pytest.raises(AuthError) as exc_info:
            issuer.validate(f"{header}.{payload}.{flipped}", TokenKind.ACCESS)
        assert _code(exc_info) is ErrorCode.TOKEN_MALFORMED

    def test_forged_refresh_kind_signed_with_access_key_is_malformed(self, revocations):
        """Relabelling an access token as refresh does not get it past the refresh key."""
        now = int(datetime.now(timezone.utc).timestamp())
        forged = jwt.encode(
            {
                "sub": "1",
                "username": "alice",
                "kind": "refresh",
                "jti": "forged",
                "iat": now,
                "exp": now + 600,
                "iss": "authgate",
            },
            ACCESS_KEY,
            algorithm="HS256",
        )
        with pytest.raises(AuthError) as exc_info:
            _issuer(revocations).validate(forged, TokenKind.REFRESH)
        assert _code(exc_info) is ErrorCode.TOKEN_MALFORMED

    def test_foreign_issuer_is_malformed(self, revocations):
        token = _issuer(revocations, issuer="someone-else").issue(1, "alice", TokenKind.ACCESS)
        with pytest.raises(AuthError) as exc_info:
            _issuer(revocations).validate(token, TokenKind.ACCESS)
        assert _code(exc_info) is ErrorCode.TOKEN_MALFORMED

    def test_missing_kind_claim_is_malformed(self, revocations):
        now = int(datetime.now(timezone.utc).timestamp())
        token = jwt.encode({"sub": "1", "jti": "x", "exp": now + 60}, ACCESS_KEY, algorithm="HS256")
        with pytest.raises(AuthError) as exc_info:
            _issuer(revocations).validate(token, TokenKind.ACCESS)
        assert _code(exc_info) is ErrorCode.TOKEN_MALFORMED


class TestRevocation:
    def test_revoked_token_rejected(self, revocations):
        issuer = _issuer(revocations)
        token = issuer.issue(1, "alice", TokenKind.ACCESS)
        issuer.revoke(issuer.validate(token, TokenKind.ACCESS))
        with pytest.raises(AuthError) as exc_info:
            issuer.validate(token, TokenKind.ACCESS)
        assert _code(exc_info) is ErrorCode.TOKEN_REVOKED

    def test_revocation_takes_precedence_over_wrong_kind(self, revocations):
        issuer = _issuer(revocations)
        token = issuer.issue(1, "alice", TokenKind.ACCESS)
        issuer.revoke(issuer.validate(token, TokenKind.ACCESS))
        with pytest.raises(AuthError) as exc_info:
            issuer.validate(token, TokenKind.REFRESH)
        assert _code(exc_info) is ErrorCode.TOKEN_REVOKED

    def test_revoking_one_token_leaves_others_valid(self, revocations):
        issuer = _issuer(revocations)
        first = issuer.issue(1, "alice", TokenKind.ACCESS)
        second = issuer.issue(1, "alice", TokenKind.ACCESS)
        issuer.revoke(issuer.validate(first, TokenKind.ACCESS))
        assert issuer.validate(second, TokenKind.ACCESS).username == "alice"


class TestSigningFailure:
    def test_signing_error_is_tagged(self, revocations, monkeypatch):
        def broken_encode(*args, **kwargs):
            raise JWSError("key rejected")

        monkeypatch.setattr("auth.tokens.jwt.encode", broken_encode)
        with pytest.raises(AuthError) as exc_info:
            _issuer(revocations).issue(1, "alice", TokenKind.ACCESS)
        assert _code(exc_info) is ErrorCode.SIGNING_FAILURE
        assert exc_info.value.is_internal


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = hash_password("Secret-Value-1")
        assert hashed != "Secret-Value-1"
        assert verify_password("Secret-Value-1", hashed)
        assert not verify_password("secret-value-1", hashed)

    def test_corrupt_hash_is_a_mismatch(self):
        assert not verify_password("anything", "not-a-bcrypt-hash")
