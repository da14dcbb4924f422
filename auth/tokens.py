"""
auth/tokens.py -- Password hashing and signed session tokens.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with
       different keys [K2]. The verification key is chosen from the token's
       own "kind" claim, so a refresh token presented where an access token
       is expected still has its signature checked against the refresh key
       and is then rejected as TOKEN_WRONG_KIND. Forging a kind claim needs
       the other kind's key.

  Validation order: revocation, signature, expiry, kind. The revocation
       lookup reads the jti from the unverified payload -- a dict lookup that
       rejects logged-out tokens before any HMAC work.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization for unknown usernames so response time
       does not reveal whether an account exists [C1].

Layer rule: no imports from api/. Settings are passed in, not read here.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JOSEError, jwt

from auth.errors import AuthError, ErrorCode
from auth.models import TokenClaims, TokenKind, TokenPair
from auth.revocation import RevocationRegistry

logger = logging.getLogger("authgate.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps passwords at
    128 characters, and registration requires 12 or more, so the usable range
    is well covered.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. A corrupt stored hash counts
    as a mismatch rather than an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.error("Stored password hash is not a valid bcrypt hash")
        return False


# Timing equalization dummy hash [C1]. Computed once at import so the first
# unknown-username login is not measurably slower than later ones.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token issuer / validator
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Mints and verifies access/refresh JWTs.

    Args:
        access_secret:   HS256 key for access tokens.
        refresh_secret:  HS256 key for refresh tokens. Must differ from access_secret.
        revocations:     Registry consulted before every validation.
        access_ttl:      Access token lifetime (minutes in practice).
        refresh_ttl:     Refresh token lifetime (days in practice).
        issuer:          Value of the "iss" claim; checked on validation.
        clock:           Source of "now" for issued_at/expires_at. Injected by
                         tests to mint already-expired tokens.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        revocations: RevocationRegistry,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        issuer: str = "authgate",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens need distinct signing keys")
        self._secrets = {TokenKind.ACCESS: access_secret, TokenKind.REFRESH: refresh_secret}
        self._ttls = {TokenKind.ACCESS: access_ttl, TokenKind.REFRESH: refresh_ttl}
        self.revocations = revocations
        self.issuer = issuer
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, revocations: RevocationRegistry) -> TokenIssuer:
        return cls(
            access_secret=settings.secret_key,
            refresh_secret=settings.refresh_secret_key,
            revocations=revocations,
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
            issuer=settings.token_issuer,
        )

    @property
    def access_ttl(self) -> timedelta:
        return self._ttls[TokenKind.ACCESS]

    def issue(self, subject_id: int, username: str, kind: TokenKind) -> str:
        """Return a signed token of the given kind. Raises SIGNING_FAILURE on error."""
        kind = TokenKind(kind)
        issued_at = self._clock()
        expires_at = issued_at + self._ttls[kind]
        payload = {
            "sub": str(subject_id),
            "username": username,
            "kind": kind.value,
            "jti": uuid.uuid4().hex,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.issuer,
        }
        try:
            return jwt.encode(payload, self._secrets[kind], algorithm=_ALGORITHM)
        except (JOSEError, TypeError, ValueError) as exc:
            raise AuthError(ErrorCode.SIGNING_FAILURE, f"could not sign {kind.value} token: {exc}") from exc

    def issue_pair(self, subject_id: int, username: str) -> TokenPair:
        return TokenPair(
            access_token=self.issue(subject_id, username, TokenKind.ACCESS),
            refresh_token=self.issue(subject_id, username, TokenKind.REFRESH),
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def validate(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        """Verify token and return its claims.

        Raises AuthError with, in precedence order: TOKEN_REVOKED,
        TOKEN_MALFORMED, TOKEN_EXPIRED, TOKEN_WRONG_KIND.
        """
        expected_kind = TokenKind(expected_kind)
        try:
            unverified = jwt.get_unverified_claims(token)
        except JOSEError as exc:
            raise AuthError(ErrorCode.TOKEN_MALFORMED, f"unreadable token: {exc}") from exc

        token_id = unverified.get("jti")
        if isinstance(token_id, str) and self.revocations.is_revoked(token_id):
            raise AuthError(ErrorCode.TOKEN_REVOKED, "token has been revoked")

        try:
            declared_kind = TokenKind(unverified.get("kind"))
        except ValueError as exc:
            raise AuthError(ErrorCode.TOKEN_MALFORMED, "token has no valid kind claim") from exc

        try:
            payload = jwt.decode(
                token,
                self._secrets[declared_kind],
                algorithms=[_ALGORITHM],
                issuer=self.issuer,
            )
        except ExpiredSignatureError as exc:
            raise AuthError(ErrorCode.TOKEN_EXPIRED, "token has expired") from exc
        except JOSEError as exc:
            raise AuthError(ErrorCode.TOKEN_MALFORMED, f"token failed verification: {exc}") from exc

        claims = _payload_to_claims(payload)
        if claims.kind is not expected_kind:
            raise AuthError(
                ErrorCode.TOKEN_WRONG_KIND,
                f"expected {expected_kind.value} token, got {claims.kind.value}",
            )
        return claims

    def revoke(self, claims: TokenClaims) -> None:
        """Blacklist the token behind claims until it would have expired anyway."""
        self.revocations.revoke(claims.token_id, claims.expires_at)


def _payload_to_claims(payload: dict) -> TokenClaims:
    try:
        return TokenClaims(
            subject_id=int(payload["sub"]),
            username=str(payload["username"]),
            kind=TokenKind(payload["kind"]),
            token_id=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            issuer=str(payload["iss"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthError(ErrorCode.TOKEN_MALFORMED, f"token is missing required claims: {exc}") from exc
