"""
auth/errors.py -- Tagged error type for every authentication rejection.

One exception class, many codes. Callers match on exc.code rather than on
the exception type, so adding a new rejection never requires a new except
clause at every call site.

Grouping:
  CREDENTIAL_REJECTIONS -- collapsed to one generic client message so an
      attacker cannot tell "no such user" from "wrong password" from
      "account locked".
  TOKEN_REJECTIONS -- collapsed to one generic "invalid token" message.
  INTERNAL_FAILURES -- logged in full, surfaced as a generic 500.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum


class ErrorCode(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_MALFORMED = "token_malformed"
    TOKEN_WRONG_KIND = "token_wrong_kind"
    SIGNING_FAILURE = "signing_failure"
    RATE_LIMITED = "rate_limited"
    STORAGE_FAILURE = "storage_failure"
    DEADLINE_EXCEEDED = "deadline_exceeded"


CREDENTIAL_REJECTIONS = frozenset(
    {ErrorCode.INVALID_CREDENTIALS, ErrorCode.ACCOUNT_LOCKED, ErrorCode.ACCOUNT_INACTIVE}
)
TOKEN_REJECTIONS = frozenset(
    {ErrorCode.TOKEN_EXPIRED, ErrorCode.TOKEN_REVOKED, ErrorCode.TOKEN_MALFORMED, ErrorCode.TOKEN_WRONG_KIND}
)
INTERNAL_FAILURES = frozenset({ErrorCode.SIGNING_FAILURE, ErrorCode.STORAGE_FAILURE})


class AuthError(Exception):
    """A rejection from the authentication core.

    Attributes:
        code:    ErrorCode tag -- the only thing callers should branch on.
        message: Internal description. Never sent to clients verbatim for
                 credential, token or internal-failure codes.
        detail:  Code-specific extras (e.g. locked_until and reason for
                 ACCOUNT_LOCKED).
    """

    def __init__(self, code: ErrorCode, message: str = "", **detail) -> None:
        super().__init__(message or code.value)
        self.code = code
        self.message = message or code.value
        self.detail = detail

    def __repr__(self) -> str:
        return f"AuthError({self.code.value!r}, {self.message!r})"

    @property
    def is_credential_rejection(self) -> bool:
        return self.code in CREDENTIAL_REJECTIONS

    @property
    def is_token_rejection(self) -> bool:
        return self.code in TOKEN_REJECTIONS

    @property
    def is_internal(self) -> bool:
        return self.code in INTERNAL_FAILURES

    # ------------------------------------------------------------------
    # Constructors for the variants that carry extra data
    # ------------------------------------------------------------------

    @classmethod
    def account_locked(cls, locked_until: datetime | None, reason: str | None) -> AuthError:
        until = locked_until.isoformat() if locked_until else "unknown"
        return cls(
            ErrorCode.ACCOUNT_LOCKED,
            f"account locked until {until}: {reason or 'no reason recorded'}",
            locked_until=locked_until,
            reason=reason,
        )

    @classmethod
    def storage_failure(cls, operation: str, cause: BaseException) -> AuthError:
        return cls(ErrorCode.STORAGE_FAILURE, f"{operation} failed: {cause}", operation=operation)
