"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these types only own the domain shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AccountStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    INACTIVE = "inactive"
    DELETED = "deleted"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class Account:
    """A local account that can authenticate with username and password.

    status transitions are one-way except LOCKED -> ACTIVE (explicit unlock).
    INACTIVE and DELETED are terminal. A LOCKED account whose locked_until has
    passed is treated as unlocked even before the row is rewritten.

    All datetimes are timezone-aware UTC.
    """

    username: str
    email: str
    password_hash: str
    status: AccountStatus = AccountStatus.ACTIVE
    id: int | None = None
    locked_until: datetime | None = None
    lock_reason: str | None = None
    last_activity_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of a session token. Never persisted."""

    subject_id: int
    username: str
    kind: TokenKind
    token_id: str  # jti, UUID4 hex
    issued_at: datetime
    expires_at: datetime
    issuer: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds


@dataclass
class LoginAttemptRecord:
    """One row per (username, origin). attempts only grows until reset."""

    username: str
    origin: str
    attempts: int = 0
    last_attempt: datetime | None = None
    success: bool = False
