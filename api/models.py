"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

import unicodedata
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]{3,100}$"
MIN_PASSWORD_LENGTH = 12


def is_password_complex(password: str) -> bool:
    """At least 12 characters with upper, lower, digit and punctuation/symbol."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(unicodedata.category(c)[0] in ("P", "S") for c in password)
    return has_upper and has_lower and has_digit and has_special


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Structured error body. code is machine-readable; message is for humans."""

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


# ---------------------------------------------------------------------------
# Auth request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    # No str_strip_whitespace: whitespace is a legitimate password character.
    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1, max_length=4096)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Password complexity mirrors the account policy: 12+ characters with an
    uppercase letter, a lowercase letter, a digit and a punctuation or symbol
    character. The 128-character cap keeps input within bcrypt's useful range.
    """

    username: str = Field(pattern=USERNAME_PATTERN)
    email: EmailStr
    password: str = Field(max_length=128)

    @field_validator("password")
    @classmethod
    def password_complexity(cls, value: str) -> str:
        if not is_password_complex(value):
            raise ValueError(
                "Password must be at least 12 characters and contain an uppercase letter, "
                "a lowercase letter, a digit and a special character."
            )
        return value


# ---------------------------------------------------------------------------
# Auth response models
# ---------------------------------------------------------------------------


class TokenPairResponse(BaseModel):
    """Response for login and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int


class AccountCreatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    status: str


class MeResponse(BaseModel):
    """Identity carried by the presented access token."""

    model_config = ConfigDict(frozen=True)

    account_id: int
    username: str
    expires_at: str


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
