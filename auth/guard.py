"""auth/guard.py -- Account lifecycle gate, run before any password comparison."""

from __future__ import annotations

from datetime import datetime

from auth.errors import AuthError, ErrorCode
from auth.models import Account, AccountStatus
from auth.store import utcnow


def check_status(account: Account, now: datetime | None = None) -> None:
    """Raise if account may not start a session right now.

    A locked account whose locked_until has passed is allowed through even if
    the stored status still says "locked" (lazy expiry).
    """
    now = now or utcnow()
    if account.status == AccountStatus.LOCKED:
        if account.locked_until is not None and account.locked_until > now:
            raise AuthError.account_locked(account.locked_until, account.lock_reason)
        return None
    if account.status in (AccountStatus.INACTIVE, AccountStatus.DELETED):
        raise AuthError(ErrorCode.ACCOUNT_INACTIVE, f"account is {AccountStatus(account.status).value}")
    return None
