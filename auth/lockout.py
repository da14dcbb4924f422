"""
auth/lockout.py -- Progressive login delay and automatic account lockout.

Backoff formula (the only one -- there is no 2^n variant):

    attempt   1   2   3   4   5    6    7   8   9   10+
    step      1s  2s  4s  8s  16s  32s  1m  2m  4m  1h

plus uniform jitter in [0, 10%] of the step, capped at one hour. Jitter
keeps a crowd of locked-out clients from retrying in lockstep.

decide() locks the account once the attempt count reaches the threshold AND
the cool-down of the most recent attempt (last_attempt + step(count)) is
still running. When the lock has run out, a correct password gets through
and resets the counter; a wrong one bumps the count and locks again with the
next, longer step.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta

from auth.errors import AuthError
from auth.ledger import LoginAttemptLedger
from auth.store import AccountStore, utcnow

logger = logging.getLogger("authgate.auth")

MAX_LOGIN_ATTEMPTS = 5
LOCK_REASON = "exceeded maximum attempts"
MAX_DELAY = timedelta(hours=1)

_STEPS = (
    timedelta(seconds=1),
    timedelta(seconds=2),
    timedelta(seconds=4),
    timedelta(seconds=8),
    timedelta(seconds=16),
    timedelta(seconds=32),
    timedelta(minutes=1),
    timedelta(minutes=2),
    timedelta(minutes=4),
)


def step_delay(attempt_count: int) -> timedelta:
    """Jitter-free delay for attempt_count. Zero below 1."""
    if attempt_count < 1:
        return timedelta(0)
    if attempt_count > len(_STEPS):
        return MAX_DELAY
    return _STEPS[attempt_count - 1]


def compute_delay(attempt_count: int, rng: random.Random | None = None) -> timedelta:
    """Return step_delay(attempt_count) plus up to 10% jitter, capped at one hour."""
    step = step_delay(attempt_count)
    jitter = step * (rng or random).uniform(0.0, 0.1)
    return min(step + jitter, MAX_DELAY)


class LockoutPolicy:
    """Decides whether the attempt history for (username, origin) locks the account."""

    def __init__(
        self,
        ledger: LoginAttemptLedger,
        accounts: AccountStore,
        max_attempts: int = MAX_LOGIN_ATTEMPTS,
        rng: random.Random | None = None,
    ) -> None:
        self.ledger = ledger
        self.accounts = accounts
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()

    def decide(self, username: str, account_id: int, origin: str, now: datetime | None = None) -> None:
        """Raise AuthError(ACCOUNT_LOCKED) and persist the lock if the threshold is hit."""
        now = now or utcnow()
        attempts, last_attempt = self.ledger.get_attempts(username, origin)
        if attempts < self.max_attempts:
            return None
        if last_attempt is not None and now >= last_attempt + step_delay(attempts):
            return None

        duration = compute_delay(attempts, self._rng)
        self.accounts.lock_account(account_id, LOCK_REASON, duration, now=now)
        logger.warning(
            "Account locked: username=%s origin=%s attempts=%d duration=%.1fs",
            username,
            origin,
            attempts,
            duration.total_seconds(),
        )
        raise AuthError.account_locked(now + duration, LOCK_REASON)
