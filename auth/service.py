"""
auth/service.py -- Login, refresh and logout flows.

AuthService wires the account store, attempt ledger, lockout policy and token
issuer together. It is built once in the application lifespan and stored on
app.state; routes call it and translate AuthError codes to HTTP.

Login sequence (order matters):
  1. Look up the account. Unknown username -> bcrypt against a dummy hash,
     then INVALID_CREDENTIALS. Existence is never revealed [C1].
  2. check_status() -- locked/inactive accounts are rejected before the
     password is compared with the stored hash, so they never leak password
     correctness. The rejection still pays for one dummy bcrypt check so it
     takes as long as an unknown-username failure [C1].
  3. Verify the password. Mismatch -> record the failure, decide() (which
     may escalate to a lock), then INVALID_CREDENTIALS.
  4. Match -> decide() again. Another request may have pushed the counter
     over the threshold since step 3; a correct password never waives a
     running cool-down.
  5. Reset the counter, stamp activity, mint a token pair.

No transaction spans the five steps. Two concurrent logins can both read a
count just under the threshold and both pass step 4; that race is accepted.

Deadlines are time.monotonic() values and are only checked on entry.
Storage calls already in flight are never interrupted.
"""

from __future__ import annotations

import logging
import time

from auth.errors import AuthError, ErrorCode
from auth.guard import check_status
from auth.ledger import LoginAttemptLedger
from auth.lockout import LockoutPolicy
from auth.models import TokenClaims, TokenKind, TokenPair
from auth.store import AccountStore
from auth.tokens import TokenIssuer, burn_password_check, verify_password

logger = logging.getLogger("authgate.auth")


def _check_deadline(deadline: float | None, operation: str) -> None:
    if deadline is not None and time.monotonic() >= deadline:
        raise AuthError(ErrorCode.DEADLINE_EXCEEDED, f"{operation} called after its deadline")


class AuthService:
    def __init__(
        self,
        accounts: AccountStore,
        ledger: LoginAttemptLedger,
        policy: LockoutPolicy,
        tokens: TokenIssuer,
    ) -> None:
        self.accounts = accounts
        self.ledger = ledger
        self.policy = policy
        self.tokens = tokens

    def authenticate(self, username: str, password: str, origin: str, deadline: float | None = None) -> TokenPair:
        """Run the login sequence and return a fresh token pair.

        Raises AuthError: INVALID_CREDENTIALS, ACCOUNT_LOCKED, ACCOUNT_INACTIVE,
        STORAGE_FAILURE, SIGNING_FAILURE or DEADLINE_EXCEEDED.
        """
        _check_deadline(deadline, "authenticate")

        account = self.accounts.get_by_username(username)
        if account is None:
            burn_password_check(password)
            logger.warning("Login failed: unknown username=%s origin=%s", username, origin)
            raise AuthError(ErrorCode.INVALID_CREDENTIALS, "unknown username")

        try:
            check_status(account)
        except AuthError:
            # Same bcrypt cost as a password check, without touching the real hash
            burn_password_check(password)
            logger.warning("Login refused: username=%s status=%s origin=%s", username, account.status.value, origin)
            raise

        if not verify_password(password, account.password_hash):
            self.ledger.record_attempt(username, origin, success=False)
            logger.warning("Login failed: bad password username=%s origin=%s", username, origin)
            self.policy.decide(username, account.id, origin)
            raise AuthError(ErrorCode.INVALID_CREDENTIALS, "password mismatch")

        self.policy.decide(username, account.id, origin)

        self.ledger.reset(username, origin)
        self.accounts.touch_activity(account.id)
        logger.info("Login succeeded: username=%s origin=%s", username, origin)
        return self.tokens.issue_pair(account.id, account.username)

    def refresh(self, refresh_token: str, deadline: float | None = None) -> TokenPair:
        """Exchange a valid refresh token for a new pair bound to the same subject."""
        _check_deadline(deadline, "refresh")
        claims = self.tokens.validate(refresh_token, TokenKind.REFRESH)
        return self.tokens.issue_pair(claims.subject_id, claims.username)

    def invalidate(self, access_token: str, deadline: float | None = None) -> TokenClaims:
        """Log out: validate the access token, then revoke its id until expiry."""
        _check_deadline(deadline, "invalidate")
        claims = self.tokens.validate(access_token, TokenKind.ACCESS)
        self.tokens.revoke(claims)
        logger.info("Token revoked: username=%s jti=%s", claims.username, claims.token_id)
        return claims

    def validate_access(self, access_token: str) -> TokenClaims:
        return self.tokens.validate(access_token, TokenKind.ACCESS)
