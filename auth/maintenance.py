"""
auth/maintenance.py -- Periodic account hygiene, run from the background sweep.

Each step is isolated: a storage failure in one is logged and the remaining
steps still run. The next sweep cycle retries everything.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from auth.errors import AuthError
from auth.store import AccountStore

logger = logging.getLogger("authgate.maintenance")

_VIOLATION_LOOKBACK = timedelta(days=30)


class AccountMaintenance:
    def __init__(
        self,
        accounts: AccountStore,
        violation_attempts: int = 10,
        violation_lock: timedelta = timedelta(days=30),
        inactivity: timedelta = timedelta(days=90),
        purge_after: timedelta = timedelta(days=365),
    ) -> None:
        self.accounts = accounts
        self.violation_attempts = violation_attempts
        self.violation_lock = violation_lock
        self.inactivity = inactivity
        self.purge_after = purge_after

    @classmethod
    def from_settings(cls, accounts: AccountStore, settings) -> AccountMaintenance:
        return cls(
            accounts,
            violation_attempts=settings.violation_attempts,
            violation_lock=timedelta(days=settings.violation_lock_days),
            inactivity=timedelta(days=settings.inactivity_days),
            purge_after=timedelta(days=settings.purge_inactive_after_days),
        )

    def run(self, now: datetime | None = None) -> dict[str, int]:
        """Run every step once. Returns rows affected per step (-1 if it failed)."""
        steps = {
            "locked_violators": lambda: self.accounts.lock_security_violators(
                self.violation_attempts, _VIOLATION_LOOKBACK, self.violation_lock, now=now
            ),
            "marked_inactive": lambda: self.accounts.mark_inactive(self.inactivity, now=now),
            "purged": lambda: self.accounts.purge_inactive(self.purge_after, now=now),
        }
        results: dict[str, int] = {}
        for name, step in steps.items():
            try:
                results[name] = step()
            except AuthError as exc:
                logger.error("Maintenance step %s failed: %s", name, exc.message)
                results[name] = -1
        if any(count > 0 for count in results.values()):
            logger.info("Account maintenance: %s", results)
        return results
