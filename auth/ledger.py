"""
auth/ledger.py -- Durable per-(username, origin) login attempt counters.

The counter must not lose updates when several failed logins for the same
key arrive at once (client retries, or a distributed attacker hammering one
account). Two strategies, picked by dialect:

  SQLite / PostgreSQL: a single INSERT ... ON CONFLICT DO UPDATE statement.
      The database serialises the increment; no Python lock is needed.

  Anything else: one of LOCK_STRIPES threading.Locks, picked by hashing
      (username, origin), held around a read-modify-write transaction. The
      lock pool is fixed, so attacker-chosen usernames cannot grow it. Only
      safe within one process.

Records live in the same database as accounts, so restarts never reset a
brute-force counter.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import threading
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from auth.models import LoginAttemptRecord
from auth.store import from_iso, login_attempts, storage_errors, to_iso, utcnow

LOCK_STRIPES = 64

_UPSERT_DIALECTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


class LoginAttemptLedger:
    """Repository for LoginAttemptRecord rows.

    Usage:
        ledger = LoginAttemptLedger(store.engine)
        ledger.record_attempt("alice", "1.2.3.4", success=False)
        count, last = ledger.get_attempts("alice", "1.2.3.4")
        ledger.reset("alice", "1.2.3.4")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._insert = _UPSERT_DIALECTS.get(engine.dialect.name)
        self._stripes = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    def record_attempt(self, username: str, origin: str, success: bool, now: datetime | None = None) -> None:
        """Increment the counter for (username, origin) and record the outcome."""
        stamp = to_iso(now or utcnow())
        with storage_errors("record_attempt"):
            if self._insert is not None:
                self._upsert(username, origin, success, stamp)
            else:
                with self._lock_for(username, origin):
                    self._read_modify_write(username, origin, success, stamp)

    def reset(self, username: str, origin: str) -> None:
        """Zero the counter after a successful authentication."""
        with storage_errors("reset_attempts"), self.engine.connect() as conn:
            conn.execute(
                login_attempts.update()
                .where((login_attempts.c.username == username) & (login_attempts.c.origin == origin))
                .values(attempts=0, last_attempt=None, success=True)
            )
            conn.commit()

    def get_attempts(self, username: str, origin: str) -> tuple[int, datetime | None]:
        """Return (count, last_attempt). (0, None) when nothing was recorded yet."""
        record = self.get_record(username, origin)
        if record is None:
            return 0, None
        return record.attempts, record.last_attempt

    def get_record(self, username: str, origin: str) -> LoginAttemptRecord | None:
        with storage_errors("get_attempts"), self.engine.connect() as conn:
            row = conn.execute(
                login_attempts.select().where(
                    (login_attempts.c.username == username) & (login_attempts.c.origin == origin)
                )
            ).fetchone()
        if row is None:
            return None
        return LoginAttemptRecord(
            username=row.username,
            origin=row.origin,
            attempts=row.attempts,
            last_attempt=from_iso(row.last_attempt),
            success=bool(row.success),
        )

    # ------------------------------------------------------------------
    # Increment strategies
    # ------------------------------------------------------------------

    def _upsert(self, username: str, origin: str, success: bool, stamp: str) -> None:
        stmt = self._insert(login_attempts).values(
            username=username, origin=origin, attempts=1, last_attempt=stamp, success=success
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[login_attempts.c.username, login_attempts.c.origin],
            set_={
                "attempts": login_attempts.c.attempts + 1,
                "last_attempt": stmt.excluded.last_attempt,
                "success": stmt.excluded.success,
            },
        )
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()

    def _read_modify_write(self, username: str, origin: str, success: bool, stamp: str) -> None:
        key = (login_attempts.c.username == username) & (login_attempts.c.origin == origin)
        with self.engine.begin() as conn:
            current = conn.execute(select(login_attempts.c.attempts).where(key)).scalar()
            if current is None:
                conn.execute(
                    login_attempts.insert().values(
                        username=username, origin=origin, attempts=1, last_attempt=stamp, success=success
                    )
                )
            else:
                conn.execute(
                    login_attempts.update().where(key).values(attempts=current + 1, last_attempt=stamp, success=success)
                )

    def _lock_for(self, username: str, origin: str) -> threading.Lock:
        return self._stripes[hash((username, origin)) % LOCK_STRIPES]
