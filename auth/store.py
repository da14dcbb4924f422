"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account is the mapper. Services and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Lock updates are guarded by a status predicate in the WHERE clause, so a
  concurrent deactivation can never be overwritten by a late lock (inactive
  and deleted are terminal).

Timestamps are stored as ISO 8601 UTC text with fixed microsecond precision,
so lexicographic comparison in SQL matches chronological order.

Errors: any SQLAlchemyError other than IntegrityError is re-raised as
AuthError(STORAGE_FAILURE). IntegrityError passes through unchanged so
callers (registration) can map duplicate keys to a conflict.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import AuthError
from auth.models import Account, AccountStatus

logger = logging.getLogger("authgate.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("status", String(16), nullable=False, server_default=AccountStatus.ACTIVE.value),
    Column("last_activity_at", String(32)),
    Column("locked_until", String(32)),
    Column("lock_reason", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

login_attempts = Table(
    "login_attempts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(100), nullable=False),
    Column("origin", String(64), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("last_attempt", String(32)),
    Column("success", Boolean, nullable=False, server_default="0"),
    UniqueConstraint("username", "origin", name="uq_login_attempts_username_origin"),
)

# Statuses a lock may be applied to. INACTIVE and DELETED are terminal.
_LOCKABLE = (AccountStatus.ACTIVE.value, AccountStatus.LOCKED.value)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block on writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Create an engine for db_url and make sure both tables exist."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime | None) -> str | None:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate driver errors into AuthError(STORAGE_FAILURE)."""
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        raise AuthError.storage_failure(operation, exc) from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account entities.

    Usage:
        store = AccountStore("sqlite:///authgate.db")
        store.create_account(Account(username="alice", email="a@example.com", password_hash=hash_password("...")))
        account = store.get_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email is taken.
        """
        now = to_iso(utcnow())
        with storage_errors("create_account"), self.engine.connect() as conn:
            result = conn.execute(
                accounts.insert().values(
                    username=account.username,
                    email=account.email,
                    password_hash=account.password_hash,
                    status=AccountStatus(account.status).value,
                    last_activity_at=to_iso(account.last_activity_at),
                    locked_until=to_iso(account.locked_until),
                    lock_reason=account.lock_reason,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> Account | None:
        """Look up an account by exact username (case-sensitive)."""
        with storage_errors("get_by_username"), self.engine.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with storage_errors("get_by_id"), self.engine.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    # ------------------------------------------------------------------
    # Lifecycle updates
    # ------------------------------------------------------------------

    def lock_account(self, account_id: int, reason: str, duration: timedelta, now: datetime | None = None) -> bool:
        """Lock an active (or already locked) account for duration.

        Returns False if the account does not exist or is in a terminal state.
        """
        now = now or utcnow()
        with storage_errors("lock_account"), self.engine.connect() as conn:
            result = conn.execute(
                accounts.update()
                .where((accounts.c.id == account_id) & accounts.c.status.in_(_LOCKABLE))
                .values(
                    status=AccountStatus.LOCKED.value,
                    locked_until=to_iso(now + duration),
                    lock_reason=reason,
                    updated_at=to_iso(now),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def unlock_account(self, account_id: int) -> bool:
        """Explicit LOCKED -> ACTIVE transition. Returns False if not locked."""
        with storage_errors("unlock_account"), self.engine.connect() as conn:
            result = conn.execute(
                accounts.update()
                .where((accounts.c.id == account_id) & (accounts.c.status == AccountStatus.LOCKED.value))
                .values(
                    status=AccountStatus.ACTIVE.value,
                    locked_until=None,
                    lock_reason=None,
                    updated_at=to_iso(utcnow()),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def touch_activity(self, account_id: int, now: datetime | None = None) -> None:
        """Stamp last_activity_at. Called on every successful authentication."""
        stamp = to_iso(now or utcnow())
        with storage_errors("touch_activity"), self.engine.connect() as conn:
            conn.execute(
                accounts.update().where(accounts.c.id == account_id).values(last_activity_at=stamp, updated_at=stamp)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Maintenance queries (run from the background sweep)
    # ------------------------------------------------------------------

    def lock_security_violators(
        self, min_attempts: int, lookback: timedelta, lock_for: timedelta, now: datetime | None = None
    ) -> int:
        """Lock active accounts with more than min_attempts recent failed logins from any origin."""
        now = now or utcnow()
        violators = select(login_attempts.c.username).where(
            (login_attempts.c.attempts > min_attempts)
            & (login_attempts.c.success.is_(False))
            & (login_attempts.c.last_attempt > to_iso(now - lookback))
        )
        with storage_errors("lock_security_violators"), self.engine.connect() as conn:
            result = conn.execute(
                accounts.update()
                .where((accounts.c.status == AccountStatus.ACTIVE.value) & accounts.c.username.in_(violators))
                .values(
                    status=AccountStatus.LOCKED.value,
                    locked_until=to_iso(now + lock_for),
                    lock_reason="multiple security violations",
                    updated_at=to_iso(now),
                )
            )
            conn.commit()
        return result.rowcount

    def mark_inactive(self, idle_for: timedelta, now: datetime | None = None) -> int:
        """Deactivate active accounts with no activity (or creation) within idle_for."""
        now = now or utcnow()
        cutoff = to_iso(now - idle_for)
        with storage_errors("mark_inactive"), self.engine.connect() as conn:
            result = conn.execute(
                accounts.update()
                .where(
                    (accounts.c.status == AccountStatus.ACTIVE.value)
                    & (func.coalesce(accounts.c.last_activity_at, accounts.c.created_at) < cutoff)
                )
                .values(status=AccountStatus.INACTIVE.value, deleted_at=to_iso(now), updated_at=to_iso(now))
            )
            conn.commit()
        return result.rowcount

    def purge_inactive(self, older_than: timedelta, now: datetime | None = None) -> int:
        """Hard-delete accounts that have been inactive for longer than older_than."""
        cutoff = to_iso((now or utcnow()) - older_than)
        with storage_errors("purge_inactive"), self.engine.connect() as conn:
            result = conn.execute(
                accounts.delete().where(
                    (accounts.c.status == AccountStatus.INACTIVE.value) & (accounts.c.deleted_at < cutoff)
                )
            )
            conn.commit()
        return result.rowcount

    def set_status(self, account_id: int, status: AccountStatus) -> bool:
        """Raw status write for operator tooling and tests; bypasses lifecycle rules."""
        with storage_errors("set_status"), self.engine.connect() as conn:
            result = conn.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(status=AccountStatus(status).value, updated_at=to_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        status=AccountStatus(row.status),
        locked_until=from_iso(row.locked_until),
        lock_reason=row.lock_reason,
        last_activity_at=from_iso(row.last_activity_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        deleted_at=from_iso(row.deleted_at),
    )
