#!/usr/bin/env python3
"""
AuthGate operator CLI -- account administration against the configured database.

Usage:
  python main.py create-account alice alice@example.com
  python main.py unlock alice
  python main.py sweep

The password for create-account is read interactively (never from argv, so
it does not land in shell history). Set AUTHGATE_PASSWORD to script it.

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the account database (see core/config.py).
"""

import argparse
import getpass
import logging
import os
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from api.models import is_password_complex
from auth.errors import AuthError
from auth.maintenance import AccountMaintenance
from auth.models import Account, AccountStatus
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import get_settings

logger = logging.getLogger("authgate.cli")


def _read_password() -> str:
    env_password = os.environ.get("AUTHGATE_PASSWORD")
    if env_password:
        return env_password
    first = getpass.getpass("Password: ")
    if first != getpass.getpass("Repeat password: "):
        raise ValueError("passwords do not match")
    return first


def cmd_create_account(store: AccountStore, args: argparse.Namespace) -> int:
    try:
        password = _read_password()
    except ValueError as e:
        print(f"  [!] {e}")
        return 1
    if not is_password_complex(password):
        print("  [!] Password must be 12+ characters with upper, lower, digit and special character.")
        return 1
    try:
        account_id = store.create_account(
            Account(username=args.username, email=args.email, password_hash=hash_password(password))
        )
    except IntegrityError:
        print(f"  [!] An account named '{args.username}' or with email '{args.email}' already exists.")
        return 1
    print(f"  Created account '{args.username}' (id {account_id}).")
    return 0


def cmd_unlock(store: AccountStore, args: argparse.Namespace) -> int:
    account = store.get_by_username(args.username)
    if account is None:
        print(f"  [!] No account named '{args.username}'.")
        return 1
    if account.status != AccountStatus.LOCKED:
        print(f"  [!] Account '{args.username}' is {account.status.value}, not locked.")
        return 1
    store.unlock_account(account.id)
    print(f"  Unlocked '{args.username}'.")
    return 0


def cmd_sweep(store: AccountStore, args: argparse.Namespace) -> int:
    results = AccountMaintenance.from_settings(store, get_settings()).run()
    for step, count in results.items():
        print(f"  {step}: {'failed' if count < 0 else count}")
    return 1 if any(count < 0 for count in results.values()) else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="AuthGate account administration.",
    )
    parser.add_argument("--db", metavar="URL", help="SQLAlchemy database URL (default: DATABASE_URL setting)")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-account", help="Create an active account")
    create.add_argument("username")
    create.add_argument("email")
    create.set_defaults(handler=cmd_create_account)

    unlock = sub.add_parser("unlock", help="Unlock a locked account")
    unlock.add_argument("username")
    unlock.set_defaults(handler=cmd_unlock)

    sweep = sub.add_parser("sweep", help="Run one account maintenance cycle")
    sweep.set_defaults(handler=cmd_sweep)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    store = AccountStore(args.db or get_settings().database_url)
    try:
        return args.handler(store, args)
    except AuthError as e:
        logger.error("Command %s failed: %s", args.command, e.message)
        print(f"  [!] {args.command} failed: database unavailable.")
        return 2
    finally:
        store.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")
    sys.exit(main())
