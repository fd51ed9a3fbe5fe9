#!/usr/bin/env python3
"""
SessionKeeper operator CLI -- bootstrap and emergency maintenance.

Talks to the credential store directly (DATABASE_URL), so it works while the
API is down. Every state change is audited exactly as its HTTP counterpart.

Usage:
  python main.py create-account admin@example.com --name "Ada Admin" --role admin
  python main.py unlock 42
  python main.py revoke-sessions 42 43 44
  python main.py purge --retention-days 7

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store.
  SECRET_KEY    Needed to build the session service (or DEBUG=true).
"""

import argparse
import getpass
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditLog
from auth.models import ROLES, Account
from auth.sessions import SessionService
from auth.store import AuthStore
from auth.tokens import TokenIssuer, hash_password
from core.config import get_settings


def _read_password(given: Optional[str]) -> Optional[str]:
    if given:
        return given
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def _create_account(store: AuthStore, args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if not password:
        return 1
    if len(password) < 8 or len(password.encode("utf-8")) > 72:
        print("  [!] Password must be 8-72 bytes long.")
        return 1
    try:
        account_id = store.create_account(
            Account(
                email=args.email,
                display_name=args.name or args.email.split("@")[0],
                role=args.role,
                password_hash=hash_password(password),
            )
        )
    except IntegrityError:
        print(f"  [!] An account with email '{args.email}' already exists.")
        return 1
    print(f"  Created {args.role} account {account_id} <{args.email.lower()}>.")
    return 0


def _unlock(service: SessionService, args: argparse.Namespace) -> int:
    if service.unlock(args.account_id):
        print(f"  Account {args.account_id} unlocked.")
        return 0
    print(f"  [!] No account with id {args.account_id}.")
    return 1


def _revoke_sessions(service: SessionService, args: argparse.Namespace) -> int:
    revoked = service.revoke_sessions(args.account_ids)
    for account_id, count in revoked.items():
        print(f"  Account {account_id}: {count} session(s) revoked.")
    return 0


def _purge(store: AuthStore, args: argparse.Namespace, default_days: int) -> int:
    days = args.retention_days if args.retention_days is not None else default_days
    purged = store.purge_expired(datetime.now(timezone.utc) - timedelta(days=days))
    print(f"  Purged {purged} record(s) dead for more than {days} day(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sessionkeeper",
        description="Operator commands for the SessionKeeper credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-account admin@example.com --role admin
  python main.py unlock 42
  python main.py revoke-sessions 42 43
  python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-account", help="Create an account (prompts for the password)")
    create.add_argument("email", help="Login email; stored lower-cased")
    create.add_argument("--name", default=None, help="Display name (default: local part of the email)")
    create.add_argument("--role", choices=ROLES, default="student", help="Account role (default: student)")
    create.add_argument("--password", default=None, help="Password; omit to be prompted (preferred)")

    unlock = sub.add_parser("unlock", help="Clear failed attempts and lockout for an account")
    unlock.add_argument("account_id", type=int)

    revoke = sub.add_parser("revoke-sessions", help="Revoke every refresh token of the given accounts")
    revoke.add_argument("account_ids", type=int, nargs="+", metavar="ACCOUNT_ID")

    purge = sub.add_parser("purge", help="Delete refresh and reset records that died before the retention window")
    purge.add_argument("--retention-days", type=int, default=None, metavar="DAYS")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    store = AuthStore(settings.database_url)
    try:
        if args.command == "create-account":
            return _create_account(store, args)
        if args.command == "purge":
            return _purge(store, args, settings.refresh_token_retention_days)
        service = SessionService(store, TokenIssuer.from_settings(settings), AuditLog(store), settings)
        if args.command == "unlock":
            return _unlock(service, args)
        return _revoke_sessions(service, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
