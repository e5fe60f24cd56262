#!/usr/bin/env python3
"""
Campus Logistics auth -- operator command line.

Usage:
  python main.py create-user --email admin@campus.edu --role ADMIN
  python main.py create-user --email staff@campus.edu --role STAFF --first-name Binh
  python main.py purge

Reads the same environment (.env) as the API: DATABASE_URL, SECRET_KEY,
SALT_ROUNDS. The API itself is started with:  uvicorn api.main:app
"""

import argparse
import getpass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import ROLES
from auth.registration import normalize_email
from auth.store import CredentialStore
from auth.tokens import PasswordHasher
from core.config import get_settings

_MIN_PASSWORD = 6


def _create_user(store: CredentialStore, args: argparse.Namespace) -> int:
    """Create a verified account that can sign in immediately (bootstraps ADMIN/STAFF users)."""
    password = args.password or getpass.getpass("  Password: ")
    if len(password) < _MIN_PASSWORD:
        print(f"  [!] Password must be at least {_MIN_PASSWORD} characters.")
        return 1

    email = normalize_email(args.email)
    hasher = PasswordHasher(rounds=get_settings().salt_rounds)
    try:
        uid = store.create_account(
            email,
            role=args.role,
            password_hash=hasher.hash(password),
            first_name=args.first_name,
            last_name=args.last_name,
        )
    except IntegrityError:
        print(f"  [!] '{email}' is already registered.")
        return 1
    print(f"  Created {args.role} {email} (id {uid}).")
    return 0


def _purge(store: CredentialStore, args: argparse.Namespace) -> int:
    removed = store.purge_expired(datetime.now(timezone.utc))
    print(f"  Purged {removed} expired token row(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="campus-auth",
        description="Operator tasks for the campus logistics auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user --email admin@campus.edu --role ADMIN
  python main.py create-user --email s@campus.edu --role STUDENT --password changeme
  DATABASE_URL=sqlite:////srv/campus/auth.db python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create a verified account with a password")
    create.add_argument("--email", required=True, help="Login email (stored lowercase)")
    create.add_argument("--role", choices=list(ROLES), default="ADMIN", help="Account role (default: ADMIN)")
    create.add_argument("--password", help="Password; prompted for when omitted")
    create.add_argument("--first-name", dest="first_name")
    create.add_argument("--last-name", dest="last_name")
    create.set_defaults(handler=_create_user)

    purge = sub.add_parser("purge", help="Delete expired verification and refresh tokens")
    purge.set_defaults(handler=_purge)

    args = parser.parse_args(argv)

    store = CredentialStore(get_settings().database_url)
    try:
        return args.handler(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
