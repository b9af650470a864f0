#!/usr/bin/env python3
"""
pakreq-admin -- Account administration for the pakreq credential store.

Accounts are created out of band; the web UI only lets an existing user log
in, change their password and link identities.

Usage:
  python main.py add-user alice
  python main.py add-user alice --admin
  python main.py add-user bot --no-password
  python main.py set-password alice
  python main.py show-user alice

Environment variables:
  DATABASE_URL   Credential store URL (default: sqlite:///pakreq.db).
                 Read through core.config.StoreSettings, so the server's
                 SECRET_KEY / JWT_SECRET are not needed here.
"""

from __future__ import annotations

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import User
from auth.passwords import PasswordEngine
from auth.store import CredentialStore
from auth.workers import CryptoPool
from core.config import StoreSettings


def _prompt_password(given: Optional[str]) -> Optional[str]:
    """Return the --password value, or ask twice on the terminal."""
    if given is not None:
        return given
    first = getpass.getpass("  New password: ")
    second = getpass.getpass("  Confirm new password: ")
    if first != second:
        print("  [!] New password and Confirm new password mismatch!")
        return None
    if not first:
        print("  [!] Password must not be empty.")
        return None
    return first


def _add_user(store: CredentialStore, engine: PasswordEngine, args: argparse.Namespace) -> int:
    password: Optional[str] = None
    if not args.no_password:
        password = _prompt_password(args.password)
        if password is None:
            return 1
    try:
        uid = store.create_user(User(username=args.username, is_admin=args.admin))
    except IntegrityError:
        print(f"  [!] User '{args.username}' already exists.")
        return 1
    if password is not None:
        # The hash input includes the id, so it can only be computed after insert.
        store.update_password_hash(args.username, engine.hash(uid, password))
    role = "admin" if args.admin else "user"
    print(f"  Created {role} '{args.username}' (id {uid}){'' if password else ' without a password'}.")
    return 0


def _set_password(store: CredentialStore, engine: PasswordEngine, args: argparse.Namespace) -> int:
    user = store.lookup_user_by_username(args.username)
    if user is None:
        print(f"  [!] No user named '{args.username}'.")
        return 1
    password = _prompt_password(args.password)
    if password is None:
        return 1
    store.update_password_hash(user.username, engine.hash(user.id, password))
    print(f"  Password changed for '{user.username}'.")
    return 0


def _show_user(store: CredentialStore, _engine: PasswordEngine, args: argparse.Namespace) -> int:
    user = store.lookup_user_by_username(args.username)
    if user is None:
        print(f"  [!] No user named '{args.username}'.")
        return 1
    links = store.list_oauth_links_for_user(user.id)
    print(f"  id:        {user.id}")
    print(f"  username:  {user.username}")
    print(f"  admin:     {'yes' if user.is_admin else 'no'}")
    print(f"  password:  {'set' if user.password_hash else 'not set'}")
    print(f"  linked:    {', '.join(f'{link.provider}:{link.external_subject}' for link in links) or 'none'}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pakreq-admin",
        description="Manage pakreq accounts in the credential store.",
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="Override DATABASE_URL for this invocation",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add-user", help="Create an account")
    add.add_argument("username")
    add.add_argument("--admin", action="store_true", help="Mark the account as an administrator")
    group = add.add_mutually_exclusive_group()
    group.add_argument("--password", default=None, help="Password (prompted for when omitted)")
    group.add_argument(
        "--no-password",
        action="store_true",
        help="Create the account without a password (it cannot log in until one is set)",
    )
    add.set_defaults(handler=_add_user)

    setpw = sub.add_parser("set-password", help="Replace an account's password")
    setpw.add_argument("username")
    setpw.add_argument("--password", default=None, help="Password (prompted for when omitted)")
    setpw.set_defaults(handler=_set_password)

    show = sub.add_parser("show-user", help="Print an account and its linked identities")
    show.add_argument("username")
    show.set_defaults(handler=_show_user)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    db_url = args.database_url or StoreSettings().database_url

    store = CredentialStore(db_url=db_url)
    pool = CryptoPool(max_workers=1)
    try:
        return args.handler(store, PasswordEngine(pool), args)
    except SQLAlchemyError as exc:
        print(f"  [!] Credential store error: {exc}")
        return 1
    finally:
        pool.shutdown()
        store.close()


if __name__ == "__main__":
    sys.exit(main())
