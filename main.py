#!/usr/bin/env python3
"""
Forge -- administration CLI.

Prepares a database before the API is started. The API refuses to start
until the default role exists, so init-roles is the first command to run on
a fresh deployment.

Usage:
  python main.py init-roles
  python main.py create-admin --email admin@example.com --username admin
  python main.py create-admin --email admin@example.com --username admin --password 'correct horse battery'

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the identity store (default: sqlite:///forge.db)
  DEFAULT_ROLE  Role given to new registrations (default: user)
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.models import User
from auth.store import ConstraintViolation, IdentityStore
from auth.tokens import hash_password
from core.config import get_settings

ADMIN_ROLE = "admin"


def init_roles(store: IdentityStore, default_role: str) -> list[str]:
    """Create the admin role and the default role when missing.

    Returns the names that were created; an already initialized store yields [].
    """
    created: list[str] = []
    for name in dict.fromkeys([ADMIN_ROLE, default_role.lower()]):
        if store.find_role_by_name(name) is None:
            store.create_role(name)
            created.append(name)
    return created


def create_admin(store: IdentityStore, email: str, username: str, password: str) -> str:
    """Create a password user holding the admin role. Returns the new user's id.

    Raises:
        LookupError: The admin role does not exist (run init-roles first).
        ConstraintViolation: The email is already registered.
    """
    role = store.find_role_by_name(ADMIN_ROLE)
    if role is None:
        raise LookupError("Role 'admin' not found. Run `python main.py init-roles` first.")
    return store.create_user(
        User(email=email, username=username, hashed_password=hash_password(password)),
        role_ids=[role.id],
    )


def _read_password(given: Optional[str]) -> Optional[str]:
    if given:
        return given
    first = getpass.getpass("  Password: ")
    if first != getpass.getpass("  Repeat password: "):
        print("  [!] Passwords do not match.")
        return None
    return first


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="forge",
        description="Administration commands for the Forge identity service.",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("init-roles", help="Create the admin and default roles")

    admin = sub.add_parser("create-admin", help="Create a password account with the admin role")
    admin.add_argument("--email", required=True, help="Login email of the new admin")
    admin.add_argument("--username", required=True, help="Display name (3-30 letters or digits)")
    admin.add_argument("--password", default=None, help="Password; prompted for when omitted")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    cfg = get_settings()
    store = IdentityStore(cfg.database_url)
    try:
        if args.command == "init-roles":
            created = init_roles(store, cfg.default_role)
            if created:
                print(f"  Created roles: {', '.join(created)}")
            else:
                print("  Roles already initialized.")
            return 0

        password = _read_password(args.password)
        if password is None:
            return 1
        if len(password) < 8:
            print("  [!] Password must be at least 8 characters.")
            return 1
        try:
            user_id = create_admin(store, args.email, args.username, password)
        except LookupError as e:
            print(f"  [!] {e}")
            return 1
        except ConstraintViolation:
            print(f"  [!] A user with email '{args.email}' already exists.")
            return 1
        print(f"  Admin {args.username} created (id {user_id}).")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
