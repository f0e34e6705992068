#!/usr/bin/env python3
"""Create password users or toggle the blocked flag from the command line.

Usage:
    # Create a user with an argon2id-hashed password:
    python scripts/create_user.py create --email student@example.com --password 'S3cure-pass'

    # Block or unblock an existing account:
    python scripts/create_user.py block --email student@example.com
    python scripts/create_user.py unblock --email student@example.com

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to true to run against a throwaway in-memory store
    USER_PASSWORD: password for ``create`` when --password is omitted
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 8


def validate_password(password: str) -> bool:
    """Require a minimum length and at least one letter and one digit."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return False
    has_alpha = any(c.isalpha() for c in password)
    has_digit = any(c.isdigit() for c in password)
    return has_alpha and has_digit


def create_user(
    store,
    email: str,
    password: str,
    *,
    user_name: str | None = None,
    fname: str | None = None,
    sname: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create a password user.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    from examrevise.service.passwords import PasswordVerifier

    email = email.strip().lower()
    existing = store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.user_id})")
        return {"user_id": existing.user_id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = store.create_user(
        email,
        password=PasswordVerifier().hash(password),
        user_name=user_name or email.split("@")[0],
        fname=fname,
        sname=sname,
        sign_up_date=datetime.now(timezone.utc).date(),
    )
    print(f"Created user: {email} (id: {user.user_id})")
    return {"user_id": user.user_id, "email": email, "status": "created"}


def set_blocked(store, email: str, blocked: bool, *, dry_run: bool = False) -> dict:
    """Set or clear the blocked flag.

    Returns:
        dict with user_id, email, and status ('blocked', 'unblocked',
        'unchanged', 'missing' or 'dry_run')
    """
    email = email.strip().lower()
    user = store.get_user_by_email(email)
    if not user:
        print(f"No user with email {email}")
        return {"user_id": None, "email": email, "status": "missing"}
    if user.is_blocked == blocked:
        return {"user_id": user.user_id, "email": email, "status": "unchanged"}
    if dry_run:
        print(f"[DRY RUN] Would set blocked={blocked} for {email}")
        return {"user_id": user.user_id, "email": email, "status": "dry_run"}

    store.set_user_blocked(user.user_id, blocked)
    status = "blocked" if blocked else "unblocked"
    print(f"User {email} {status} (id: {user.user_id})")
    return {"user_id": user.user_id, "email": email, "status": status}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage ExamRevise user accounts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a password user")
    create.add_argument("--email", required=True)
    create.add_argument(
        "--password",
        default=os.environ.get("USER_PASSWORD"),
        help="Password (or set USER_PASSWORD env var)",
    )
    create.add_argument("--user-name")
    create.add_argument("--first-name")
    create.add_argument("--last-name")

    for name, help_text in (("block", "Block an account"), ("unblock", "Unblock an account")):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("--email", required=True)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "create":
        if not args.password:
            print("Error: --password or USER_PASSWORD environment variable required")
            return 1
        if not validate_password(args.password):
            print(
                f"Error: Password must be at least {MIN_PASSWORD_LENGTH} characters "
                "and contain a letter and a digit"
            )
            return 1

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Import here to avoid loading config before env vars are set
    from examrevise.service.runtime import get_runtime

    try:
        store = get_runtime().store
        if args.command == "create":
            result = create_user(
                store,
                args.email,
                args.password,
                user_name=args.user_name,
                fname=args.first_name,
                sname=args.last_name,
                dry_run=args.dry_run,
            )
        else:
            result = set_blocked(
                store, args.email, args.command == "block", dry_run=args.dry_run
            )
    except Exception as e:
        print(f"Error: {e}")
        return 1
    return 0 if result["status"] != "missing" else 1


if __name__ == "__main__":
    sys.exit(main())
