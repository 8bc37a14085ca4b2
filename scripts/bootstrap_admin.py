#!/usr/bin/env python3
"""Create or promote a local administrator.

Usage:
    ADMIN_USERNAME=root ADMIN_EMAIL=root@example.com ADMIN_PASSWORD=... \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username root --email root@example.com --password ...

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: defaults for the flags
    SHARED_FS_ROOT: where the memory store state and root key live
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    runtime, username: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Create a local admin, or promote the existing user with that username.

    Returns:
        dict with user_id, username and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    existing = runtime.store.find_user_by_username(username)

    if existing:
        if existing.role == "admin":
            print(f"User {username} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "username": username, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {username} to admin")
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        runtime.auth.set_user_role(existing.id, "admin")
        print(f"Promoted existing user {username} to admin (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = runtime.auth.create_local_user(username, email, password, role="admin")
    print(f"Created admin user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap a local gatehouse administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    for flag in ("username", "email", "password"):
        if not getattr(args, flag):
            print(f"Error: --{flag} or ADMIN_{flag.upper()} environment variable required")
            return 1

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        return 1

    os.environ.setdefault("USE_MEMORY_STORE", "true")
    os.environ.setdefault("PERSIST_MEMORY_STORE", "true")

    # Import here so the environment above is in place before settings load
    from gatehouse.service.errors import ServiceError
    from gatehouse.service.runtime import Runtime

    try:
        result = bootstrap_admin(
            Runtime(), args.username, args.email, args.password, args.dry_run
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return 1

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
