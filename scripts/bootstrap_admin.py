#!/usr/bin/env python3
"""Create the first NoteHub admin account, or promote an existing account.

Usage:
    ADMIN_EMAIL=admin@example.edu ADMIN_PASSWORD='Adm1n@Pass' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.edu --password 'Adm1n@Pass' --name "Site Admin"

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    ADMIN_NAME: Display name (defaults to "Administrator")
    DATABASE_URL: PostgreSQL connection string (the file-backed memory store is used when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(name: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with user_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here so the environment below is in place before settings load
    from notehub.service.runtime import get_runtime
    from notehub.storage.models import ROLE_ADMIN

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email.strip().lower())
    if existing is not None and existing.role == ROLE_ADMIN:
        print(f"User {email} already exists as admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "already_admin"}

    if dry_run:
        action = "promote existing user" if existing else "create admin user"
        print(f"[DRY RUN] Would {action}: {email}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    user, created = await runtime.auth.create_admin(name, email, password)
    status = "created" if created else "promoted"
    print(f"{status.capitalize()} admin user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for NoteHub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for PostgreSQL)")

    from notehub.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.name, args.email, args.password, args.dry_run))
    except ServiceError as e:
        print(f"Error: {e.message}")
        for field, message in (e.detail.get("fields") or {}).items():
            print(f"  {field}: {message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
        print("  The account keeps its current password; --password was not applied.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
