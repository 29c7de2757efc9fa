#!/usr/bin/env python3
"""Create a task manager user account from the command line.

Usage:
    # Using environment variables:
    USER_EMAIL=alice@example.com USER_PASSWORD=correct-horse python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --email alice@example.com --password correct-horse

Environment Variables:
    USER_EMAIL: Email for the new account
    USER_PASSWORD: Password for the new account (8 to 128 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_user(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the account unless the email is already registered.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from taskmanager.service.auth import normalize_email
    from taskmanager.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        normalized = normalize_email(email)

        existing_user = runtime.store.get_user_by_email(normalized)
        if existing_user:
            print(f"User {normalized} already exists (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": normalized, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create user: {normalized}")
            return {"user_id": None, "email": normalized, "status": "dry_run"}

        user = runtime.auth.create_user(normalized, password)
        print(f"Created user: {user.email} (id: {user.id})")
        return {"user_id": user.id, "email": user.email, "status": "created"}
    finally:
        runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create a task manager user account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("USER_EMAIL"),
        help="Account email (or set USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("USER_PASSWORD"),
        help="Account password (or set USER_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or USER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = create_user(args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
