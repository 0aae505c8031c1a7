#!/usr/bin/env python3
"""Seed an account into the credential store.

Usage:
    # Using environment variables:
    ACCOUNT_EMAIL=hr@example.com ACCOUNT_PASSWORD=ChangeMe123 python scripts/create_account.py

    # Or with command line args:
    python scripts/create_account.py --email hr@example.com --password ChangeMe123 \
        --phone +15550100 --role hr_admin --two-factor sms

Environment Variables:
    ACCOUNT_EMAIL: Email for the account
    ACCOUNT_PASSWORD: Password for the account (8-255 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys


def create_account(
    email: str,
    password: str,
    *,
    phone: str | None = None,
    role: str = "employee",
    two_factor: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the account unless one with this email already exists.

    Returns:
        dict with account_id, email and status ('created', 'exists' or 'dry_run')
    """
    # Import here so the environment defaults below apply to settings
    from hrauth.service.runtime import get_runtime
    from hrauth.storage.models import TwoFactorMethod

    runtime = get_runtime()

    existing = runtime.store.get_account_by_email(email)
    if existing:
        print(f"Account {email} already exists (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create account: {email} (role: {role})")
        return {"account_id": None, "email": email, "status": "dry_run"}

    method = TwoFactorMethod(two_factor) if two_factor else None
    account = runtime.auth.create_account(
        email, password, phone=phone, role=role, two_factor_method=method
    )
    print(f"Created account: {account.email} (id: {account.id})")
    return {"account_id": account.id, "email": account.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create an HR portal account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Account email (or set ACCOUNT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Account password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument("--phone", default=None, help="Phone number in E.164 format")
    parser.add_argument("--role", default="employee", help="Account role")
    parser.add_argument(
        "--two-factor",
        choices=["email", "sms", "all"],
        default=None,
        help="Enable 2FA with this method from the start",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ACCOUNT_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ACCOUNT_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = create_account(
            args.email,
            args.password,
            phone=args.phone,
            role=args.role,
            two_factor=args.two_factor,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "exists":
        print("\nNo changes made.")


if __name__ == "__main__":
    main()
