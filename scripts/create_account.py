#!/usr/bin/env python3
"""Create an account, optionally activating it so it can log in immediately.

Usage:
    # Using environment variables:
    ACCOUNT_EMAIL=ops@example.com ACCOUNT_PASSWORD='Sturdy-Passw0rd!' python scripts/create_account.py --activate

    # Or with command line args:
    python scripts/create_account.py --email ops@example.com --password 'Sturdy-Passw0rd!' --activate

Environment Variables:
    ACCOUNT_EMAIL: Email for the new account
    ACCOUNT_PASSWORD: Password for the new account (must pass the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


async def create_account(
    email: str,
    password: str,
    *,
    user_type: str = "customer",
    activate: bool = False,
    dry_run: bool = False,
) -> dict:
    """Register an account and, with ``activate``, move it straight to active.

    Returns:
        dict with account_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.get_account_by_email(email)
    if existing:
        if activate and existing.status == "pending" and not dry_run:
            await runtime.auth.transition_account(existing.id, "active")
            await runtime.events.drain(timeout=10)
            return {"account_id": existing.id, "email": email, "status": "activated"}
        return {"account_id": existing.id, "email": email, "status": existing.status}

    if dry_run:
        return {"account_id": None, "email": email, "status": "dry_run"}

    registration = await runtime.auth.register_account(email, password, user_type=user_type)
    result = {
        "account_id": registration.account.id,
        "email": registration.account.email,
        "status": "pending",
    }
    if activate:
        await runtime.auth.transition_account(registration.account.id, "active")
        result["status"] = "active"
    else:
        result["verification_code"] = registration.verification_code
    await runtime.events.drain(timeout=10)
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Create an AuthCore account",
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
    parser.add_argument(
        "--user-type",
        default="customer",
        choices=["customer", "traveler", "both"],
        help="Account type",
    )
    parser.add_argument(
        "--activate",
        action="store_true",
        help="Skip e-mail verification and activate the account",
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

    from authcore.service.passwords import check_password_policy

    check = check_password_policy(args.password, email=args.email)
    if not check.is_valid:
        print("Error: password does not meet requirements:")
        for error in check.errors:
            print(f"       - {error}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/authcore-cli"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            create_account(
                args.email,
                args.password,
                user_type=args.user_type,
                activate=args.activate,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "dry_run":
        print(f"[DRY RUN] Would create account: {result['email']}")
        return
    print(f"Account {result['email']} (id: {result['account_id']}): {result['status']}")
    if result.get("verification_code"):
        print(f"  Verification code: {result['verification_code']}")


if __name__ == "__main__":
    main()
