#!/usr/bin/env python3
"""Grant the platform-admin role to a user, creating the user if needed.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='SecurePassword123!' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'SecurePassword123!'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password used when the user has to be created
    DATABASE_URL: PostgreSQL connection string (in-memory store if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from three or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    # Imported late so the environment defaults below apply to Settings
    from credvault.service.roles import Role
    from credvault.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    user = await asyncio.to_thread(runtime.store.get_user_by_email, email)

    if user is not None:
        current = await runtime.roles.current_role(user.id)
        if current is Role.PLATFORM_ADMIN:
            return {"user_id": user.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": user.id, "email": email, "status": "dry_run"}
        if current is not None:
            await runtime.roles.revoke(
                user.id, current, revoked_by=None, notes="Replaced by admin bootstrap"
            )
        status = "promoted"
    else:
        if dry_run:
            return {"user_id": None, "email": email, "status": "dry_run"}
        result = await runtime.accounts.register_email(email, password)
        if not result.success or result.user is None:
            raise RuntimeError(result.message)
        user = result.user
        status = "created"

    if not await runtime.roles.assign(
        user.id, Role.PLATFORM_ADMIN, assigned_by=None, notes="Bootstrapped from CLI"
    ):
        raise RuntimeError(f"could not assign platform_admin to user {user.id}")
    return {"user_id": user.id, "email": email, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a platform administrator for CredVault",
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
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    os.environ.setdefault("SWEEPERS_ENABLED", "false")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Created admin user {result['email']} (id: {result['user_id']})")
    elif result["status"] == "promoted":
        print(f"Promoted existing user {result['email']} to platform_admin (id: {result['user_id']})")
    elif result["status"] == "already_admin":
        print(f"No changes needed: {result['email']} is already platform_admin")
    else:
        print(f"[DRY RUN] Would grant platform_admin to {result['email']}")


if __name__ == "__main__":
    main()
