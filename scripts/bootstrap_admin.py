#!/usr/bin/env python3
"""Bootstrap an organisation and its SuperAdmin for testing and initial setup.

Usage:
    ADMIN_EMAIL=owner@example.com ADMIN_PASSWORD=SecurePass123 \
        python scripts/bootstrap_admin.py --name "Aisha Owner" --org "Aisha Pharmacy"

    python scripts/bootstrap_admin.py --email owner@example.com --password SecurePass123 \
        --name "Aisha Owner" --org "Aisha Pharmacy" --country SA --currency SAR

Environment Variables:
    ADMIN_EMAIL: Email for the SuperAdmin
    ADMIN_PASSWORD: Password for the SuperAdmin (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys


async def bootstrap_admin(
    email: str,
    password: str,
    name: str,
    org: str,
    country: str,
    currency: str,
    dry_run: bool = False,
) -> dict:
    """Register the organisation unless the email is already taken.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from thurayya.service.runtime import get_runtime
    from thurayya.service.validation import normalize_email

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(normalize_email(email))
    if existing_user:
        print(f"User {email} already exists (id: {existing_user.id}, role: {existing_user.role.value})")
        return {"user_id": existing_user.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create organisation '{org}' owned by {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    bundle = await runtime.auth.register(name, email, password, org, country, currency)
    return {
        "user_id": bundle.user.id,
        "email": bundle.user.email,
        "status": "created",
        "access_token": bundle.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a Thurayya organisation and its SuperAdmin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default="Administrator")
    parser.add_argument("--org", default="Thurayya Pharmacy")
    parser.add_argument("--country", default="SA")
    parser.add_argument("--currency", default="SAR")
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

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/thurayya-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from thurayya.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                args.name,
                args.org,
                args.country,
                args.currency,
                args.dry_run,
            )
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for message in exc.detail.get("errors", []):
            print(f"  - {message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nOrganisation created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "exists":
        print("\nNo changes needed - the email is already registered.")


if __name__ == "__main__":
    main()
