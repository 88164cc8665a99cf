#!/usr/bin/env python3
"""Bootstrap an admin user with an owning tenant.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! \
        --organization "Acme Inc"

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet the password policy)
    ADMIN_ORGANIZATION: Name of the tenant the admin owns (default "Administrators")
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys

from tenantgate.service.errors import ServiceError


async def bootstrap_admin(
    email: str, password: str, organization: str, dry_run: bool = False
) -> dict:
    """Create an admin user, or promote an existing one.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # imported late so the environment defaults below are in place first
    from tenantgate.service.runtime import get_runtime

    runtime = get_runtime()
    auth = runtime.auth
    existing_user = auth.credentials.find_by_email(email)

    if existing_user:
        if existing_user.role == "admin":
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        auth.credentials.update(existing_user.id, role="admin")
        if not runtime.tenants.get_user_tenant_memberships(existing_user.id):
            runtime.tenants.create_tenant(organization, owner_id=existing_user.id)
        auth.audit.log("admin_promoted", actor=existing_user.id)
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email} owning '{organization}'")
        return {"user_id": None, "email": email, "status": "dry_run"}

    bundle = await auth.register(email, password, organization_name=organization)
    auth.credentials.update(bundle.user.id, role="admin", email_verified=True)
    auth.audit.log("admin_bootstrapped", actor=bundle.user.id, tenant_id=bundle.user.tenant_id)
    print(f"Created admin user: {email} (id: {bundle.user.id})")
    return {
        "user_id": bundle.user.id,
        "email": email,
        "tenant_id": bundle.user.tenant_id,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for TenantGate",
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
        "--organization",
        default=os.environ.get("ADMIN_ORGANIZATION", "Administrators"),
        help="Tenant owned by the admin (or set ADMIN_ORGANIZATION env var)",
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

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("APP_ENV", "development")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.organization, args.dry_run)
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        for problem in e.detail.get("problems", []):
            print(f"       password {problem}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Tenant ID: {result['tenant_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
