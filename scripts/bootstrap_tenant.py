#!/usr/bin/env python3
"""Bootstrap a tenant and its first admin user.

Usage:
    # Using environment variables:
    TENANT_NAME="Acme" TENANT_DOMAIN=acme.com ADMIN_EMAIL=admin@acme.com \
        ADMIN_USERNAME=admin ADMIN_PASSWORD=SecurePass123 python scripts/bootstrap_tenant.py

    # Or with command line args:
    python scripts/bootstrap_tenant.py --name Acme --domain acme.com \
        --email admin@acme.com --username admin --password SecurePass123

Environment Variables:
    REDIS_URL: Redis connection string (the in-memory store is used if unset)
    JWT_SECRET: Signing secret; an ephemeral one is generated if unset
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


async def bootstrap_tenant(
    name: str,
    domain: str,
    username: str,
    email: str,
    password: str,
    dry_run: bool = False,
) -> dict:
    """Create a tenant plus admin user unless the domain is already taken.

    Returns:
        dict with tenant_id, user_id, domain and status
        ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantgate.service.runtime import get_runtime

    runtime = get_runtime()
    directory = runtime.directory

    try:
        existing = await directory.get_tenant_by_domain(domain)
        if existing:
            print(f"Tenant for {domain} already exists (id: {existing.tenant_id})")
            return {
                "tenant_id": existing.tenant_id,
                "user_id": None,
                "domain": domain,
                "status": "exists",
            }

        if dry_run:
            print(f"[DRY RUN] Would create tenant {name} ({domain}) with admin {email}")
            return {"tenant_id": None, "user_id": None, "domain": domain, "status": "dry_run"}

        tenant, user = await directory.create_tenant_with_admin(
            name, domain, username, email, password
        )
        token = runtime.tokens.issue(user.user_id, tenant.tenant_id, user.role)
        print(f"Created tenant {name} ({domain}) id: {tenant.tenant_id}")
        return {
            "tenant_id": tenant.tenant_id,
            "user_id": user.user_id,
            "domain": tenant.domain,
            "status": "created",
            "token": token,
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant and its admin user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", default=os.environ.get("TENANT_NAME"), help="Tenant display name")
    parser.add_argument("--domain", default=os.environ.get("TENANT_DOMAIN"), help="Tenant domain")
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="Admin email")
    parser.add_argument(
        "--username", default=os.environ.get("ADMIN_USERNAME", "admin"), help="Admin username"
    )
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"), help="Admin password")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    missing = [flag for flag in ("name", "domain", "email", "password") if not getattr(args, flag)]
    if missing:
        print(f"Error: missing required values: {', '.join('--' + m for m in missing)}")
        sys.exit(1)

    if len(args.password) < 8:
        print("Error: Password must be at least 8 characters")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("REDIS_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set REDIS_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_tenant(
                args.name,
                args.domain.lower(),
                args.username,
                args.email.lower(),
                args.password,
                args.dry_run,
            )
        )
        if result["status"] == "created":
            print("\nTenant created successfully!")
            print(f"  Tenant ID: {result['tenant_id']}")
            print(f"  Admin User ID: {result['user_id']}")
            print(f"  Token: {result['token'][:50]}...")
        elif result["status"] == "exists":
            print("\nNo changes needed - tenant already exists.")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
